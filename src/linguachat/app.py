"""Console entry point for linguachat."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import ChatApiClient, OpenAIChatEndpoint, build_endpoint
from .ai.orchestration import (
    ConversationConfig,
    ConversationOrchestrator,
    ConversationSession,
    ConversationState,
)
from .ai.prompts import suggest_conversation_topics
from .chat.message_model import Message, Sender
from .errors import ConversationError
from .services.conversation_store import ConversationStore
from .services.settings import Settings, SettingsStore, redact_secret
from .services.tree_store import MemoryTreeStore, RedisTreeStore, TreeStore
from .ui.events import ConversationFailed, EventBus, MessagesUpdated, MistakesAnalyzed
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)
_QUIT_COMMAND = "/quit"


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure logging; the console only shows warnings unless debugging."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, console_level=level if debug else logging.WARNING, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def build_tree_store(settings: Settings) -> TreeStore:
    if settings.store_backend == "redis":
        return RedisTreeStore.from_url(
            settings.redis_url,
            prefix=settings.store_prefix,
            max_transaction_retries=settings.max_transaction_retries,
        )
    return MemoryTreeStore(max_transaction_retries=settings.max_transaction_retries)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `linguachat` console script."""

    args = _parse_cli_args(argv)
    debug = bool(args.debug) or _env_flag("LINGUACHAT_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("LINGUACHAT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2
    if args.language:
        cli_overrides["language"] = args.language

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.command == "settings":
        if args.save:
            code = _save_settings(settings_store, cli_overrides)
            if code:
                return code
            settings = load_settings(resolved_path, store=settings_store)
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    problems = settings.validate()
    if problems:
        for problem in problems:
            print(f"Invalid settings: {problem}", file=sys.stderr)
        return 2

    try:
        return asyncio.run(_run_command(args, settings))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return 130


async def _run_command(args: argparse.Namespace, settings: Settings) -> int:
    tree_store = build_tree_store(settings)
    endpoint = build_endpoint(settings)
    store = ConversationStore(tree_store, settings.user_id)
    try:
        if args.command == "topics":
            return await _cmd_topics(endpoint, settings, args.count)
        if args.command == "new":
            return await _cmd_new(store, settings, args.topic, args.study_topics, args.study_words)
        if args.command == "list":
            return await _cmd_list(store, settings)
        if args.command == "delete":
            return await _cmd_delete(store, settings, args.conversation_ids)
        return await _cmd_chat(store, endpoint, settings, args.conversation_id, args.topic)
    except ConversationError as exc:
        _LOGGER.error("%s failed: %s", args.command, exc)
        print(f"{exc.title}: {exc.user_message}", file=sys.stderr)
        return 1
    finally:
        await _close_quietly(endpoint)
        await tree_store.aclose()


async def _cmd_topics(endpoint: ChatApiClient | OpenAIChatEndpoint, settings: Settings, count: int) -> int:
    topics = await suggest_conversation_topics(endpoint, settings.model, settings.language, count)
    for topic in topics:
        print(topic)
    return 0


async def _cmd_new(
    store: ConversationStore,
    settings: Settings,
    topic: str,
    study_topics: Sequence[str],
    study_words: Sequence[str],
) -> int:
    conversation_id = await store.create_conversation(settings.language, topic, study_topics, study_words)
    print(conversation_id)
    return 0


async def _cmd_list(store: ConversationStore, settings: Settings) -> int:
    conversations = await store.get_conversations(settings.language)
    for conversation in conversations:
        print(f"{conversation.id}  {conversation.date:%Y-%m-%d %H:%M}  {conversation.conversation_topic}")
    return 0


async def _cmd_delete(store: ConversationStore, settings: Settings, conversation_ids: Sequence[str]) -> int:
    await store.delete_conversations(settings.language, conversation_ids)
    return 0


async def _cmd_chat(
    store: ConversationStore,
    endpoint: ChatApiClient | OpenAIChatEndpoint,
    settings: Settings,
    conversation_id: str | None,
    topic: str | None,
) -> int:
    language = settings.language
    if conversation_id is None:
        if not topic:
            print("chat needs a conversation id or --topic", file=sys.stderr)
            return 2
        conversation_id = await store.create_conversation(language, topic)

    conversation = await store.get_conversation(language, conversation_id)
    messages = await store.get_conversation_messages(language, conversation_id)
    if conversation is None or messages is None:
        print(f"Conversation {conversation_id} does not exist", file=sys.stderr)
        return 1

    bus: EventBus = EventBus()
    printer = _ConsolePrinter(settings.mistake_explanation_language, already_shown=len(messages))
    bus.subscribe(MessagesUpdated, printer.on_messages_updated)
    bus.subscribe(MistakesAnalyzed, printer.on_mistakes_analyzed)
    bus.subscribe(ConversationFailed, printer.on_failed)

    for message in messages:
        printer.show(message)

    session = ConversationSession(store, language, conversation, messages, bus=bus)
    orchestrator = ConversationOrchestrator(session, endpoint, ConversationConfig.from_settings(settings))
    orchestrator.start()
    try:
        while True:
            await orchestrator.wait_idle()
            if orchestrator.state is ConversationState.ERROR:
                return 1
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            text = line.strip()
            if not text:
                continue
            if text == _QUIT_COMMAND:
                break
            orchestrator.send_message(text)
        await orchestrator.wait_for_mistake_analysis()
    finally:
        orchestrator.close()
    return 0


class _ConsolePrinter:
    """Renders bus events on the terminal."""

    def __init__(self, explanation_language: str, *, already_shown: int = 0, stream: TextIO | None = None) -> None:
        self._explanation_language = explanation_language
        self._shown = already_shown
        self._stream = stream or sys.stdout

    def show(self, message: Message) -> None:
        if message.sender is Sender.SYSTEM:
            return
        label = "you" if message.sender is Sender.USER else "assistant"
        self._stream.write(f"[{label}] {message.content}\n")
        self._stream.flush()

    def on_messages_updated(self, event: MessagesUpdated) -> None:
        for message in event.messages[self._shown:]:
            if message.sender is Sender.ASSISTANT:
                self.show(message)
        self._shown = len(event.messages)

    def on_mistakes_analyzed(self, event: MistakesAnalyzed) -> None:
        if not event.mistakes:
            return
        for mistake in event.mistakes:
            explanation = (
                mistake.english_explanation
                if self._explanation_language == "English"
                else mistake.language_explanation
            )
            self._stream.write(f"  ! {mistake.description} (severity {mistake.severity}): {explanation}\n")
        self._stream.flush()

    def on_failed(self, event: ConversationFailed) -> None:
        print(f"{event.title}: {event.message}", file=sys.stderr)


async def _close_quietly(endpoint: Any) -> None:
    close = getattr(endpoint, "aclose", None)
    if close is None:
        return
    try:
        await close()
    except Exception as exc:  # pragma: no cover - shutdown path
        _LOGGER.debug("Endpoint shutdown failed: %s", exc)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="linguachat",
        description="Practice a language by chatting with a language model.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.linguachat/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    parser.add_argument("--language", help="Language to practice (overrides the language setting).")
    parser.add_argument("--debug", action="store_true", help="Log debug output to the console.")

    commands = parser.add_subparsers(dest="command", required=True)

    topics = commands.add_parser("topics", help="Suggest conversation topics.")
    topics.add_argument("--count", type=int, default=10)

    new = commands.add_parser("new", help="Create a conversation and print its id.")
    new.add_argument("--topic", required=True)
    new.add_argument("--study-topic", dest="study_topics", action="append", default=[])
    new.add_argument("--study-word", dest="study_words", action="append", default=[])

    commands.add_parser("list", help="List conversations of the configured language.")

    delete = commands.add_parser("delete", help="Delete conversations.")
    delete.add_argument("conversation_ids", metavar="ID", nargs="+")

    chat = commands.add_parser("chat", help="Hold a conversation; /quit or EOF ends it.")
    chat.add_argument("conversation_id", metavar="ID", nargs="?")
    chat.add_argument("--topic", help="Start a new conversation on this topic.")

    settings_cmd = commands.add_parser("settings", help="Print the effective settings (secrets redacted).")
    settings_cmd.add_argument(
        "--save",
        action="store_true",
        help="Persist the --set/--language overrides to the settings file before printing.",
    )

    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is type(None) or normalized.lower() in {"none", "null"}:
        return None
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["openai_api_key"] = redact_secret(settings.openai_api_key)
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _save_settings(store: SettingsStore, overrides: Mapping[str, Any]) -> int:
    """Write the persisted settings plus ``overrides``; environment variables stay out of the file."""

    settings = store.load(overrides=overrides or None, environment=False)
    problems = settings.validate()
    if problems:
        for problem in problems:
            print(f"Invalid settings: {problem}", file=sys.stderr)
        return 2
    try:
        path = store.save(settings)
    except OSError as exc:
        print(f"Failed to save settings to {store.path}: {exc}", file=sys.stderr)
        return 1
    _LOGGER.info("Settings saved to %s", path)
    return 0


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("LINGUACHAT_"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
