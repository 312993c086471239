"""Mistake analysis of user messages.

The model answers in a sentinel-delimited format::

    $MISTAKE$ <description> $SEVERITY$ <n> $EXPL_ENGLISH$ <text> $EXPL_LANGUAGE$ <text>
    $MISTAKE$ ...

or with the bare ``$NO_MISTAKES$`` literal. Parsing stops at the first record
that is missing a token; whatever was collected up to then is the result.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from ...chat.message_model import ChatMessage, Mistake, Sender
from ...errors import ConversationError, ParseAnomaly, SessionClosedError
from ...services import telemetry as telemetry_service
from .. import prompts
from ..ai_types import ChatRequest, CompletionEndpoint, system_message
from .session import ConversationSession
from .types import ANALYSIS_TEMPERATURE, ConversationConfig

LOGGER = logging.getLogger(__name__)

MIN_SEVERITY = 1
MAX_SEVERITY = 10

_LEADING_INT = re.compile(r"[+-]?\d+")


@dataclass(slots=True, frozen=True)
class MistakeParseResult:
    mistakes: tuple[Mistake, ...]
    anomaly: ParseAnomaly | None = None


def _parse_severity(text: str) -> int | None:
    match = _LEADING_INT.match(text)
    return int(match.group()) if match else None


def parse_mistakes(reply: str) -> MistakeParseResult:
    """Parse a mistake-analysis reply into records.

    Records with a severity outside 1-10 or an empty field are dropped and
    scanning continues. A missing token stops the scan. Either case yields an
    anomaly next to the records collected so far.
    """

    if reply.strip() == prompts.NO_MISTAKES_TOKEN:
        return MistakeParseResult(mistakes=())

    mistakes: list[Mistake] = []
    problems: list[str] = []
    remaining = reply
    while remaining:
        mistake_at = remaining.find(prompts.MISTAKE_TOKEN)
        if mistake_at < 0:
            problems.append(f"missing {prompts.MISTAKE_TOKEN}")
            break
        severity_at = remaining.find(prompts.SEVERITY_TOKEN, mistake_at + len(prompts.MISTAKE_TOKEN))
        if severity_at < 0:
            problems.append(f"missing {prompts.SEVERITY_TOKEN}")
            break
        english_at = remaining.find(prompts.ENGLISH_EXPLANATION_TOKEN, severity_at + len(prompts.SEVERITY_TOKEN))
        if english_at < 0:
            problems.append(f"missing {prompts.ENGLISH_EXPLANATION_TOKEN}")
            break
        language_at = remaining.find(
            prompts.LANGUAGE_EXPLANATION_TOKEN, english_at + len(prompts.ENGLISH_EXPLANATION_TOKEN)
        )
        if language_at < 0:
            problems.append(f"missing {prompts.LANGUAGE_EXPLANATION_TOKEN}")
            break
        next_at = remaining.find(prompts.MISTAKE_TOKEN, language_at + len(prompts.LANGUAGE_EXPLANATION_TOKEN))
        if next_at < 0:
            next_at = len(remaining)

        description = remaining[mistake_at + len(prompts.MISTAKE_TOKEN):severity_at].strip()
        severity_text = remaining[severity_at + len(prompts.SEVERITY_TOKEN):english_at].strip()
        english = remaining[english_at + len(prompts.ENGLISH_EXPLANATION_TOKEN):language_at].strip()
        language = remaining[language_at + len(prompts.LANGUAGE_EXPLANATION_TOKEN):next_at].strip()
        remaining = remaining[next_at:]

        severity = _parse_severity(severity_text)
        if severity is None or not MIN_SEVERITY <= severity <= MAX_SEVERITY:
            problems.append(f"invalid severity {severity_text!r}")
            continue
        if not description or not english or not language:
            problems.append("empty field")
            continue
        mistakes.append(
            Mistake(
                description=description,
                severity=severity,
                english_explanation=english,
                language_explanation=language,
            )
        )

    anomaly = ParseAnomaly(reason="; ".join(problems), raw=reply) if problems else None
    return MistakeParseResult(mistakes=tuple(mistakes), anomaly=anomaly)


class MistakeCorrectionPipeline:
    """Best-effort mistake analysis of single user messages.

    Failures are logged and reported through telemetry. They never reach the
    conversation turn that launched the analysis.
    """

    def __init__(
        self,
        session: ConversationSession,
        endpoint: CompletionEndpoint,
        config: ConversationConfig,
    ) -> None:
        self._session = session
        self._endpoint = endpoint
        self._config = config

    def build_request(self, message_id: str) -> ChatRequest:
        messages = self._session.messages
        index = self._session.index_of(message_id)
        message = messages[index]
        if message.sender is not Sender.USER:
            raise ValueError(f"Message {message_id} was not sent by the user")

        previous = [m.as_chat_message() for m in messages[:index] if m.sender is not Sender.SYSTEM]
        previous = previous[max(len(previous) - self._config.correct_mistakes_previous_message_count, 0):]
        return ChatRequest.build(
            self._config.model,
            [
                system_message(
                    prompts.correct_mistakes_prompt(language=self._session.language, previous_messages=previous)
                ),
                ChatMessage(sender=Sender.USER, content=message.content),
            ],
            ANALYSIS_TEMPERATURE,
        )

    async def correct(self, message_id: str) -> tuple[Mistake, ...] | None:
        """Analyse ``message_id`` and store the result.

        Returns the stored mistakes, or ``None`` when nothing was stored.
        """

        conversation_id = self._session.conversation_id
        try:
            request = self.build_request(message_id)
            response = await self._endpoint.chat(request)
            self._session.token.raise_if_cancelled()

            result = parse_mistakes(response.message)
            if result.anomaly is not None:
                LOGGER.warning(
                    "Mistake response for message %s contained errors (%s):\n\n%s",
                    message_id,
                    result.anomaly.reason,
                    result.anomaly.raw,
                )
                telemetry_service.emit(
                    telemetry_service.MISTAKES_PARSE_ANOMALY,
                    {
                        "conversation_id": conversation_id,
                        "message_id": message_id,
                        "reason": result.anomaly.reason,
                        "parsed": len(result.mistakes),
                    },
                )

            if not await self._session.set_message_mistakes(message_id, result.mistakes):
                telemetry_service.emit(
                    telemetry_service.MISTAKES_ANALYSIS_FAILED,
                    {"conversation_id": conversation_id, "message_id": message_id, "error": "conflict"},
                )
                return None
        except SessionClosedError:
            LOGGER.debug("Session closed during mistake analysis of %s", message_id)
            return None
        except ConversationError as exc:
            LOGGER.error("Mistake analysis of message %s failed: %s", message_id, exc)
            telemetry_service.emit(
                telemetry_service.MISTAKES_ANALYSIS_FAILED,
                {"conversation_id": conversation_id, "message_id": message_id, **exc.to_dict()},
            )
            return None

        LOGGER.debug("Recorded %d mistake(s) for message %s", len(result.mistakes), message_id)
        return result.mistakes


__all__ = ["MistakeCorrectionPipeline", "MistakeParseResult", "parse_mistakes"]
