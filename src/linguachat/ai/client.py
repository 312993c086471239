"""Async completion endpoints: the HTTP chat API and direct OpenAI access."""

from __future__ import annotations

import inspect
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

import httpx
import tiktoken
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..chat.message_model import Sender
from ..errors import MalformedResponseError, TransportError
from .ai_types import (
    DEFAULT_MODEL,
    ChatRequest,
    ChatResponse,
    LanguageVoices,
    SpeechRequest,
    TokenCounterProtocol,
    Voice,
)

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4

_ROLES: Mapping[Sender, str] = {
    Sender.SYSTEM: "system",
    Sender.ASSISTANT: "assistant",
    Sender.USER: "user",
}


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text))

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self, model_name: str, encoding_name: str | None):
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            return tiktoken.get_encoding("cl100k_base")


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def ensure(self, model_name: str) -> TokenCounterProtocol:
        """Return the counter for ``model_name``, creating a tiktoken one on first use."""

        if not self.has(model_name):
            self.register(model_name, TiktokenCounter(model_name))
        return self.get(model_name)

    def count(self, model_name: str | None, text: str) -> int:
        counter = self.get(model_name)
        try:
            return counter.count(text)
        except ValueError:
            LOGGER.debug("Token counter failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the completion endpoints."""

    base_url: str
    api_key: str = ""
    model: str = DEFAULT_MODEL
    project: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class _RetryingEndpoint:
    _retry_exceptions: tuple[type[BaseException], ...] = ()

    def __init__(self, settings: ClientSettings) -> None:
        self._settings = settings

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(self._retry_exceptions),
        )

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Chat payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Chat payload:\n%s", serialized)


class ChatApiClient(_RetryingEndpoint):
    """Client for the hosted ``/api/v1`` chat, voice and speech endpoints."""

    _retry_exceptions = (httpx.TransportError,)

    def __init__(self, settings: ClientSettings, *, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings)
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            headers=dict(settings.default_headers) if settings.default_headers else None,
        )

    async def chat(self, request: ChatRequest) -> ChatResponse:
        payload = request.to_payload()
        LOGGER.debug("Sending chat request via %s with %d message(s)", request.model, len(request.messages))
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)
        response = await self._send("POST", "/api/v1/chat", json=payload)
        return ChatResponse.from_payload(self._json_body(response), expected_inputs=len(request.messages))

    async def list_voices(self) -> List[LanguageVoices]:
        response = await self._send("GET", "/api/v1/voices")
        body = self._json_body(response)
        try:
            return [
                LanguageVoices(
                    language=str(entry["language"]),
                    voices=tuple(Voice(name=str(voice["name"]), gender=str(voice["gender"])) for voice in entry["voices"]),
                )
                for entry in body["languages"]
            ]
        except (KeyError, TypeError) as exc:
            raise MalformedResponseError(message=f"Voice listing is malformed: {exc}") from exc

    async def speech(self, request: SpeechRequest) -> str:
        """Request a speech clip and return the URL of the uploaded audio."""

        response = await self._send("POST", "/api/v1/speech", json=request.to_payload())
        return response.text

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            LOGGER.error("%s %s failed: %s", method, url, exc)
            raise TransportError(message=f"{method} {url} failed: {exc}", details={"url": url}) from exc
        if not 200 <= response.status_code < 300:
            LOGGER.error("%s %s returned HTTP %s", method, url, response.status_code)
            raise TransportError(
                message=f"{method} {url} returned HTTP {response.status_code}",
                details={"url": url},
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(message=f"Response body is not JSON: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


class OpenAIChatEndpoint(_RetryingEndpoint):
    """Answers chat requests by calling OpenAI directly.

    Token counts cover message content only, computed with tiktoken, so they
    line up with what the hosted chat API reports.
    """

    _retry_exceptions = (
        APIError,
        APIStatusError,
        APIConnectionError,
        RateLimitError,
        httpx.TimeoutException,
    )

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        super().__init__(settings)
        self._client = client or self._build_client(settings)
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url or None,
            project=settings.project,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    async def chat(self, request: ChatRequest) -> ChatResponse:
        messages: List[ChatCompletionMessageParam] = [
            {"role": _ROLES[message.sender], "content": message.content}  # type: ignore[misc]
            for message in request.messages
        ]
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "response_format": {"type": "text"},
            "temperature": request.temperature,
        }
        LOGGER.debug("Starting chat completion via %s with %d message(s)", request.model, len(messages))
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        try:
            async for attempt in self._retrying():
                with attempt:
                    completion = await self._client.chat.completions.create(**payload)
        except (APIError, httpx.HTTPError) as exc:
            status_code = exc.status_code if isinstance(exc, APIStatusError) else None
            LOGGER.error("Chat completion via %s failed: %s", request.model, exc)
            raise TransportError(
                message=f"Chat completion failed: {exc}",
                details={"model": request.model},
                status_code=status_code,
            ) from exc

        content = completion.choices[0].message.content if completion.choices else None
        if content is None:
            raise MalformedResponseError(message="Chat completion returned no message content")

        counter = self._token_registry.ensure(request.model)
        return ChatResponse(
            message=content,
            input_token_counts=tuple(counter.count(message.content) for message in request.messages),
            output_token_count=counter.count(content),
        )

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


def build_endpoint(settings: Any) -> ChatApiClient | OpenAIChatEndpoint:
    """Create the endpoint selected by ``settings.backend``."""

    backend = (getattr(settings, "backend", "http") or "http").strip().lower()
    common = dict(
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        debug_logging=settings.debug_logging,
        model=settings.model,
    )
    if backend == "openai":
        return OpenAIChatEndpoint(
            ClientSettings(
                base_url=settings.openai_base_url,
                api_key=settings.openai_api_key,
                project=settings.openai_project or None,
                **common,
            )
        )
    if backend != "http":
        raise ValueError(f"Unknown completion backend {backend!r}")
    return ChatApiClient(ClientSettings(base_url=settings.api_base_url, **common))


__all__ = [
    "ApproxByteCounter",
    "ChatApiClient",
    "ClientSettings",
    "OpenAIChatEndpoint",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "build_endpoint",
]
