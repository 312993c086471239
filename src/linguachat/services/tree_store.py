"""Hierarchical JSON document store with optimistic transactions.

Documents live at slash-separated paths. Every conditional write goes through
:meth:`TreeStore.transaction`, a compare-then-write primitive: the backend
hands the freshest value to a pure ``update_fn`` and commits its result only
if nobody wrote the document in between, re-running ``update_fn`` otherwise.
``update_fn`` decides on its own whether to write at all; returning ``None``
aborts cleanly without mutating anything.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from ..errors import MalformedDocumentError, TransportError

__all__ = [
    "DEFAULT_MAX_TRANSACTION_RETRIES",
    "MemoryTreeStore",
    "PushIdGenerator",
    "RedisTreeStore",
    "TransactionResult",
    "TreeStore",
    "UpdateFn",
    "join_path",
    "normalize_path",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_TRANSACTION_RETRIES = 25

# Ordered to match ASCII so generated keys sort chronologically as plain strings.
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"
_TIMESTAMP_CHARS = 8
_RANDOM_CHARS = 12
_FORBIDDEN_SEGMENT_CHARS = frozenset(".#$[]")

UpdateFn = Callable[[Any], Any]


@dataclass(slots=True, frozen=True)
class TransactionResult:
    """Outcome of :meth:`TreeStore.transaction`.

    Attributes:
        committed: True when ``update_fn``'s value was written.
        value: The written value, or the current value on abort.
    """

    committed: bool
    value: Any = None


class PushIdGenerator:
    """Generates chronologically sortable 20-character keys.

    The first eight characters encode the millisecond timestamp; the remaining
    twelve are random. Keys generated within the same millisecond increment the
    random tail so they keep sorting in creation order.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], int] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._rng = rng or random.SystemRandom()
        self._last_time = -1
        self._last_random = [0] * _RANDOM_CHARS

    def __call__(self) -> str:
        now = int(self._clock())
        duplicate = now == self._last_time
        self._last_time = now

        timestamp_chars: list[str] = []
        remaining = now
        for _ in range(_TIMESTAMP_CHARS):
            timestamp_chars.append(PUSH_CHARS[remaining % 64])
            remaining //= 64
        timestamp_chars.reverse()

        if duplicate:
            index = _RANDOM_CHARS - 1
            while index >= 0 and self._last_random[index] == 63:
                self._last_random[index] = 0
                index -= 1
            if index >= 0:
                self._last_random[index] += 1
        else:
            self._last_random = [self._rng.randrange(64) for _ in range(_RANDOM_CHARS)]

        random_chars = "".join(PUSH_CHARS[value] for value in self._last_random)
        return "".join(timestamp_chars) + random_chars


def normalize_path(path: str) -> str:
    """Return ``path`` without leading/trailing slashes, validating segments."""

    stripped = (path or "").strip().strip("/")
    if not stripped:
        raise ValueError("Store paths must contain at least one segment")
    segments = stripped.split("/")
    for segment in segments:
        if not segment:
            raise ValueError(f"Store path {path!r} contains an empty segment")
        if _FORBIDDEN_SEGMENT_CHARS.intersection(segment):
            raise ValueError(f"Store path segment {segment!r} contains a forbidden character")
    return stripped


def join_path(*segments: str) -> str:
    return normalize_path("/".join(str(segment) for segment in segments))


def _split_parent(path: str) -> tuple[str | None, str]:
    parent, _, name = path.rpartition("/")
    return (parent or None), name


def _encode(path: str, value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise MalformedDocumentError(
            message=f"Value for {path} is not JSON serializable: {exc}",
            path=path,
        ) from exc


def _decode(path: str, raw: Any) -> Any:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedDocumentError(
            message=f"Document at {path} is not valid JSON: {exc}",
            path=path,
        ) from exc


class TreeStore(ABC):
    """Interface shared by the store backends."""

    def __init__(
        self,
        *,
        key_generator: Callable[[], str] | None = None,
        max_transaction_retries: int = DEFAULT_MAX_TRANSACTION_RETRIES,
    ) -> None:
        self._key_generator = key_generator or PushIdGenerator()
        self._max_transaction_retries = max(0, int(max_transaction_retries))

    def new_key(self) -> str:
        """Return a fresh, chronologically sortable child key."""

        return self._key_generator()

    @abstractmethod
    async def get(self, path: str) -> Any | None:
        """Return the document stored at ``path`` or ``None``."""

    @abstractmethod
    async def children(self, path: str) -> dict[str, Any]:
        """Return the documents directly below ``path`` ordered by key."""

    @abstractmethod
    async def update(self, updates: Mapping[str, Any]) -> None:
        """Atomically write several documents; ``None`` values delete."""

    @abstractmethod
    async def transaction(self, path: str, update_fn: UpdateFn) -> TransactionResult:
        """Compare-then-write the document at ``path`` using ``update_fn``."""

    async def aclose(self) -> None:
        """Release backend resources."""

    def _stale_retry_exhausted(self, path: str) -> TransportError:
        attempts = self._max_transaction_retries + 1
        LOGGER.error("Transaction on %s did not settle after %d attempt(s)", path, attempts)
        return TransportError(
            message=f"Transaction on {path} did not settle after {attempts} attempt(s)",
            details={"path": path, "attempts": attempts},
        )


class MemoryTreeStore(TreeStore):
    """In-process store used for tests and single-process deployments.

    Reads and writes yield to the event loop so concurrent transactions
    interleave the way they would against a remote store.
    """

    def __init__(
        self,
        *,
        key_generator: Callable[[], str] | None = None,
        max_transaction_retries: int = DEFAULT_MAX_TRANSACTION_RETRIES,
    ) -> None:
        super().__init__(key_generator=key_generator, max_transaction_retries=max_transaction_retries)
        self._documents: dict[str, str] = {}
        self._versions: dict[str, int] = {}

    async def get(self, path: str) -> Any | None:
        key = normalize_path(path)
        await asyncio.sleep(0)
        return _decode(key, self._documents.get(key))

    async def children(self, path: str) -> dict[str, Any]:
        prefix = normalize_path(path) + "/"
        await asyncio.sleep(0)
        result: dict[str, Any] = {}
        for key in sorted(self._documents):
            if not key.startswith(prefix):
                continue
            name = key[len(prefix):]
            if "/" in name:
                continue
            result[name] = _decode(key, self._documents[key])
        return result

    async def update(self, updates: Mapping[str, Any]) -> None:
        encoded: dict[str, str | None] = {}
        for path, value in updates.items():
            key = normalize_path(path)
            encoded[key] = None if value is None else _encode(key, value)
        await asyncio.sleep(0)
        for key, payload in encoded.items():
            if payload is None:
                self._documents.pop(key, None)
            else:
                self._documents[key] = payload
            self._versions[key] = self._versions.get(key, 0) + 1

    async def transaction(self, path: str, update_fn: UpdateFn) -> TransactionResult:
        key = normalize_path(path)
        for attempt in range(self._max_transaction_retries + 1):
            version = self._versions.get(key, 0)
            current = _decode(key, self._documents.get(key))
            proposed = update_fn(current)
            if proposed is None:
                return TransactionResult(committed=False, value=_decode(key, self._documents.get(key)))
            payload = _encode(key, proposed)
            # Round trip to the "server"; other writers may commit meanwhile.
            await asyncio.sleep(0)
            if self._versions.get(key, 0) != version:
                LOGGER.debug("Transaction on %s read a stale snapshot (attempt %d); retrying", key, attempt + 1)
                continue
            self._documents[key] = payload
            self._versions[key] = version + 1
            return TransactionResult(committed=True, value=json.loads(payload))
        raise self._stale_retry_exhausted(key)


class RedisTreeStore(TreeStore):
    """Store backed by Redis.

    Each document is a JSON string key; each parent path keeps a set of child
    names so :meth:`children` can enumerate them. Transactions use
    ``WATCH``/``MULTI``/``EXEC`` and re-run ``update_fn`` on ``WatchError``.
    """

    def __init__(
        self,
        client: Redis,
        *,
        prefix: str = "linguachat",
        key_generator: Callable[[], str] | None = None,
        max_transaction_retries: int = DEFAULT_MAX_TRANSACTION_RETRIES,
    ) -> None:
        super().__init__(key_generator=key_generator, max_transaction_retries=max_transaction_retries)
        self._client = client
        self._prefix = prefix.strip(":") or "linguachat"

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisTreeStore":
        client = Redis.from_url(url, decode_responses=True)
        return cls(client, **kwargs)

    @property
    def client(self) -> Redis:
        return self._client

    def _document_key(self, path: str) -> str:
        return f"{self._prefix}:doc:{path}"

    def _index_key(self, parent: str) -> str:
        return f"{self._prefix}:idx:{parent}"

    async def get(self, path: str) -> Any | None:
        key = normalize_path(path)
        try:
            raw = await self._client.get(self._document_key(key))
        except RedisError as exc:
            raise self._transport_error("get", key, exc) from exc
        return _decode(key, raw)

    async def children(self, path: str) -> dict[str, Any]:
        parent = normalize_path(path)
        try:
            members = await self._client.smembers(self._index_key(parent))
            names = sorted(
                member.decode("utf-8") if isinstance(member, bytes) else str(member)
                for member in members
            )
            if not names:
                return {}
            raws = await self._client.mget([self._document_key(f"{parent}/{name}") for name in names])
        except RedisError as exc:
            raise self._transport_error("children", parent, exc) from exc
        result: dict[str, Any] = {}
        for name, raw in zip(names, raws):
            if raw is None:
                continue
            result[name] = _decode(f"{parent}/{name}", raw)
        return result

    async def update(self, updates: Mapping[str, Any]) -> None:
        encoded: dict[str, str | None] = {}
        for path, value in updates.items():
            key = normalize_path(path)
            encoded[key] = None if value is None else _encode(key, value)
        if not encoded:
            return
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                for key, payload in encoded.items():
                    parent, name = _split_parent(key)
                    if payload is None:
                        pipe.delete(self._document_key(key))
                        if parent:
                            pipe.srem(self._index_key(parent), name)
                    else:
                        pipe.set(self._document_key(key), payload)
                        if parent:
                            pipe.sadd(self._index_key(parent), name)
                await pipe.execute()
        except RedisError as exc:
            raise self._transport_error("update", ", ".join(encoded), exc) from exc

    async def transaction(self, path: str, update_fn: UpdateFn) -> TransactionResult:
        key = normalize_path(path)
        document_key = self._document_key(key)
        parent, name = _split_parent(key)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                for attempt in range(self._max_transaction_retries + 1):
                    try:
                        await pipe.watch(document_key)
                        current = _decode(key, await pipe.get(document_key))
                        proposed = update_fn(current)
                        if proposed is None:
                            await pipe.unwatch()
                            return TransactionResult(committed=False, value=current)
                        payload = _encode(key, proposed)
                        pipe.multi()
                        pipe.set(document_key, payload)
                        if parent:
                            pipe.sadd(self._index_key(parent), name)
                        await pipe.execute()
                        return TransactionResult(committed=True, value=json.loads(payload))
                    except WatchError:
                        LOGGER.debug(
                            "Transaction on %s read a stale snapshot (attempt %d); retrying",
                            key,
                            attempt + 1,
                        )
                        continue
        except RedisError as exc:
            raise self._transport_error("transaction", key, exc) from exc
        raise self._stale_retry_exhausted(key)

    async def aclose(self) -> None:
        close = getattr(self._client, "aclose", None) or getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    @staticmethod
    def _transport_error(operation: str, path: str, exc: Exception) -> TransportError:
        LOGGER.error("Redis %s failed for %s: %s", operation, path, exc)
        return TransportError(
            message=f"Store {operation} failed for {path}: {exc}",
            details={"operation": operation, "path": path},
        )
