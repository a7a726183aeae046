"""
Document Store Adapters — versioned whole-document storage.

Each ring, key record and access request lives in its own document keyed by
id. Every document carries a monotonically increasing version so writers can
use ``compare_and_set`` instead of read-modify-write on a shared blob.

Adapters:
- ``MemoryDocumentStore``: single-process, CAS serialized behind a lock.
- ``RedisDocumentStore``: ``redis.asyncio`` client, CAS via WATCH/MULTI on a
  hash holding ``version`` and ``data``.

Security Note:
    Documents may hold ciphertext references. Never log document bodies.
"""
import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional, TypeVar

from redis.exceptions import WatchError

from .exceptions import ConflictError, StoreTimeoutError

logger = logging.getLogger("ringvault")

T = TypeVar("T")


@dataclass(frozen=True)
class VersionedDocument:
    """Raw document bytes plus the version they were stored at."""

    data: bytes
    version: int


class DocumentStore(abc.ABC):
    """Key -> versioned JSON document store."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[VersionedDocument]:
        """Return the document, or None if absent."""

    @abc.abstractmethod
    async def set(self, key: str, data: bytes) -> int:
        """Unconditionally write a document. Returns the new version."""

    @abc.abstractmethod
    async def compare_and_set(
        self, key: str, expected_version: Optional[int], data: bytes
    ) -> bool:
        """Write only if the stored version equals ``expected_version``.

        ``expected_version=None`` means the document must not exist yet.
        Returns False on conflict; never raises for a lost race.
        """

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a document. No-op if absent."""

    @abc.abstractmethod
    async def scan(self, prefix: str) -> list[str]:
        """List document keys starting with ``prefix``, sorted."""


class MemoryDocumentStore(DocumentStore):
    """In-process store for tests and single-process deployments."""

    def __init__(self) -> None:
        self._docs: dict[str, VersionedDocument] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[VersionedDocument]:
        return self._docs.get(key)

    async def set(self, key: str, data: bytes) -> int:
        async with self._lock:
            current = self._docs.get(key)
            version = (current.version if current else 0) + 1
            self._docs[key] = VersionedDocument(bytes(data), version)
            return version

    async def compare_and_set(
        self, key: str, expected_version: Optional[int], data: bytes
    ) -> bool:
        async with self._lock:
            current = self._docs.get(key)
            current_version = current.version if current else None
            if current_version != expected_version:
                return False
            self._docs[key] = VersionedDocument(
                bytes(data), (current_version or 0) + 1
            )
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._docs.pop(key, None)

    async def scan(self, prefix: str) -> list[str]:
        return sorted(k for k in self._docs if k.startswith(prefix))


class RedisDocumentStore(DocumentStore):
    """Versioned documents on Redis hashes.

    Args:
        redis: A ``redis.asyncio.Redis`` client.
        namespace: Key prefix isolating this vault's documents.
    """

    def __init__(self, redis: Any, namespace: str = "ringvault"):
        self._redis = redis
        self._ns = namespace

    def _key(self, key: str) -> str:
        return f"{self._ns}:{key}"

    @staticmethod
    def _text(value: Any) -> str:
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    async def get(self, key: str) -> Optional[VersionedDocument]:
        raw = await self._redis.hgetall(self._key(key))
        if not raw:
            return None
        fields = {self._text(k): v for k, v in raw.items()}
        data = fields["data"]
        if isinstance(data, str):
            data = data.encode("utf-8")
        return VersionedDocument(data, int(fields["version"]))

    async def set(self, key: str, data: bytes) -> int:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(self._key(key), "version", 1)
            pipe.hset(self._key(key), "data", data)
            version, _ = await pipe.execute()
        return int(version)

    async def compare_and_set(
        self, key: str, expected_version: Optional[int], data: bytes
    ) -> bool:
        name = self._key(key)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(name)
                raw = await pipe.hget(name, "version")
                current = int(raw) if raw is not None else None
                if current != expected_version:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.hset(
                    name,
                    mapping={"version": (current or 0) + 1, "data": data},
                )
                await pipe.execute()
                return True
            except WatchError:
                logger.debug("Store CAS lost race on %s", key)
                return False

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def scan(self, prefix: str) -> list[str]:
        strip = len(self._ns) + 1
        keys = []
        async for name in self._redis.scan_iter(match=f"{self._key(prefix)}*"):
            keys.append(self._text(name)[strip:])
        return sorted(keys)


# ---------------------------------------------------------------------------
# Call helpers
# ---------------------------------------------------------------------------

async def bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await a store call with a deadline.

    Raises:
        StoreTimeoutError: If the deadline passes. The write, if any, must be
            treated as not committed.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Store call timed out: op=%s timeout=%.2fs", operation, timeout)
        raise StoreTimeoutError(
            f"Document store timed out during {operation}",
            details={"operation": operation, "timeout": timeout},
        ) from None


async def retry_on_conflict(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    backoff: float = 0.05,
) -> T:
    """Run ``fn`` again when it raises a retryable error.

    The core never retries by itself; callers that want retries wrap the
    operation with this helper. Backoff doubles after every attempt.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    delay = backoff
    attempt = 1
    while True:
        try:
            return await fn()
        except (ConflictError, StoreTimeoutError) as err:
            if attempt >= attempts:
                raise
            logger.info(
                "Retrying after %s (attempt %d/%d)", err.code, attempt, attempts,
            )
            await asyncio.sleep(delay)
            delay *= 2
            attempt += 1
