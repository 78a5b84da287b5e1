"""Session token stores."""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def token_record_key(issuer: str, sid: str) -> str:
    """
    Key of the durable token record for an IdP session.

    ``sid`` values are only unique within one issuer, so the issuer is part
    of the key.
    """
    return f"{issuer}|{sid}"


class SessionStore(ABC):
    """Abstract async key-value store for durable session token records.

    Implementations only need single-key atomicity. Expiry, if any, is the
    implementation's responsibility; callers never assume records disappear
    on their own.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Retrieve a value by key.

        Returns:
            The stored value, or None if absent.
        """

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store a value under key, replacing any previous value."""

    @abstractmethod
    async def destroy(self, key: str) -> None:
        """Delete a value by key. Deleting a missing key is not an error."""


class MemorySessionStore(SessionStore):
    """In-memory session token store.

    Records older than ``ttl_seconds`` are purged lazily on access; a TTL of
    0 keeps records until they are destroyed.

    Warning:
        This store is not suitable for production use in multi-process
        or distributed environments. Use a persistent store instead.
    """

    def __init__(self, ttl_seconds: int = 0) -> None:
        self._records: Dict[str, Tuple[Any, float]] = {}
        self._ttl = ttl_seconds

    async def get(self, key: str) -> Optional[Any]:
        self._cleanup_expired()
        record = self._records.get(key)
        return record[0] if record else None

    async def set(self, key: str, value: Any) -> None:
        self._cleanup_expired()
        self._records[key] = (value, time.monotonic())

    async def destroy(self, key: str) -> None:
        self._records.pop(key, None)

    def __len__(self) -> int:
        return len(self._records)

    def _cleanup_expired(self) -> None:
        if not self._ttl:
            return
        now = time.monotonic()
        expired = [key for key, (_, stored_at) in self._records.items() if (now - stored_at) > self._ttl]
        for key in expired:
            del self._records[key]
        if expired:
            logger.debug("Purged expired token records", extra={"count": len(expired)})


__all__ = [
    "MemorySessionStore",
    "SessionStore",
    "token_record_key",
]
