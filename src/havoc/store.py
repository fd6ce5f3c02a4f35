"""Short-lived key-value state.

ExpiringStore is the small interface used for state that only matters for
a limited time, such as webhook delivery ids seen recently. The in-memory
implementation is process-local; a TTL-capable external cache can be
dropped in behind the same protocol when state has to survive restarts.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, runtime_checkable


logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@runtime_checkable
class ExpiringStore(Protocol):
    """Key-value store whose entries expire after a TTL."""

    def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store value under key, replacing any existing entry."""
        ...

    def get(self, key: str) -> Optional[Any]:
        """Return the value for key, or None if missing or expired."""
        ...

    def delete(self, key: str) -> bool:
        """Remove key. Returns True if a live entry was removed."""
        ...

    def sweep_expired(self) -> int:
        """Drop all expired entries and return how many were dropped."""
        ...


class InMemoryExpiringStore:
    """Dict-backed ExpiringStore.

    Expired entries are dropped lazily on read and in bulk by
    sweep_expired().

    Attributes:
        clock: Monotonic time source in seconds.
    """

    def __init__(self, clock: Clock = time.monotonic):
        self.clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._entries[key] = (value, self.clock() + ttl_seconds)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self.clock():
            del self._entries[key]
            return None
        return value

    def delete(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        return entry is not None and entry[1] > self.clock()

    def sweep_expired(self) -> int:
        now = self.clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Swept expired entries", extra={"count": len(expired)})
        return len(expired)
