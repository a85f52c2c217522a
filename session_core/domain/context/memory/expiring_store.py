from typing import Dict, Any, Optional, Callable, Protocol, Tuple, TypeVar
import threading

from .clock import Clock, SystemClock

T = TypeVar("T")

# (value, expires_at) as seen by a mutation; None when the key is absent or expired
Slot = Optional[Tuple[Any, float]]


class ExpiringStore(Protocol):
    """Small key/value interface behind the rate limiter and idempotency cache"""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        ...

    def delete(self, key: str) -> bool:
        ...

    def mutate(self, key: str, fn: Callable[[Slot, float], Tuple[Slot, T]]) -> T:
        ...


class InMemoryExpiringStore:
    """In-memory store with TTL support and atomic read-modify-write.

    Expired entries are dropped lazily when their key is touched again;
    ``clear_expired`` can be scheduled as an optional sweep.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self.cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _live_entry(self, key: str, now: float) -> Optional[Dict[str, Any]]:
        entry = self.cache.get(key)
        if entry is None:
            return None
        if now >= entry["expires_at"]:
            del self.cache[key]
            return None
        return entry

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Set a value with TTL"""

        with self._lock:
            self.cache[key] = {
                "value": value,
                "expires_at": self.clock.now() + ttl_seconds
            }

    def get(self, key: str) -> Optional[Any]:
        """Get value if not expired"""

        with self._lock:
            entry = self._live_entry(key, self.clock.now())
            return entry["value"] if entry else None

    def delete(self, key: str) -> bool:
        """Delete a key"""

        with self._lock:
            return self.cache.pop(key, None) is not None

    def mutate(self, key: str, fn: Callable[[Slot, float], Tuple[Slot, T]]) -> T:
        """Apply ``fn`` to the current slot under the store lock.

        ``fn`` receives ``(value, expires_at)`` or None plus the current time and
        returns the new slot (None deletes the key) and a result for the caller.
        ``fn`` must not block.
        """

        with self._lock:
            now = self.clock.now()
            entry = self._live_entry(key, now)
            current = (entry["value"], entry["expires_at"]) if entry else None
            new_slot, result = fn(current, now)
            if new_slot is None:
                self.cache.pop(key, None)
            else:
                value, expires_at = new_slot
                self.cache[key] = {"value": value, "expires_at": expires_at}
            return result

    def clear_expired(self) -> int:
        """Clear expired entries and return count"""

        with self._lock:
            now = self.clock.now()
            expired_keys = [
                key for key, entry in self.cache.items()
                if now >= entry["expires_at"]
            ]

            for key in expired_keys:
                del self.cache[key]

            return len(expired_keys)

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics"""

        with self._lock:
            now = self.clock.now()
            active_count = sum(
                1 for entry in self.cache.values()
                if now < entry["expires_at"]
            )

            return {
                "total_keys": len(self.cache),
                "active_keys": active_count,
                "expired_keys": len(self.cache) - active_count
            }
