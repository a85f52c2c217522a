from typing import Dict, Optional, Callable, Awaitable, Tuple
import asyncio
import structlog

from session_core.domain.context.memory.expiring_store import ExpiringStore, InMemoryExpiringStore
from session_core.domain.models.errors import ValidationError

logger = structlog.get_logger(__name__)


class IdempotencyCache:
    """Short-lived response cache keyed by ``session:idempotency_key``.

    Bodies are stored as bytes and handed back unchanged, so a replay is
    byte-identical to the first response.
    """

    def __init__(self, entries: Optional[ExpiringStore] = None):
        self.entries = entries or InMemoryExpiringStore()
        self._in_flight: Dict[str, "asyncio.Future[bytes]"] = {}

    @staticmethod
    def entry_key(session_key: str, idempotency_key: str) -> str:
        return f"{session_key}:{idempotency_key}"

    def lookup(self, session_key: str, idempotency_key: str) -> Optional[bytes]:
        """Cached response or None on miss/expiry"""

        return self.entries.get(self.entry_key(session_key, idempotency_key))

    def store(self, session_key: str, idempotency_key: str, response: bytes, ttl_ms: int) -> None:
        """Remember a response for ttl_ms"""

        if ttl_ms < 1:
            raise ValidationError("ttl_ms must be positive")
        if not isinstance(response, (bytes, bytearray)):
            raise ValidationError("idempotent responses must be stored as bytes")

        self.entries.set(self.entry_key(session_key, idempotency_key), bytes(response), ttl_ms / 1000.0)

    async def run_once(
        self,
        session_key: str,
        idempotency_key: str,
        ttl_ms: int,
        action: Callable[[], Awaitable[bytes]],
    ) -> Tuple[bytes, bool]:
        """Return (body, replayed).

        A cached body is returned as a replay. Otherwise concurrent callers with
        the same key share a single execution of ``action``; only successful
        results are cached.
        """

        key = self.entry_key(session_key, idempotency_key)

        cached = self.entries.get(key)
        if cached is not None:
            logger.debug("Idempotent replay", key=key)
            return cached, True

        pending = self._in_flight.get(key)
        if pending is not None:
            body = await asyncio.shield(pending)
            return body, True

        future: "asyncio.Future[bytes]" = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            body = await action()
            self.store(session_key, idempotency_key, body, ttl_ms)
            future.set_result(body)
            return body, False
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # joined callers re-raise it; retrieve here so a lone future does not warn
            future.exception()
            raise
        finally:
            self._in_flight.pop(key, None)
