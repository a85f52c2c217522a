from typing import Optional, Tuple
from dataclasses import dataclass
import math
import structlog

from session_core.domain.context.memory.expiring_store import ExpiringStore, InMemoryExpiringStore, Slot
from session_core.domain.models.errors import RateLimited, ValidationError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateWindow:
    count: int
    window_reset_at: float


@dataclass(frozen=True)
class Admission:
    allowed: bool
    retry_after_ms: int = 0
    remaining: int = 0
    reset_at: float = 0.0


class RateLimiter:
    """Fixed-window call counter keyed by ``purpose:identity``"""

    def __init__(self, store: Optional[ExpiringStore] = None):
        self.store = store or InMemoryExpiringStore()

    @staticmethod
    def window_key(purpose: str, identity_key: Optional[str]) -> str:
        return f"{purpose}:{identity_key or 'anon'}"

    def admit(self, purpose: str, identity_key: Optional[str], max_calls: int, window_ms: int) -> Admission:
        """Count one call and report whether it is admitted"""

        if max_calls < 1 or window_ms < 1:
            raise ValidationError("max_calls and window_ms must be positive")

        window_seconds = window_ms / 1000.0

        def step(current: Slot, now: float) -> Tuple[Slot, Admission]:
            window = current[0] if current else None
            if window is None or now >= window.window_reset_at:
                fresh = RateWindow(count=1, window_reset_at=now + window_seconds)
                return (fresh, fresh.window_reset_at), Admission(
                    allowed=True,
                    remaining=max_calls - 1,
                    reset_at=fresh.window_reset_at
                )

            if window.count >= max_calls:
                retry_after_ms = max(1, math.ceil((window.window_reset_at - now) * 1000))
                return (window, window.window_reset_at), Admission(
                    allowed=False,
                    retry_after_ms=retry_after_ms,
                    reset_at=window.window_reset_at
                )

            bumped = RateWindow(count=window.count + 1, window_reset_at=window.window_reset_at)
            return (bumped, bumped.window_reset_at), Admission(
                allowed=True,
                remaining=max_calls - bumped.count,
                reset_at=bumped.window_reset_at
            )

        key = self.window_key(purpose, identity_key)
        admission = self.store.mutate(key, step)

        if not admission.allowed:
            logger.info("Rate limit rejected call", key=key, retry_after_ms=admission.retry_after_ms)

        return admission

    def enforce(self, purpose: str, identity_key: Optional[str], max_calls: int, window_ms: int) -> Admission:
        """Admit or raise RateLimited"""

        admission = self.admit(purpose, identity_key, max_calls, window_ms)
        if not admission.allowed:
            raise RateLimited(purpose, admission.retry_after_ms)
        return admission

    def peek(self, purpose: str, identity_key: Optional[str]) -> Optional[RateWindow]:
        """Current window without counting a call"""

        return self.store.get(self.window_key(purpose, identity_key))
