from typing import Dict, Any, Optional
from datetime import datetime, timezone
import secrets
import structlog

from session_core.domain.context.memory.clock import Clock, SystemClock

logger = structlog.get_logger(__name__)


class VoiceTokenIssuer:
    """Mints short-lived tokens for the realtime voice channel"""

    def __init__(
        self,
        ttl_seconds: int = 1800,
        model: str = "gemini-live-2.5-flash-preview",
        clock: Optional[Clock] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.model = model
        self.clock = clock or SystemClock()
        # insertion order is expiry order since the ttl is fixed
        self.issued: Dict[str, Dict[str, Any]] = {}

    def _prune(self, now: float) -> int:
        removed = 0
        while self.issued:
            token = next(iter(self.issued))
            if self.issued[token]["expires_at"] > now:
                break
            del self.issued[token]
            removed += 1
        return removed

    def mint(self, session_key: str, voice: Optional[str] = None, language: str = "en-US") -> Dict[str, Any]:
        """Issue a new ephemeral token bound to a session"""

        now = self.clock.now()
        self._prune(now)

        token = f"vt_{secrets.token_urlsafe(24)}"
        expires_at = now + self.ttl_seconds
        grant = {
            "token": token,
            "expires_at": datetime.fromtimestamp(expires_at, timezone.utc).isoformat(),
            "model": self.model,
            "voice": voice,
            "language": language,
        }
        self.issued[token] = {"session_key": session_key, "expires_at": expires_at}

        logger.info("Voice token issued", session_id=session_key, expires_at=grant["expires_at"])
        return grant

    def clear_expired(self) -> int:
        """Drop expired grants, returning how many were removed"""

        return self._prune(self.clock.now())

    def get_stats(self) -> Dict[str, int]:
        now = self.clock.now()
        active = sum(1 for entry in self.issued.values() if entry["expires_at"] > now)
        return {"issued": len(self.issued), "active": active}
