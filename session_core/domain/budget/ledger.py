from typing import Dict, Any, List, Optional
from collections import defaultdict, deque
from dataclasses import dataclass
import threading

from session_core.domain.context.memory.clock import Clock, SystemClock
from session_core.domain.models.errors import BudgetExceeded, ValidationError
from session_core.infrastructure.observability.logging import core_logger


@dataclass(frozen=True)
class LedgerEntry:
    timestamp: float
    tokens: int
    cost: float
    feature: str
    model: str
    session_key: Optional[str]
    counts_as_request: bool = True


@dataclass(frozen=True)
class BudgetPolicy:
    """Ceilings per identity over the rolling window"""
    max_tokens: int = 50_000
    max_requests: int = 50
    max_cost: Optional[float] = None
    window_seconds: float = 86_400
    fallback_model: Optional[str] = "gemini-2.5-flash-lite"


@dataclass(frozen=True)
class BudgetDecision:
    allowed: bool
    reason: Optional[str] = None
    suggested_model: Optional[str] = None
    used_tokens: int = 0
    used_requests: int = 0
    used_cost: float = 0.0


class BudgetLedger:
    """Rolling-window token/cost ledger.

    Entries are only ever appended; totals shrink when old entries fall out
    of the window.
    """

    def __init__(self, policy: Optional[BudgetPolicy] = None, clock: Optional[Clock] = None):
        self.policy = policy or BudgetPolicy()
        self.clock = clock or SystemClock()
        self.entries: Dict[str, deque] = defaultdict(deque)
        self._lock = threading.Lock()

    @staticmethod
    def ledger_key(identity_key: Optional[str], session_key: Optional[str]) -> str:
        return identity_key or session_key or "anon"

    def _prune(self, key: str, now: float) -> deque:
        entries = self.entries[key]
        horizon = now - self.policy.window_seconds
        while entries and entries[0].timestamp <= horizon:
            entries.popleft()
        return entries

    @staticmethod
    def _totals(entries) -> Dict[str, Any]:
        return {
            "tokens": sum(e.tokens for e in entries),
            "cost": sum(e.cost for e in entries),
            "requests": sum(1 for e in entries if e.counts_as_request),
        }

    def enforce_budget(
        self,
        identity_key: Optional[str],
        session_key: Optional[str],
        feature: str,
        model: str,
        estimated_tokens: int,
        estimated_cost: float,
        persist: bool = True,
    ) -> BudgetDecision:
        """Check the call against the ceilings and, when allowed and persist, charge it now"""

        if estimated_tokens < 0 or estimated_cost < 0:
            raise ValidationError("estimates must not be negative")

        key = self.ledger_key(identity_key, session_key)
        policy = self.policy

        with self._lock:
            now = self.clock.now()
            entries = self._prune(key, now)
            totals = self._totals(entries)

            reason = None
            if totals["tokens"] + estimated_tokens > policy.max_tokens:
                reason = f"token limit exceeded. Used: {totals['tokens']}/{policy.max_tokens}"
            elif totals["requests"] + 1 > policy.max_requests:
                reason = f"request limit exceeded. Used: {totals['requests']}/{policy.max_requests}"
            elif policy.max_cost is not None and totals["cost"] + estimated_cost > policy.max_cost:
                reason = f"cost limit exceeded. Used: ${totals['cost']:.4f}/${policy.max_cost:.4f}"

            if reason is not None:
                decision = BudgetDecision(
                    allowed=False,
                    reason=reason,
                    suggested_model=policy.fallback_model if policy.fallback_model != model else None,
                    used_tokens=totals["tokens"],
                    used_requests=totals["requests"],
                    used_cost=totals["cost"],
                )
            else:
                if persist:
                    entries.append(LedgerEntry(
                        timestamp=now,
                        tokens=estimated_tokens,
                        cost=estimated_cost,
                        feature=feature,
                        model=model,
                        session_key=session_key,
                    ))
                    totals = self._totals(entries)
                decision = BudgetDecision(
                    allowed=True,
                    used_tokens=totals["tokens"],
                    used_requests=totals["requests"],
                    used_cost=totals["cost"],
                )

        core_logger.log_budget_decision(
            ledger_key=key,
            feature=feature,
            model=model,
            allowed=decision.allowed,
            reason=decision.reason,
        )
        return decision

    def ensure_allowed(self, *args, **kwargs) -> BudgetDecision:
        """enforce_budget that raises BudgetExceeded on rejection"""

        decision = self.enforce_budget(*args, **kwargs)
        if not decision.allowed:
            raise BudgetExceeded(decision.reason or "budget exhausted", decision.suggested_model)
        return decision

    def record_usage(
        self,
        identity_key: Optional[str],
        session_key: Optional[str],
        feature: str,
        model: str,
        estimated_tokens: int,
        estimated_cost: float,
        actual_tokens: int,
        actual_cost: float,
    ) -> Optional[LedgerEntry]:
        """Reconcile actual usage against what was charged up front.

        Only overruns are appended; an overestimate is never refunded.
        """

        extra_tokens = max(0, actual_tokens - estimated_tokens)
        extra_cost = max(0.0, actual_cost - estimated_cost)
        if not extra_tokens and not extra_cost:
            return None

        key = self.ledger_key(identity_key, session_key)
        with self._lock:
            now = self.clock.now()
            entry = LedgerEntry(
                timestamp=now,
                tokens=extra_tokens,
                cost=extra_cost,
                feature=feature,
                model=model,
                session_key=session_key,
                counts_as_request=False,
            )
            self._prune(key, now).append(entry)
            return entry

    def usage(self, identity_key: Optional[str], session_key: Optional[str] = None) -> Dict[str, Any]:
        """Totals and per-feature breakdown for one identity"""

        key = self.ledger_key(identity_key, session_key)
        with self._lock:
            entries: List[LedgerEntry] = list(self._prune(key, self.clock.now()))

        breakdown: Dict[str, Dict[str, Any]] = {}
        for entry in entries:
            feature = breakdown.setdefault(entry.feature, {"tokens": 0, "cost": 0.0, "requests": 0})
            feature["tokens"] += entry.tokens
            feature["cost"] += entry.cost
            if entry.counts_as_request:
                feature["requests"] += 1

        totals = self._totals(entries)
        return {
            "ledger_key": key,
            "total_tokens": totals["tokens"],
            "total_cost": totals["cost"],
            "total_requests": totals["requests"],
            "feature_breakdown": breakdown,
        }

    def usage_stats(self) -> Dict[str, Any]:
        """Usage across every identity, for the admin surface"""

        with self._lock:
            keys = list(self.entries.keys())
        per_identity = {key: self.usage(key) for key in keys}
        return {
            "identities": len(per_identity),
            "total_tokens": sum(u["total_tokens"] for u in per_identity.values()),
            "total_cost": sum(u["total_cost"] for u in per_identity.values()),
            "total_requests": sum(u["total_requests"] for u in per_identity.values()),
            "per_identity": per_identity,
        }
