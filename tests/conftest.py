from typing import AsyncIterator, List, Optional
import asyncio
import pytest

from session_core.domain.budget.ledger import BudgetLedger, BudgetPolicy
from session_core.domain.context.facts_repository import InMemoryFactsRepository
from session_core.domain.context.memory.expiring_store import InMemoryExpiringStore
from session_core.domain.context.session_store import SessionContextStore
from session_core.domain.guard.idempotency import IdempotencyCache
from session_core.domain.guard.rate_limiter import RateLimiter
from session_core.domain.models.errors import ProviderError
from session_core.domain.models.turn_state import Usage
from session_core.infrastructure.llm.provider import ProviderChunk


class ManualClock:
    """Clock that only moves when a test advances it"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float):
        self.current += seconds


class ScriptedProvider:
    """Streams fixed chunks, optionally failing after ``fail_after`` chunks"""

    def __init__(self, chunks: Optional[List[str]] = None, usage: Optional[Usage] = None, fail_after: Optional[int] = None):
        self.chunks = chunks if chunks is not None else ["Hello", " there", "!"]
        self.usage = usage
        self.fail_after = fail_after
        self.calls = []
        self.closed = False

    async def stream(self, messages, system, model) -> AsyncIterator[ProviderChunk]:
        self.calls.append({"model": model, "system": system, "messages": list(messages)})
        try:
            for index, text in enumerate(self.chunks):
                if self.fail_after is not None and index >= self.fail_after:
                    raise ProviderError("upstream connection reset")
                yield ProviderChunk(text=text)
                await asyncio.sleep(0)
            if self.usage is not None:
                yield ProviderChunk(usage=self.usage)
        finally:
            self.closed = True

    async def complete(self, messages, system, model):
        self.calls.append({"model": model, "system": system, "messages": list(messages)})
        return "".join(self.chunks), self.usage or Usage(input_tokens=10, output_tokens=5)


class GatedProvider(ScriptedProvider):
    """Yields the first chunk, then waits until ``release`` is set"""

    def __init__(self, chunks: Optional[List[str]] = None):
        super().__init__(chunks or ["first", " second", " third"])
        self.release = asyncio.Event()
        self.first_sent = asyncio.Event()

    async def stream(self, messages, system, model) -> AsyncIterator[ProviderChunk]:
        self.calls.append({"model": model, "system": system, "messages": list(messages)})
        try:
            yield ProviderChunk(text=self.chunks[0])
            self.first_sent.set()
            await self.release.wait()
            for text in self.chunks[1:]:
                yield ProviderChunk(text=text)
        finally:
            self.closed = True


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def facts_repository():
    return InMemoryFactsRepository()


@pytest.fixture
def store(facts_repository):
    return SessionContextStore(facts_repository=facts_repository, multimodal_limit=3)


@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(InMemoryExpiringStore(clock))


@pytest.fixture
def idempotency(clock):
    return IdempotencyCache(InMemoryExpiringStore(clock))


@pytest.fixture
def ledger(clock):
    return BudgetLedger(BudgetPolicy(max_tokens=50_000, max_requests=50), clock=clock)
