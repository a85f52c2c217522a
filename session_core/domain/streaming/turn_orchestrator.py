from typing import Any, AsyncIterator, Dict, List, Optional, Set
from dataclasses import dataclass
import asyncio
import time
import structlog
from langchain_core.messages import BaseMessage

from session_core.domain.budget.ledger import BudgetLedger
from session_core.domain.budget.model_selector import (
    DEFAULT_CATALOG, ModelCatalog, ModelChoice, cost_of_usage, estimate_tokens, select_model
)
from session_core.domain.context.prompt_context import build_system_preamble
from session_core.domain.context.session_store import SessionContextStore
from session_core.domain.guard.rate_limiter import RateLimiter
from session_core.domain.models.errors import (
    BudgetExceeded, CancelledByCaller, CoreError, ProviderError, RateLimited, ValidationError
)
from session_core.domain.models.turn_state import (
    DoneFrame, ErrorFrame, StreamFrame, TextFrame, TurnRecord, TurnRequest, TurnStatus, Usage
)
from session_core.infrastructure.llm.provider import LLMProvider, ProviderChunk, to_langchain_messages
from session_core.infrastructure.observability.logging import MetricsCollector, core_logger, metrics as default_metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TurnLimits:
    max_calls: int = 20
    window_ms: int = 60_000
    idle_timeout_seconds: Optional[float] = 60.0


@dataclass
class PreparedTurn:
    messages: List[BaseMessage]
    system: str
    choice: ModelChoice
    identity_key: str
    estimated_tokens: int


async def _next_item(iterator: AsyncIterator[ProviderChunk]) -> ProviderChunk:
    return await iterator.__anext__()


class TurnStream:
    """One turn: PENDING -> STREAMING -> COMPLETED | FAILED | CANCELLED.

    ``frames()`` yields text frames in provider order followed by exactly one
    DoneFrame or ErrorFrame. Rejections in PENDING (rate limit, budget,
    validation) are raised before any provider call.
    """

    def __init__(self, orchestrator: "TurnOrchestrator", request: TurnRequest):
        self.orchestrator = orchestrator
        self.request = request
        self.record = TurnRecord(session_key=request.session_key, feature_mode=request.feature_mode)
        self.write_back: Optional[asyncio.Task] = None
        self._cancel_event = asyncio.Event()
        self._started = False

    @property
    def state(self) -> TurnStatus:
        return self.record.status

    def cancel(self):
        """Stop consuming the provider; takes effect at the pending read"""
        self._cancel_event.set()

    def _transition(self, status: TurnStatus, error: Optional[str] = None):
        previous = self.record.status
        if previous.is_terminal:
            return
        self.record.error = error or self.record.error
        self.record.transition(status)
        core_logger.log_turn_transition(
            session_id=self.request.session_key,
            from_status=previous.value,
            to_status=status.value,
            state_summary=self.record.get_state_summary()
        )

    async def _next_chunk(self, iterator: AsyncIterator[ProviderChunk]) -> Optional[ProviderChunk]:
        """Next provider chunk, or None when the turn was cancelled first"""

        if self._cancel_event.is_set():
            return None

        next_task = asyncio.create_task(_next_item(iterator))
        cancel_task = asyncio.create_task(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {next_task, cancel_task},
                timeout=self.orchestrator.limits.idle_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            next_task.cancel()
            cancel_task.cancel()
            # let the provider step unwind before the iterator is closed
            await asyncio.wait({next_task})
            raise

        if next_task in done:
            cancel_task.cancel()
            return next_task.result()

        cancel_task.cancel()
        next_task.cancel()
        try:
            await next_task
        except (asyncio.CancelledError, StopAsyncIteration):
            pass
        except Exception as e:
            logger.warning("Provider raised while being cancelled", error=str(e))

        if not done:
            raise ProviderError("Language model stream stalled")
        return None

    async def frames(self) -> AsyncIterator[StreamFrame]:
        if self._started:
            raise ValidationError("a turn stream can only be consumed once")
        self._started = True

        orchestrator = self.orchestrator
        try:
            prepared = await orchestrator.prepare(self)
        except CoreError as e:
            self._transition(TurnStatus.FAILED, error=e.code)
            raise

        self._transition(TurnStatus.STREAMING)
        started = time.monotonic()
        seq = 0
        parts: List[str] = []
        usage: Optional[Usage] = None
        failure: Optional[ProviderError] = None
        iterator = orchestrator.provider.stream(prepared.messages, prepared.system, prepared.choice.model)

        try:
            while True:
                try:
                    chunk = await self._next_chunk(iterator)
                except StopAsyncIteration:
                    break

                if chunk is None:
                    self._transition(TurnStatus.CANCELLED, error=CancelledByCaller.code)
                    orchestrator.metrics.increment_counter("turns.cancelled")
                    return

                if chunk.usage is not None:
                    usage = chunk.usage
                if chunk.text:
                    seq += 1
                    parts.append(chunk.text)
                    self.record.frames_sent = seq
                    yield TextFrame(seq=seq, content=chunk.text)

        except (asyncio.CancelledError, GeneratorExit):
            # caller went away mid-stream
            self._transition(TurnStatus.CANCELLED, error=CancelledByCaller.code)
            orchestrator.metrics.increment_counter("turns.cancelled")
            raise
        except ProviderError as e:
            failure = e
        except Exception as e:
            logger.error("Unexpected provider failure", session_id=self.request.session_key, error=str(e))
            failure = ProviderError(f"Language model call failed: {type(e).__name__}")
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.warning("Failed to close provider stream", error=str(e))

        orchestrator.metrics.record_latency("turn.stream", (time.monotonic() - started) * 1000)

        if failure is not None:
            self._transition(TurnStatus.FAILED, error=failure.message)
            orchestrator.metrics.increment_counter("turns.failed")
            yield ErrorFrame(
                seq=seq + 1,
                error_code=failure.code,
                message="The assistant could not finish this answer. Please try again.",
                partial=seq > 0
            )
            return

        text = "".join(parts)
        if usage is None:
            usage = Usage(input_tokens=prepared.estimated_tokens, output_tokens=estimate_tokens(text))
        cost = cost_of_usage(prepared.choice.model, usage.input_tokens, usage.output_tokens, orchestrator.catalog)

        self._transition(TurnStatus.COMPLETED)
        orchestrator.metrics.increment_counter("turns.completed")
        self.write_back = orchestrator.schedule_write_back(self, prepared, usage, cost)

        yield DoneFrame(seq=seq + 1, model=prepared.choice.model, usage=usage, cost=cost)


class TurnOrchestrator:
    """Runs turns against the provider and writes completed side effects back"""

    def __init__(
        self,
        store: SessionContextStore,
        rate_limiter: RateLimiter,
        ledger: BudgetLedger,
        provider: LLMProvider,
        limits: Optional[TurnLimits] = None,
        catalog: ModelCatalog = DEFAULT_CATALOG,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.ledger = ledger
        self.provider = provider
        self.limits = limits or TurnLimits()
        self.catalog = catalog
        self.metrics = metrics or default_metrics
        self._write_backs: Set[asyncio.Task] = set()

    def start_turn(self, request: TurnRequest) -> TurnStream:
        return TurnStream(self, request)

    async def prepare(self, stream: TurnStream) -> PreparedTurn:
        """PENDING work: admission, context, model choice and budget"""

        request = stream.request
        session_key = request.session_key

        try:
            self.rate_limiter.enforce("chat", session_key, self.limits.max_calls, self.limits.window_ms)
        except RateLimited:
            self.metrics.increment_counter("turns.rate_limited")
            raise

        context = await self.store.hydrate(session_key)

        messages = to_langchain_messages([m.model_dump() for m in request.history], request.message)
        system = build_system_preamble(context, request.feature_mode)
        estimated = estimate_tokens(system) + sum(estimate_tokens(str(m.content)) for m in messages)

        choice = select_model(request.feature_mode, estimated, context is not None, self.catalog)
        identity_key = (context.identity.email if context and context.identity else None) or session_key

        stream.record.model = choice.model
        stream.record.estimated_tokens = estimated
        stream.record.estimated_cost = choice.estimated_cost

        try:
            self.ledger.ensure_allowed(
                identity_key,
                session_key,
                request.feature_mode,
                choice.model,
                estimated,
                choice.estimated_cost,
                persist=True
            )
        except BudgetExceeded:
            self.metrics.increment_counter("turns.budget_rejected")
            raise

        logger.info(
            "Turn prepared",
            session_id=session_key,
            feature_mode=request.feature_mode,
            model=choice.model,
            reason=choice.reason,
            estimated_tokens=estimated
        )

        return PreparedTurn(
            messages=messages,
            system=system,
            choice=choice,
            identity_key=identity_key,
            estimated_tokens=estimated
        )

    def schedule_write_back(self, stream: TurnStream, prepared: PreparedTurn, usage: Usage, cost: float) -> asyncio.Task:
        task = asyncio.create_task(self._write_back(stream, prepared, usage, cost))
        self._write_backs.add(task)
        task.add_done_callback(self._write_backs.discard)
        self.metrics.set_gauge("turns.pending_write_backs", len(self._write_backs))
        return task

    async def _write_back(self, stream: TurnStream, prepared: PreparedTurn, usage: Usage, cost: float) -> Dict[str, Any]:
        """Best-effort persistence of a completed turn"""

        request = stream.request
        result = {"capability_recorded": False, "usage_reconciled": False}

        try:
            await self.store.record_capability(
                request.session_key,
                request.feature_mode,
                {
                    "model": prepared.choice.model,
                    "input_tokens": usage.input_tokens,
                    "output_tokens": usage.output_tokens,
                    "cost": cost,
                }
            )
            result["capability_recorded"] = True
        except Exception as e:
            logger.error("Write-back of capability usage failed", session_id=request.session_key, error=str(e))

        try:
            self.ledger.record_usage(
                prepared.identity_key,
                request.session_key,
                request.feature_mode,
                prepared.choice.model,
                prepared.estimated_tokens,
                prepared.choice.estimated_cost,
                usage.total_tokens,
                cost
            )
            result["usage_reconciled"] = True
        except Exception as e:
            logger.error("Write-back of usage to the ledger failed", session_id=request.session_key, error=str(e))

        return result

    async def wait_for_write_backs(self):
        """Wait for pending write-backs (shutdown and tests)"""
        if self._write_backs:
            await asyncio.gather(*list(self._write_backs), return_exceptions=True)

    @property
    def pending_write_backs(self) -> int:
        return len(self._write_backs)
