import asyncio
import pytest

from session_core.domain.budget.ledger import BudgetLedger, BudgetPolicy
from session_core.domain.models.errors import BudgetExceeded, RateLimited, ValidationError
from session_core.domain.models.session_context import Identity, SessionPatch
from session_core.domain.models.turn_state import DoneFrame, ErrorFrame, TextFrame, TurnRequest, TurnStatus, Usage
from session_core.domain.streaming.turn_orchestrator import TurnLimits, TurnOrchestrator
from session_core.infrastructure.observability.logging import MetricsCollector
from .conftest import GatedProvider, ScriptedProvider


def make_orchestrator(store, rate_limiter, ledger, provider, **limits):
    return TurnOrchestrator(
        store=store,
        rate_limiter=rate_limiter,
        ledger=ledger,
        provider=provider,
        limits=TurnLimits(**limits),
        metrics=MetricsCollector(),
    )


async def collect_frames(stream):
    return [frame async for frame in stream.frames()]


async def test_completed_turn_streams_in_order_and_writes_back(store, rate_limiter, ledger):
    provider = ScriptedProvider(["Hello", " there", "!"])
    orchestrator = make_orchestrator(store, rate_limiter, ledger, provider)

    stream = orchestrator.start_turn(TurnRequest(session_key="s1", message="hi"))
    frames = await collect_frames(stream)

    assert [f.content for f in frames if isinstance(f, TextFrame)] == ["Hello", " there", "!"]
    assert [f.seq for f in frames] == [1, 2, 3, 4]
    assert isinstance(frames[-1], DoneFrame)
    assert stream.state == TurnStatus.COMPLETED

    await orchestrator.wait_for_write_backs()
    capabilities = await store.capabilities("s1")
    assert [c.capability for c in capabilities] == ["chat"]
    assert capabilities[0].metadata["model"] == frames[-1].model


async def test_write_back_is_scheduled_before_the_final_frame(store, rate_limiter, ledger):
    orchestrator = make_orchestrator(store, rate_limiter, ledger, ScriptedProvider(["ok"]))
    stream = orchestrator.start_turn(TurnRequest(session_key="s1", message="hi"))

    frames = stream.frames()
    async for frame in frames:
        if isinstance(frame, DoneFrame):
            break
    await frames.aclose()

    assert stream.write_back is not None
    await stream.write_back
    assert len(await store.capabilities("s1")) == 1


async def test_anonymous_session_uses_fast_model_and_known_session_standard(store, rate_limiter, ledger):
    provider = ScriptedProvider(["ok"])
    orchestrator = make_orchestrator(store, rate_limiter, ledger, provider)

    await collect_frames(orchestrator.start_turn(TurnRequest(session_key="s1", message="hi")))
    await orchestrator.wait_for_write_backs()
    await collect_frames(orchestrator.start_turn(TurnRequest(session_key="s1", message="again")))

    assert [call["model"] for call in provider.calls] == ["gemini-2.5-flash-lite", "gemini-2.5-flash"]


async def test_preamble_carries_session_identity(store, rate_limiter, ledger):
    await store.update("s1", SessionPatch(identity=Identity(name="Ada", email="ada@acme.io")))
    provider = ScriptedProvider(["ok"])
    orchestrator = make_orchestrator(store, rate_limiter, ledger, provider)

    await collect_frames(orchestrator.start_turn(TurnRequest(session_key="s1", message="hi")))

    assert "ada@acme.io" in provider.calls[0]["system"]
    # the identity, not the session, owns the budget
    assert ledger.usage("ada@acme.io")["total_requests"] == 1


async def test_budget_rejection_happens_before_any_provider_call(store, rate_limiter, clock):
    ledger = BudgetLedger(BudgetPolicy(max_tokens=5), clock=clock)
    provider = ScriptedProvider()
    orchestrator = make_orchestrator(store, rate_limiter, ledger, provider)

    stream = orchestrator.start_turn(TurnRequest(session_key="s1", message="a question that costs tokens"))
    with pytest.raises(BudgetExceeded):
        await collect_frames(stream)

    assert provider.calls == []
    assert stream.state == TurnStatus.FAILED
    assert await store.get_or_none("s1") is None


async def test_rate_limited_turn_is_rejected_before_streaming(store, rate_limiter, ledger):
    provider = ScriptedProvider(["ok"])
    orchestrator = make_orchestrator(store, rate_limiter, ledger, provider, max_calls=1)

    await collect_frames(orchestrator.start_turn(TurnRequest(session_key="s1", message="hi")))
    with pytest.raises(RateLimited):
        await collect_frames(orchestrator.start_turn(TurnRequest(session_key="s1", message="hi")))

    assert len(provider.calls) == 1


async def test_provider_failure_ends_with_partial_error_frame(store, rate_limiter, ledger):
    provider = ScriptedProvider(["Hello", " there"], fail_after=1)
    orchestrator = make_orchestrator(store, rate_limiter, ledger, provider)

    stream = orchestrator.start_turn(TurnRequest(session_key="s1", message="hi"))
    frames = await collect_frames(stream)

    assert isinstance(frames[0], TextFrame)
    assert isinstance(frames[-1], ErrorFrame)
    assert frames[-1].partial is True
    assert frames[-1].error_code == "provider_error"
    assert stream.state == TurnStatus.FAILED
    assert provider.closed
    await orchestrator.wait_for_write_backs()
    assert await store.get_or_none("s1") is None


async def test_cancelled_turn_never_writes_back(store, rate_limiter, ledger):
    provider = GatedProvider()
    orchestrator = make_orchestrator(store, rate_limiter, ledger, provider)
    stream = orchestrator.start_turn(TurnRequest(session_key="s1", message="hi"))
    frames = stream.frames()

    first = await frames.__anext__()
    assert first.content == "first"

    async def cancel_soon():
        await asyncio.sleep(0.01)
        stream.cancel()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(StopAsyncIteration):
        await frames.__anext__()
    await canceller

    assert stream.state == TurnStatus.CANCELLED
    assert stream.write_back is None
    assert provider.closed
    await orchestrator.wait_for_write_backs()
    assert await store.get_or_none("s1") is None


async def test_consumer_closing_the_stream_cancels_the_turn(store, rate_limiter, ledger):
    provider = GatedProvider()
    orchestrator = make_orchestrator(store, rate_limiter, ledger, provider)
    stream = orchestrator.start_turn(TurnRequest(session_key="s1", message="hi"))
    frames = stream.frames()

    await frames.__anext__()
    await frames.aclose()

    assert stream.state == TurnStatus.CANCELLED
    assert provider.closed
    assert await store.get_or_none("s1") is None


async def test_stalled_provider_fails_after_idle_timeout(store, rate_limiter, ledger):
    provider = GatedProvider()
    orchestrator = make_orchestrator(store, rate_limiter, ledger, provider, idle_timeout_seconds=0.05)

    stream = orchestrator.start_turn(TurnRequest(session_key="s1", message="hi"))
    frames = await collect_frames(stream)

    assert isinstance(frames[-1], ErrorFrame)
    assert frames[-1].partial is True
    assert stream.state == TurnStatus.FAILED


async def test_provider_usage_above_estimate_is_reconciled(store, rate_limiter, ledger):
    provider = ScriptedProvider(["ok"], usage=Usage(input_tokens=5_000, output_tokens=1_000))
    orchestrator = make_orchestrator(store, rate_limiter, ledger, provider)

    frames = await collect_frames(orchestrator.start_turn(TurnRequest(session_key="s1", message="hi")))
    await orchestrator.wait_for_write_backs()

    assert frames[-1].usage.input_tokens == 5_000
    assert ledger.usage("s1")["total_tokens"] == 6_000


async def test_frames_can_only_be_consumed_once(store, rate_limiter, ledger):
    orchestrator = make_orchestrator(store, rate_limiter, ledger, ScriptedProvider(["ok"]))
    stream = orchestrator.start_turn(TurnRequest(session_key="s1", message="hi"))
    await collect_frames(stream)

    with pytest.raises(ValidationError):
        await collect_frames(stream)
