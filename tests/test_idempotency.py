import asyncio
import pytest

from session_core.domain.models.errors import ProviderError, ValidationError


async def test_lookup_misses_then_returns_stored_bytes(idempotency):
    assert idempotency.lookup("s1", "k1") is None

    idempotency.store("s1", "k1", b'{"ok":true}', 300_000)

    assert idempotency.lookup("s1", "k1") == b'{"ok":true}'
    assert idempotency.lookup("s2", "k1") is None


async def test_entries_expire_after_ttl(idempotency, clock):
    idempotency.store("s1", "k1", b"body", 1_000)

    clock.advance(0.999)
    assert idempotency.lookup("s1", "k1") == b"body"
    clock.advance(0.001)
    assert idempotency.lookup("s1", "k1") is None


async def test_store_rejects_bad_arguments(idempotency):
    with pytest.raises(ValidationError):
        idempotency.store("s1", "k1", b"body", 0)
    with pytest.raises(ValidationError):
        idempotency.store("s1", "k1", {"ok": True}, 1_000)


async def test_run_once_executes_action_once_for_concurrent_callers(idempotency):
    calls = 0
    gate = asyncio.Event()

    async def action():
        nonlocal calls
        calls += 1
        await gate.wait()
        return b'{"booked":true}'

    tasks = [asyncio.create_task(idempotency.run_once("s1", "k1", 60_000, action)) for _ in range(5)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*tasks)

    assert calls == 1
    assert {body for body, _ in results} == {b'{"booked":true}'}
    assert sum(1 for _, replayed in results if not replayed) == 1


async def test_run_once_replays_cached_body(idempotency):
    async def action():
        return b"first"

    assert await idempotency.run_once("s1", "k1", 60_000, action) == (b"first", False)

    async def other():
        return b"second"

    assert await idempotency.run_once("s1", "k1", 60_000, other) == (b"first", True)


async def test_failures_are_not_cached(idempotency):
    async def failing():
        raise ProviderError("backend down")

    with pytest.raises(ProviderError):
        await idempotency.run_once("s1", "k1", 60_000, failing)

    async def working():
        return b"ok"

    assert await idempotency.run_once("s1", "k1", 60_000, working) == (b"ok", False)
