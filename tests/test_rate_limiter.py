import threading
import pytest

from session_core.domain.models.errors import RateLimited, ValidationError


def test_admits_up_to_max_calls_then_rejects(rate_limiter):
    results = [rate_limiter.admit("url", "s1", 5, 60_000) for _ in range(6)]

    assert all(r.allowed for r in results[:5])
    assert results[4].remaining == 0
    assert not results[5].allowed
    assert results[5].retry_after_ms > 0


def test_retry_after_counts_down_with_the_window(rate_limiter, clock):
    for _ in range(2):
        rate_limiter.admit("url", "s1", 2, 60_000)

    clock.advance(45)
    rejected = rate_limiter.admit("url", "s1", 2, 60_000)

    assert not rejected.allowed
    assert rejected.retry_after_ms == 15_000


def test_rejections_do_not_extend_the_window(rate_limiter, clock):
    rate_limiter.admit("url", "s1", 1, 10_000)
    for _ in range(3):
        assert not rate_limiter.admit("url", "s1", 1, 10_000).allowed

    assert rate_limiter.peek("url", "s1").count == 1

    clock.advance(10)
    assert rate_limiter.admit("url", "s1", 1, 10_000).allowed


def test_windows_are_independent_per_purpose_and_identity(rate_limiter):
    rate_limiter.admit("url", "s1", 1, 60_000)

    assert rate_limiter.admit("url", "s2", 1, 60_000).allowed
    assert rate_limiter.admit("chat", "s1", 1, 60_000).allowed
    assert not rate_limiter.admit("url", "s1", 1, 60_000).allowed


def test_missing_identity_shares_the_anonymous_window(rate_limiter):
    rate_limiter.admit("url", None, 1, 60_000)

    assert not rate_limiter.admit("url", "", 1, 60_000).allowed


def test_enforce_raises_rate_limited(rate_limiter):
    rate_limiter.enforce("url", "s1", 1, 60_000)

    with pytest.raises(RateLimited) as info:
        rate_limiter.enforce("url", "s1", 1, 60_000)
    assert info.value.retry_after_ms == 60_000
    assert info.value.to_payload()["details"]["retry_after_ms"] == 60_000


def test_invalid_limits_are_rejected(rate_limiter):
    with pytest.raises(ValidationError):
        rate_limiter.admit("url", "s1", 0, 60_000)
    with pytest.raises(ValidationError):
        rate_limiter.admit("url", "s1", 5, 0)


def test_concurrent_admissions_never_exceed_the_limit(rate_limiter):
    admitted = []
    barrier = threading.Barrier(20)

    def call():
        barrier.wait()
        for _ in range(10):
            admitted.append(rate_limiter.admit("url", "s1", 25, 60_000).allowed)

    threads = [threading.Thread(target=call) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(admitted) == 25
