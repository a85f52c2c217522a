from datetime import date
import pytest

from session_core.domain.context.memory.expiring_store import InMemoryExpiringStore
from session_core.domain.models.errors import ValidationError
from session_core.infrastructure.backends.meeting_scheduler import MeetingScheduler
from session_core.infrastructure.backends.page_fetcher import PageFetcher, describe_text
from session_core.infrastructure.backends.voice_tokens import VoiceTokenIssuer
from .conftest import ManualClock


@pytest.fixture
def scheduler():
    # a Monday
    return MeetingScheduler(today=date(2026, 1, 5))


async def test_weekday_has_sixteen_half_hour_slots(scheduler):
    slots = await scheduler.available_slots("2026-01-06")

    assert slots[0] == "09:00"
    assert slots[-1] == "16:30"
    assert len(slots) == 16


async def test_booked_slot_is_no_longer_available(scheduler):
    meeting = await scheduler.book("Ada", "ada@acme.io", "2026-01-06", "09:00")

    assert meeting["id"].startswith("mtg_")
    assert meeting["duration_minutes"] == 30
    assert "09:00" not in await scheduler.available_slots("2026-01-06")


@pytest.mark.parametrize("day,slot", [
    ("2026-01-02", "10:00"),   # in the past
    ("2026-01-10", "10:00"),   # Saturday
    ("2026-01-06", "17:00"),   # after hours
    ("2026-01-06", "10:15"),   # not on the half hour
    ("06/01/2026", "10:00"),   # not ISO
])
async def test_invalid_bookings_are_rejected(scheduler, day, slot):
    with pytest.raises(ValidationError):
        await scheduler.book("Ada", "ada@acme.io", day, slot)


async def test_weekends_have_no_slots(scheduler):
    assert await scheduler.available_slots("2026-01-11") == []


def test_voice_tokens_are_unique():
    issuer = VoiceTokenIssuer(ttl_seconds=60)
    grant = issuer.mint("s1", voice="Puck")

    assert grant["token"].startswith("vt_")
    assert grant["voice"] == "Puck"
    assert issuer.mint("s1")["token"] != grant["token"]


def test_expired_voice_tokens_do_not_accumulate():
    issuer = VoiceTokenIssuer(ttl_seconds=0)

    for _ in range(100):
        issuer.mint("s1")

    assert len(issuer.issued) <= 1


def test_voice_token_sweep_drops_only_expired_grants():
    clock = ManualClock()
    issuer = VoiceTokenIssuer(ttl_seconds=60, clock=clock)
    issuer.mint("s1")
    clock.advance(30)
    issuer.mint("s2")

    clock.advance(30)

    assert issuer.get_stats() == {"issued": 2, "active": 1}
    assert issuer.clear_expired() == 1
    assert [entry["session_key"] for entry in issuer.issued.values()] == ["s2"]


@pytest.mark.parametrize("url", [
    "ftp://acme.example/file",
    "javascript:alert(1)",
    "http://localhost:8000/admin",
    "http://127.0.0.1/",
    "http://10.0.0.5/internal",
    "http://169.254.169.254/latest/meta-data",
])
def test_page_fetcher_rejects_unsafe_urls(url):
    with pytest.raises(ValidationError):
        PageFetcher().validate_url(url)


def test_page_fetcher_allowed_domains():
    fetcher = PageFetcher(allowed_domains=["acme.example"])

    assert fetcher.validate_url("https://www.acme.example/about") == "https://www.acme.example/about"
    with pytest.raises(ValidationError):
        fetcher.validate_url("https://other.example/")


def test_page_extraction_keeps_main_text():
    html = """
    <html><head><title>Acme Robotics</title>
    <meta name="description" content="Warehouse robots for logistics">
    <script>track()</script></head>
    <body><nav>Home | About</nav><main><h1>About us</h1><p>We build   robots.</p></main></body></html>
    """

    page = PageFetcher.extract(html, "https://acme.example/about")

    assert page["title"] == "Acme Robotics"
    assert page["description"] == "Warehouse robots for logistics"
    assert page["extracted_text"] == "About us We build robots."
    assert page["word_count"] == 5
    assert page["reading_time"] == 1


def test_text_description_for_pasted_content():
    summary = describe_text("one two three")

    assert summary["title"] == "Provided Text"
    assert summary["url"] is None
    assert summary["word_count"] == 3


def test_expiring_store_sweep_and_stats():
    clock = ManualClock()
    store = InMemoryExpiringStore(clock)
    store.set("short", 1, 10)
    store.set("long", 2, 100)

    clock.advance(10)

    assert store.get_stats() == {"total_keys": 2, "active_keys": 1, "expired_keys": 1}
    assert store.clear_expired() == 1
    assert store.get("long") == 2
    assert store.get("short") is None
    assert store.delete("long")
    assert not store.delete("long")
