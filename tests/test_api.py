from datetime import date
import json
import pytest
from fastapi.testclient import TestClient

from session_core.application.api.api_server import create_app
from session_core.application.container import build_services
from session_core.infrastructure.backends.meeting_scheduler import MeetingScheduler
from session_core.infrastructure.config.settings import Settings
from .conftest import ManualClock, ScriptedProvider

ADMIN = {"X-Admin-Secret": "s3cret"}


def make_client(**overrides):
    settings = Settings(admin_secret="s3cret", log_format="console", **overrides)
    services = build_services(
        settings,
        provider=ScriptedProvider(["Hello", " world"]),
        clock=ManualClock(),
        scheduler=MeetingScheduler(today=date(2026, 1, 5)),
    )
    return TestClient(create_app(services=services))


@pytest.fixture
def client():
    with make_client() as client:
        yield client


def parse_events(body: str):
    events = []
    for block in body.strip().split("\n\n"):
        event, data = "message", None
        for line in block.splitlines():
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        events.append((event, data))
    return events


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Trace-Id" in response.headers


def test_turn_streams_text_then_end_event(client):
    response = client.post("/api/v1/turn", json={"message": "hi"}, headers={"X-Session-Id": "s1"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = parse_events(response.text)
    assert [data["content"] for event, data in events if event == "message"] == ["Hello", " world"]
    assert events[-1][0] == "end"
    assert events[-1][1]["type"] == "done"


def test_turn_requires_session_header(client):
    response = client.post("/api/v1/turn", json={"message": "hi"})

    assert response.status_code == 400
    assert response.json()["error_code"] == "validation_error"


def test_malformed_turn_body_is_a_validation_error(client):
    response = client.post("/api/v1/turn", json={"feature_mode": "chat"}, headers={"X-Session-Id": "s1"})

    assert response.status_code == 400
    assert response.json()["details"]["errors"][0]["field"] == "body.message"


def test_turn_over_budget_is_rejected_before_streaming():
    with make_client(budget_daily_tokens=5) as client:
        response = client.post("/api/v1/turn", json={"message": "hi"}, headers={"X-Session-Id": "s1"})

    assert response.status_code == 402
    body = response.json()
    assert body["error_code"] == "budget_exceeded"
    assert body["details"]["quota"] == "exhausted"


def test_rate_limited_turn_carries_retry_after():
    with make_client(chat_rate_limit=1) as client:
        client.post("/api/v1/turn", json={"message": "hi"}, headers={"X-Session-Id": "s1"})
        response = client.post("/api/v1/turn", json={"message": "hi"}, headers={"X-Session-Id": "s1"})

    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1
    assert response.json()["details"]["retry_after_ms"] > 0


def test_list_tools(client):
    tools = client.get("/api/v1/tools").json()["tools"]

    assert {tool["id"] for tool in tools} == {
        "search", "translate", "vision", "url_context", "document", "booking", "voice_token"
    }


def test_tool_call_replays_with_header(client):
    headers = {"X-Session-Id": "s1", "X-Idempotency-Key": "book-1"}
    payload = {
        "name": "Ada",
        "email": "ada@acme.io",
        "preferred_date": "2026-01-06",
        "preferred_time": "09:30",
    }

    first = client.post("/api/v1/tools/booking", json=payload, headers=headers)
    second = client.post("/api/v1/tools/booking", json=payload, headers=headers)

    assert first.status_code == 200
    assert "X-Idempotent-Replay" not in first.headers
    assert second.headers["X-Idempotent-Replay"] == "true"
    assert first.content == second.content
    assert first.json()["tool"] == "booking"


def test_invalid_tool_payload(client):
    response = client.post("/api/v1/tools/search", json={"query": ""}, headers={"X-Session-Id": "s1"})

    assert response.status_code == 400
    assert response.json()["error_code"] == "validation_error"


def test_patch_session_and_stale_version(client):
    response = client.patch("/api/v1/sessions/s1", json={"identity": {"name": "Ada", "email": "ada@acme.io"}})
    assert response.status_code == 200
    assert response.json()["version"] == 1

    stale = client.patch(
        "/api/v1/sessions/s1?expected_version=0",
        json={"role": {"role": "cto", "confidence": 0.7}},
    )
    assert stale.status_code == 409
    assert stale.json()["details"]["actual_version"] == 1


def test_admin_routes_require_the_secret(client):
    client.patch("/api/v1/sessions/s1", json={"capabilities": [{"capability": "chat"}]})

    assert client.get("/api/v1/admin/sessions/s1").status_code == 401
    assert client.get("/api/v1/admin/sessions/s1", headers={"X-Admin-Secret": "wrong"}).status_code == 401

    response = client.get("/api/v1/admin/sessions/s1", headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["summary"]["capabilities_used"] == 1


def test_admin_capabilities_usage_and_metrics(client):
    for capability in ["search", "translate"]:
        client.patch("/api/v1/sessions/s1", json={"capabilities": [{"capability": capability}]})

    last = client.get("/api/v1/admin/sessions/s1/capabilities?last=1", headers=ADMIN).json()
    assert [c["capability"] for c in last["capabilities"]] == ["translate"]

    assert client.get("/api/v1/admin/sessions/missing", headers=ADMIN).status_code == 404
    assert client.get("/api/v1/admin/usage", headers=ADMIN).json()["identities"] == 0
    assert client.get("/api/v1/admin/metrics", headers=ADMIN).json()["sessions"]["sessions"] == 1


def test_booking_slots_reflect_bookings(client):
    before = client.get("/api/v1/tools/booking/slots?date=2026-01-06").json()
    assert before["slots"][0] == "09:00"
    assert len(before["slots"]) == 16

    payload = {"name": "Ada", "email": "ada@acme.io", "preferred_date": "2026-01-06", "preferred_time": "09:00"}
    client.post("/api/v1/tools/booking", json=payload, headers={"X-Session-Id": "s1"})

    after = client.get("/api/v1/tools/booking/slots?date=2026-01-06").json()
    assert "09:00" not in after["slots"]
    assert client.get("/api/v1/tools/booking/slots?date=06-01-2026").status_code == 400


def test_admin_rate_limit_windows(client):
    client.post("/api/v1/tools/voice_token", json={}, headers={"X-Session-Id": "s1"})

    assert client.get("/api/v1/admin/sessions/s1/rate-limits").status_code == 401
    windows = client.get("/api/v1/admin/sessions/s1/rate-limits", headers=ADMIN).json()["windows"]
    assert windows["voice_token"]["count"] == 1
    assert windows["search"] is None
    assert windows["chat"] is None

    metrics = client.get("/api/v1/admin/metrics", headers=ADMIN).json()
    assert metrics["voice_tokens"]["active"] == 1
