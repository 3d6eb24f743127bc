"""HTTP surface of the streak engine."""

import pytest
from fastapi.testclient import TestClient

from backend.core.config import settings
from backend.main import app

AT = "2024-03-04T09:00:00+00:00"


@pytest.fixture
def client(monkeypatch, registry):
    monkeypatch.setattr(app.state, "streak_registry", registry)
    return TestClient(app)


@pytest.fixture
def debug_tools(monkeypatch):
    monkeypatch.setattr(settings, "DEBUG_TOOLS_ENABLED", True)


def _event(client, name, user="alice", **body):
    return client.post(f"/v1/streaks/{user}/events/{name}", json=body)


def test_fresh_user_has_empty_streak(client):
    resp = client.get("/v1/streaks/alice")
    assert resp.status_code == 200
    body = resp.json()
    assert body["current_streak"] == 0
    assert body["is_qualified_today"] is False
    assert body["today"] == {"day": "2024-03-04", "verses_read": 0, "active_reading_seconds": 0.0, "reflections": 0}


def test_five_verse_interactions_qualify_today(client):
    for index in range(5):
        resp = _event(client, "verse-interaction", verse_id=f"v{index}", at=AT)
        assert resp.status_code == 200

    state = resp.json()["state"]
    assert state["current_streak"] == 1
    assert state["is_qualified_today"] is True
    assert state["first_qualification_prompt_pending"] is True

    history = client.get("/v1/streaks/alice/history").json()
    assert history == {"history": ["2024-03-04"]}

    first = client.post("/v1/streaks/alice/first-qualification-prompt/consume").json()
    second = client.post("/v1/streaks/alice/first-qualification-prompt/consume").json()
    assert first == {"show": True}
    assert second == {"show": False}


def test_users_are_isolated(client):
    _event(client, "note-created", user="alice", at=AT)
    assert client.get("/v1/streaks/alice").json()["current_streak"] == 1
    assert client.get("/v1/streaks/bob").json()["current_streak"] == 0


def test_resync_after_missed_day_resets(client):
    _event(client, "highlight-created", at=AT)
    resp = client.post("/v1/streaks/alice/resync", json={"at": "2024-03-06T09:00:00+00:00"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["reset"] is True
    assert body["state"]["current_streak"] == 0
    assert body["state"]["longest_streak"] == 1


def test_unknown_event_is_not_found(client):
    resp = _event(client, "teleport")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_blank_verse_ids_are_ignored(client):
    for verse_id in (None, "", "   "):
        resp = _event(client, "verse-interaction", verse_id=verse_id, at=AT)
        assert resp.status_code == 200
        assert resp.json()["state"]["today"]["verses_read"] == 0


def test_content_visibility_requires_flag(client):
    resp = _event(client, "content-visibility")
    assert resp.status_code == 400


def test_debug_routes_disabled_by_default(client):
    resp = client.post("/v1/streaks/alice/debug/qualify", json={"criterion": "verses"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "debug_tools_disabled"


def test_debug_routes_when_enabled(client, debug_tools):
    resp = client.post("/v1/streaks/alice/debug/qualify", json={"criterion": "active_reading"})
    assert resp.status_code == 200
    assert resp.json()["qualified"] is True

    advanced = client.post("/v1/streaks/alice/debug/advance-day", json={"days": 2}).json()
    assert advanced["state"]["current_streak"] == 0

    reset = client.post("/v1/streaks/alice/debug/reset").json()
    assert reset["state"]["longest_streak"] == 0


def test_debug_advance_rejects_out_of_range(client, debug_tools):
    for days in (10000, 0, -1):
        resp = client.post("/v1/streaks/alice/debug/advance-day", json={"days": days})
        assert resp.status_code == 422


def test_metrics_reflect_qualifications(client):
    _event(client, "note-created", at=AT)
    text = client.get("/metrics").text
    assert 'streak_qualifications_total{reason="reflection"} 1.0' in text
    assert "http_requests_total" in text
