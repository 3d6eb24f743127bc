from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from backend.core.metrics import http_requests_total, normalize_path
from backend.core.middleware.request_id import RequestIdMiddleware


def _make_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/v1/streaks/{user_id}")
    async def streak(user_id: str, request: Request):
        return {"request_id": getattr(request.state, "request_id", None)}

    return app


def test_generates_request_id_when_missing():
    client = TestClient(_make_app())

    resp = client.get("/v1/streaks/alice")
    assert resp.status_code == 200
    rid_header = resp.headers.get("x-request-id")
    assert rid_header
    assert rid_header == resp.json().get("request_id")


def test_echoes_provided_request_id():
    client = TestClient(_make_app())

    resp = client.get("/v1/streaks/alice", headers={"X-Request-Id": "test-rid-123"})
    assert resp.headers.get("x-request-id") == "test-rid-123"
    assert resp.json().get("request_id") == "test-rid-123"


def test_requests_are_counted_by_normalized_path():
    client = TestClient(_make_app())
    client.get("/v1/streaks/42")
    client.get("/v1/streaks/7")

    labels = {"method": "GET", "path": "/v1/streaks/:id", "status": "200"}
    assert http_requests_total.value(labels) == 2
    assert normalize_path("/v1/streaks/alice/events/flush") == "/v1/streaks/alice/events/flush"
