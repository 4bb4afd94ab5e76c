from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from larder.core.logging import get_request_id
from larder.core.middleware.request_id import RequestIdMiddleware


def _make_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/")
    async def root(request: Request):
        return {
            "request_id": getattr(request.state, "request_id", None),
            "session_id": getattr(request.state, "session_id", None),
            "context_id": get_request_id(),
        }

    return app


def test_generates_request_id_when_missing():
    resp = TestClient(_make_app()).get("/")
    assert resp.status_code == 200
    body = resp.json()
    rid = resp.headers.get("x-request-id")

    assert rid
    assert body["request_id"] == rid
    assert body["context_id"] == rid
    assert body["session_id"] is None
    assert "x-session-id" not in resp.headers


def test_echoes_provided_ids():
    resp = TestClient(_make_app()).get("/", headers={"X-Request-Id": "rid-123", "X-Session-Id": "sess-9"})

    assert resp.headers.get("x-request-id") == "rid-123"
    assert resp.headers.get("x-session-id") == "sess-9"
    assert resp.json()["session_id"] == "sess-9"


def test_oversized_request_id_is_replaced():
    provided = "x" * 500
    resp = TestClient(_make_app()).get("/", headers={"X-Request-Id": provided})
    assert resp.headers.get("x-request-id") != provided
    assert len(resp.headers.get("x-request-id")) == 36
