from datetime import datetime, timezone

import pytest

fastapi = pytest.importorskip("fastapi")
httpx = pytest.importorskip("httpx")

from oauth_runner.main import app
from oauth_runner.models import (
    OAuthResponse,
    OAuthSessionSnapshot,
    OAuthSessionStatus,
    OAuthStatusResponse,
)


async def _request(method: str, path: str, **kwargs):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        return await client.request(method, path, **kwargs)


class _FakeOrchestrator:
    def __init__(self):
        self.requests = []
        self.statuses = {}

    async def trigger_oauth(self, request):
        self.requests.append(request)
        return OAuthResponse(
            success=True,
            status=OAuthSessionStatus.URL_ISSUED,
            oauth_url="https://linear.app/oauth/authorize?client=abc",
            message="Please complete authentication in your browser",
        )

    def get_status(self, server_id):
        return self.statuses.get(server_id)

    async def cancel(self, server_id):
        if server_id not in self.statuses:
            return None
        return OAuthResponse(success=True, status=OAuthSessionStatus.CANCELLED)


@pytest.fixture
def fake_orchestrator(monkeypatch):
    orchestrator = _FakeOrchestrator()
    monkeypatch.setattr(app.state, "oauth_orchestrator", orchestrator, raising=False)
    return orchestrator


@pytest.mark.asyncio
async def test_start_session_route(fake_orchestrator):
    res = await _request(
        "POST",
        "/v1/oauth/sessions",
        json={
            "server_id": "srv-linear",
            "server_name": "linear",
            "server_type": "STDIO",
            "base_command": "npx",
            "base_args": ["-y", "mcp-remote", "https://mcp.linear.app/sse"],
        },
    )
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["status"] == "url_issued"
    assert body["oauth_url"].startswith("https://linear.app/oauth/authorize")
    assert fake_orchestrator.requests[0].server_id == "srv-linear"


@pytest.mark.asyncio
async def test_start_session_route_validates_body(fake_orchestrator):
    res = await _request("POST", "/v1/oauth/sessions", json={"server_id": "", "server_name": "x"})
    assert res.status_code == 422
    assert fake_orchestrator.requests == []


@pytest.mark.asyncio
async def test_status_route(fake_orchestrator):
    now = datetime.now(timezone.utc)
    fake_orchestrator.statuses["srv-linear"] = OAuthStatusResponse(
        server_id="srv-linear",
        has_active_session=True,
        session=OAuthSessionSnapshot(
            server_id="srv-linear",
            server_name="linear",
            session_id="sid-1",
            status=OAuthSessionStatus.URL_ISSUED,
            strategy="remote_proxy",
            callback_port=14881,
            created_at=now,
            updated_at=now,
            deadline=now,
        ),
    )
    res = await _request("GET", "/v1/oauth/sessions/srv-linear")
    assert res.status_code == 200
    body = res.json()
    assert body["has_active_session"] is True
    assert body["session"]["callback_port"] == 14881
    assert "token" not in body["session"]

    missing = await _request("GET", "/v1/oauth/sessions/unknown")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_cancel_route(fake_orchestrator):
    fake_orchestrator.statuses["srv-linear"] = object()
    res = await _request("POST", "/v1/oauth/sessions/srv-linear/cancel")
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"

    missing = await _request("POST", "/v1/oauth/sessions/unknown/cancel")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_routes_unavailable_before_startup(monkeypatch):
    monkeypatch.setattr(app.state, "oauth_orchestrator", None, raising=False)
    res = await _request("GET", "/v1/oauth/sessions/srv-linear")
    assert res.status_code == 503
