import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from oauth_runner.errors import AlreadyInProgressError
from oauth_runner.models import OAuthRequest, OAuthSessionStatus, RequestIntent, ServerType
from oauth_runner.services.invocation_builder import InvocationBuilder
from oauth_runner.services.oauth_orchestrator import (
    INTERNAL_FAILURE,
    URL_ISSUED_MESSAGE,
    OAuthOrchestrator,
    describe_request,
    session_to_response,
)
from oauth_runner.services.sandbox import SandboxAdapter
from oauth_runner.services.session_registry import OAuthSession, SessionRegistry
from oauth_runner.services.token_probe import McpAuthTokenProbe


class _ScriptedSupervisor:
    def __init__(self, invocation, lines):
        self.invocation = invocation
        self.pid = 777
        self._lines = list(lines)
        self._stop = asyncio.Event()

    @property
    def running(self):
        return not self._stop.is_set()

    async def start(self):
        return None

    async def lines(self):
        for line in self._lines:
            yield line
        await self._stop.wait()

    async def wait(self):
        await self._stop.wait()
        return -15

    async def terminate(self):
        self._stop.set()


def _session(status: OAuthSessionStatus, **fields) -> OAuthSession:
    now = datetime.now(timezone.utc)
    session = OAuthSession(
        server_id="srv",
        server_name="srv",
        session_id="sid",
        created_at=now,
        updated_at=now,
        deadline=now + timedelta(minutes=5),
        status=status,
    )
    for key, value in fields.items():
        setattr(session, key, value)
    return session


def _linear_request(**overrides) -> OAuthRequest:
    payload = {
        "server_id": "srv-linear",
        "server_name": "linear",
        "server_type": ServerType.STDIO,
        "base_command": "npx",
        "base_args": ["-y", "proxy-tool", "https://mcp.linear.app/sse"],
        "sandboxing_requested": False,
    }
    payload.update(overrides)
    return OAuthRequest(**payload)


@pytest.mark.asyncio
async def test_linear_end_to_end_returns_url_and_keeps_helper(tmp_path):
    created = []

    def _factory(invocation):
        supervisor = _ScriptedSupervisor(
            invocation,
            ["[proxy-tool] Using callback port 14881", "Opening browser to https://linear.app/oauth/authorize?client=abc"],
        )
        created.append(supervisor)
        return supervisor

    registry = SessionRegistry(
        builder=InvocationBuilder(
            bridge_packages=["proxy-tool"],
            provider_ports=[("linear.app", 14881)],
            auth_root=str(tmp_path),
        ),
        sandbox_adapter=SandboxAdapter([]),
        supervisor_factory=_factory,
        token_probe=McpAuthTokenProbe(),
        first_signal_timeout_sec=2,
    )
    orchestrator = OAuthOrchestrator(registry, force_sandbox=True)

    response = await orchestrator.trigger_oauth(_linear_request())

    assert response.success is True
    assert response.status == OAuthSessionStatus.URL_ISSUED
    assert response.oauth_url == "https://linear.app/oauth/authorize?client=abc"
    assert response.message == URL_ISSUED_MESSAGE
    assert len(created) == 1
    assert created[0].running
    assert "14881" in created[0].invocation.args

    status = orchestrator.get_status("srv-linear")
    assert status is not None
    assert status.has_active_session
    assert status.session.callback_port == 14881
    assert status.session.status == OAuthSessionStatus.URL_ISSUED

    cancelled = await orchestrator.cancel("srv-linear")
    assert cancelled is not None
    assert cancelled.success is True
    assert cancelled.status == OAuthSessionStatus.CANCELLED
    assert not created[0].running
    await registry.shutdown()


class _StubRegistry:
    def __init__(self, result=None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls = []

    async def start_session(self, server, *, sandboxing_requested, intent):
        self.calls.append((server, sandboxing_requested, intent))
        if self.error is not None:
            raise self.error
        return self.result

    def get(self, server_id):
        return self.result


@pytest.mark.asyncio
async def test_sandboxing_is_forced_for_oauth():
    registry = _StubRegistry(result=_session(OAuthSessionStatus.URL_ISSUED, oauth_url="https://a.example.com/auth"))
    orchestrator = OAuthOrchestrator(registry, force_sandbox=True)  # type: ignore[arg-type]
    await orchestrator.trigger_oauth(_linear_request(sandboxing_requested=False))
    assert registry.calls[0][1] is True

    relaxed = OAuthOrchestrator(registry, force_sandbox=False)  # type: ignore[arg-type]
    await relaxed.trigger_oauth(_linear_request(sandboxing_requested=False))
    assert registry.calls[1][1] is False


@pytest.mark.asyncio
async def test_already_in_progress_maps_to_retryable_failure():
    existing = _session(OAuthSessionStatus.URL_ISSUED)
    registry = _StubRegistry(result=existing, error=AlreadyInProgressError("srv-linear", "url_issued"))
    orchestrator = OAuthOrchestrator(registry)  # type: ignore[arg-type]

    response = await orchestrator.trigger_oauth(_linear_request(intent=RequestIntent.REJECT))

    assert response.success is False
    assert response.retryable is True
    assert response.status == OAuthSessionStatus.URL_ISSUED
    assert "already in progress" in response.error


@pytest.mark.asyncio
async def test_unexpected_error_is_replaced_by_generic_message(caplog):
    registry = _StubRegistry(error=RuntimeError("secret internal detail"))
    orchestrator = OAuthOrchestrator(registry)  # type: ignore[arg-type]

    with caplog.at_level("ERROR"):
        response = await orchestrator.trigger_oauth(_linear_request())

    assert response.success is False
    assert response.error == INTERNAL_FAILURE
    assert "secret internal detail" not in response.error
    assert "secret internal detail" in caplog.text


def test_failed_session_never_leaks_process_output():
    session = _session(
        OAuthSessionStatus.FAILED,
        error="Process exited with code 1: invalid_client secret=abc",
        error_code="PROCESS_EXITED",
    )
    response = session_to_response(session)
    assert response.success is False
    assert response.error == "OAuth authentication failed"
    assert "secret" not in response.error
    assert response.retryable is False


def test_response_mapping_per_state():
    completed = session_to_response(_session(OAuthSessionStatus.COMPLETED, token="lin_abcdefgh"))
    assert completed.success and completed.token == "lin_abcdefgh"

    managed = session_to_response(_session(OAuthSessionStatus.COMPLETED, token="success"))
    assert managed.success and managed.token is None

    timed_out = session_to_response(
        _session(OAuthSessionStatus.TIMED_OUT, error_code="TIMEOUT", retryable=True)
    )
    assert not timed_out.success
    assert timed_out.retryable
    assert timed_out.error == "OAuth process timed out"

    running = session_to_response(_session(OAuthSessionStatus.RUNNING))
    assert not running.success
    assert running.retryable
    assert running.status == OAuthSessionStatus.RUNNING

    unsupported = session_to_response(
        _session(OAuthSessionStatus.FAILED, error_code="UNSUPPORTED_SERVER_TYPE")
    )
    assert unsupported.error == "OAuth not supported for this server type"


def test_describe_request_maps_fields():
    request = _linear_request(server_url="https://mcp.linear.app/sse", base_env={"A": "1"})
    server = describe_request(request)
    assert server.server_type == "STDIO"
    assert server.command == "npx"
    assert server.args == ("-y", "proxy-tool", "https://mcp.linear.app/sse")
    assert server.env == {"A": "1"}
    assert server.url == "https://mcp.linear.app/sse"
