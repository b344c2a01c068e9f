from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(eq=False)
class OAuthRunnerError(Exception):
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": False, "error": {"code": self.code, "message": self.message}}
        if self.details:
            payload["error"]["details"] = self.details
        return payload


class BuilderError(OAuthRunnerError):
    """The server description cannot be turned into a helper invocation."""


class NoRemoteUrlFound(BuilderError):
    def __init__(self, server_name: str) -> None:
        super().__init__(
            code="NO_REMOTE_URL",
            message=f"No remote URL found in server configuration for {server_name}",
            details={"server_name": server_name},
        )


class UnsupportedServerType(BuilderError):
    def __init__(self, server_name: str, server_type: str) -> None:
        super().__init__(
            code="UNSUPPORTED_SERVER_TYPE",
            message="OAuth not supported for this server type",
            details={"server_name": server_name, "server_type": server_type},
        )


class SpawnError(OAuthRunnerError):
    def __init__(self, program: str, reason: str) -> None:
        super().__init__(
            code="SPAWN_FAILED",
            message=f"Failed to start OAuth helper '{program}': {reason}",
            details={"program": program},
        )


class ProcessExitError(OAuthRunnerError):
    def __init__(self, exit_code: int, output_tail: str) -> None:
        summary = output_tail or "No error output"
        super().__init__(
            code="PROCESS_EXITED",
            message=f"Process exited with code {exit_code}: {summary}",
            details={"exit_code": exit_code},
        )


class SessionTimeoutError(OAuthRunnerError):
    def __init__(self, timeout_sec: float) -> None:
        super().__init__(
            code="TIMEOUT",
            message="OAuth process timed out",
            details={"timeout_sec": timeout_sec},
            retryable=True,
        )


class AlreadyInProgressError(OAuthRunnerError):
    def __init__(self, server_id: str, state: str) -> None:
        super().__init__(
            code="ALREADY_IN_PROGRESS",
            message="An OAuth flow is already in progress for this server",
            details={"server_id": server_id, "state": state},
            retryable=True,
        )
