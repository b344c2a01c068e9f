from __future__ import annotations

import logging
from typing import Optional

from ..config import config
from ..errors import AlreadyInProgressError
from ..models import (
    OAuthRequest,
    OAuthResponse,
    OAuthSessionStatus,
    OAuthStatusResponse,
    ServerType,
)
from ..runtime.oauth.contracts import ServerDescription
from .credential_sink import is_placeholder_token
from .session_registry import OAuthSession, SessionRegistry

logger = logging.getLogger(__name__)

URL_ISSUED_MESSAGE = "Please complete authentication in your browser"
COMPLETED_MESSAGE = "OAuth authentication completed"
RUNNING_MESSAGE = "OAuth helper started; no authorization URL yet, retry shortly"
GENERIC_FAILURE = "OAuth authentication failed"
INTERNAL_FAILURE = "Internal error while starting OAuth"

# User-facing text per failure code; helper output never reaches callers
_PUBLIC_ERRORS = {
    "NO_REMOTE_URL": "No remote URL found in server configuration",
    "UNSUPPORTED_SERVER_TYPE": "OAuth not supported for this server type",
    "SPAWN_FAILED": "Failed to start OAuth helper process",
    "PROCESS_EXITED": GENERIC_FAILURE,
    "TIMEOUT": "OAuth process timed out",
    "CANCELLED": "OAuth authentication was cancelled",
    "INTERNAL_ERROR": INTERNAL_FAILURE,
}


def describe_request(request: OAuthRequest) -> ServerDescription:
    server_type = request.server_type.value if isinstance(request.server_type, ServerType) else str(request.server_type)
    return ServerDescription(
        server_id=request.server_id,
        server_name=request.server_name,
        server_type=server_type,
        command=request.base_command,
        args=tuple(request.base_args),
        env=dict(request.base_env),
        url=request.server_url,
    )


class OAuthOrchestrator:
    """
    Service boundary for OAuth bootstrap requests.

    Everything below raises typed errors; everything crossing this class is
    an `OAuthResponse`.
    """

    def __init__(self, registry: SessionRegistry, *, force_sandbox: bool | None = None) -> None:
        self.registry = registry
        self.force_sandbox = bool(config.SANDBOX.FORCE_FOR_OAUTH if force_sandbox is None else force_sandbox)

    async def trigger_oauth(self, request: OAuthRequest) -> OAuthResponse:
        sandboxing = True if self.force_sandbox else request.sandboxing_requested
        logger.info(
            "OAuth requested for %s (server_id=%s, type=%s, sandbox=%s)",
            request.server_name,
            request.server_id,
            request.server_type.value,
            sandboxing,
        )
        try:
            session = await self.registry.start_session(
                describe_request(request),
                sandboxing_requested=sandboxing,
                intent=request.intent,
            )
        except AlreadyInProgressError as exc:
            logger.info("Rejected duplicate OAuth request for %s", request.server_name)
            existing = self.registry.get(request.server_id)
            return OAuthResponse(
                success=False,
                status=existing.status if existing is not None else None,
                error=exc.message,
                retryable=True,
            )
        except Exception:
            logger.exception("Unexpected error while starting OAuth for %s", request.server_name)
            return OAuthResponse(success=False, error=INTERNAL_FAILURE, retryable=True)
        return session_to_response(session)

    def get_status(self, server_id: str) -> Optional[OAuthStatusResponse]:
        snapshot = self.registry.snapshot(server_id)
        if snapshot is None:
            return None
        return OAuthStatusResponse(
            server_id=server_id,
            has_active_session=self.registry.has_active_session(server_id),
            session=snapshot,
        )

    async def cancel(self, server_id: str) -> Optional[OAuthResponse]:
        try:
            session = await self.registry.cancel_session(server_id)
        except Exception:
            logger.exception("Unexpected error while cancelling OAuth for %s", server_id)
            return OAuthResponse(success=False, error=INTERNAL_FAILURE, retryable=True)
        if session is None:
            return None
        if session.status == OAuthSessionStatus.CANCELLED:
            return OAuthResponse(
                success=True,
                status=session.status,
                message=_PUBLIC_ERRORS["CANCELLED"],
            )
        return session_to_response(session)


def session_to_response(session: OAuthSession) -> OAuthResponse:
    status = session.status
    if status == OAuthSessionStatus.URL_ISSUED:
        return OAuthResponse(
            success=True,
            status=status,
            oauth_url=session.oauth_url,
            message=URL_ISSUED_MESSAGE,
        )
    if status == OAuthSessionStatus.COMPLETED:
        token = None if is_placeholder_token(session.token) else session.token
        return OAuthResponse(
            success=True,
            status=status,
            token=token,
            message=COMPLETED_MESSAGE,
        )
    if status in (OAuthSessionStatus.PENDING, OAuthSessionStatus.RUNNING):
        return OAuthResponse(
            success=False,
            status=status,
            message=RUNNING_MESSAGE,
            retryable=True,
        )
    error = _PUBLIC_ERRORS.get(session.error_code or "", GENERIC_FAILURE)
    return OAuthResponse(
        success=False,
        status=status,
        error=error,
        retryable=session.retryable or status == OAuthSessionStatus.TIMED_OUT,
    )
