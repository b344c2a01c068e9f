"""
Data Models for the MCP OAuth Runner.

This module defines the Pydantic models used at the service boundary and the
enums shared by the orchestration core. It covers:
- Server transport types (ServerType)
- OAuth session lifecycle states (OAuthSessionStatus)
- Inbound request / outbound response schemas (OAuthRequest, OAuthResponse)
- Operator-facing session snapshots (OAuthSessionSnapshot, OAuthStatusResponse)
"""

from enum import Enum
from typing import List, Optional, Dict
from pydantic import BaseModel, Field
from datetime import datetime


class ServerType(str, Enum):
    """
    Transport declared by an MCP server.
    """
    STDIO = "STDIO"
    SSE = "SSE"
    STREAMABLE_HTTP = "STREAMABLE_HTTP"


class OAuthSessionStatus(str, Enum):
    """
    Enum representing the lifecycle state of an OAuth helper session.
    """
    PENDING = "pending"         # Session registered, helper not spawned yet
    RUNNING = "running"         # Helper process alive, no signal yet
    URL_ISSUED = "url_issued"   # Authorization URL handed to the caller, helper still running
    COMPLETED = "completed"     # Token or success marker observed
    FAILED = "failed"           # Builder/spawn error or helper exited without completing
    TIMED_OUT = "timed_out"     # Session lifetime exceeded
    CANCELLED = "cancelled"     # Aborted by the caller or on shutdown


class RequestIntent(str, Enum):
    """What a duplicate request for a server with a live session should do."""
    REUSE = "reuse"
    REJECT = "reject"


class OAuthRequest(BaseModel):
    """Inbound request to bootstrap OAuth for one MCP server."""
    server_id: str = Field(..., min_length=1)
    server_name: str
    server_url: Optional[str] = None
    server_type: ServerType = ServerType.STDIO
    base_command: Optional[str] = None
    base_args: List[str] = Field(default_factory=list)
    base_env: Dict[str, str] = Field(default_factory=dict)
    sandboxing_requested: bool = True
    intent: RequestIntent = RequestIntent.REUSE


class OAuthResponse(BaseModel):
    """
    Outcome handed back to the web layer.

    A present `oauth_url` must be shown to the end user as a redirect target;
    a present `token` should be persisted by the credential storage layer.
    """
    success: bool
    status: Optional[OAuthSessionStatus] = None
    oauth_url: Optional[str] = None
    token: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


class OAuthSessionSnapshot(BaseModel):
    """Read-only view of a session; never carries the token."""
    server_id: str
    server_name: str
    session_id: str
    status: OAuthSessionStatus
    strategy: str
    callback_port: Optional[int] = None
    sandbox_backend: Optional[str] = None
    oauth_url: Optional[str] = None
    completed_with_token: bool = False
    error: Optional[str] = None
    exit_code: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    deadline: datetime


class OAuthStatusResponse(BaseModel):
    server_id: str
    has_active_session: bool
    session: Optional[OAuthSessionSnapshot] = None
