from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional


@dataclass(frozen=True)
class Invocation:
    program: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    # Host directories the helper must be able to write, also inside a sandbox
    writable_paths: tuple[str, ...] = ()

    def argv(self) -> list[str]:
        return [self.program, *self.args]


@dataclass(frozen=True)
class ServerDescription:
    server_id: str
    server_name: str
    server_type: str
    command: Optional[str] = None
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    url: Optional[str] = None


@dataclass(frozen=True)
class BuildResult:
    invocation: Invocation
    strategy: str
    callback_port: Optional[int] = None
    remote_url: Optional[str] = None
    provider_hint: Optional[str] = None
    auth_dir: Optional[str] = None


@dataclass(frozen=True)
class CredentialHandoff:
    server_id: str
    token: str
    provider_hint: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[str] = None
    scope: Optional[str] = None
