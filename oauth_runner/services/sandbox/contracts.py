from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from ...runtime.oauth.contracts import Invocation


class SandboxBackend(Protocol):
    name: str

    def is_available(self) -> bool:
        ...

    def wrap(self, invocation: Invocation) -> Optional[Invocation]:
        ...


@dataclass(frozen=True)
class SandboxPaths:
    user_home: str
    local_bin: str
    workspace: str


@dataclass(frozen=True)
class SandboxResult:
    invocation: Invocation
    backend: Optional[str] = None

    @property
    def sandboxed(self) -> bool:
        return self.backend is not None
