from __future__ import annotations

import logging
from typing import Optional, Sequence

from ...config import config
from ...runtime.oauth.contracts import Invocation
from .bubblewrap import BubblewrapBackend
from .contracts import SandboxBackend, SandboxResult
from .firejail import FirejailBackend

logger = logging.getLogger(__name__)

_BACKEND_FACTORIES = {
    BubblewrapBackend.name: BubblewrapBackend,
    FirejailBackend.name: FirejailBackend,
}


class SandboxAdapter:
    """
    Wrap helper invocations with the first available sandbox backend.

    Absence of every backend is a degraded-security condition, not an error:
    the base invocation is returned unchanged.
    """

    def __init__(self, backends: Sequence[SandboxBackend]) -> None:
        self.backends = tuple(backends)

    def apply(self, invocation: Invocation, sandboxing_requested: bool) -> SandboxResult:
        if not sandboxing_requested:
            return SandboxResult(invocation=invocation)
        for backend in self.backends:
            try:
                if not backend.is_available():
                    continue
                wrapped = backend.wrap(invocation)
            except Exception:
                logger.warning("Sandbox backend %s failed, trying next", backend.name, exc_info=True)
                continue
            if wrapped is None:
                continue
            return SandboxResult(invocation=wrapped, backend=backend.name)
        logger.warning(
            "No sandbox backend available (tried: %s); running %s unsandboxed",
            ", ".join(b.name for b in self.backends) or "-",
            invocation.program,
        )
        return SandboxResult(invocation=invocation)

    def wrap(self, invocation: Invocation, sandboxing_requested: bool) -> Optional[Invocation]:
        """Collaborator contract: wrapped invocation, or None to run unsandboxed."""
        result = self.apply(invocation, sandboxing_requested)
        return result.invocation if result.sandboxed else None


def build_default_backends() -> list[SandboxBackend]:
    order: list[str] = []
    for name in (config.SANDBOX.ISOLATION_TYPE, config.SANDBOX.ISOLATION_FALLBACK):
        normalized = str(name or "").strip().lower()
        if normalized and normalized not in order:
            order.append(normalized)
    backends: list[SandboxBackend] = []
    for name in order:
        factory = _BACKEND_FACTORIES.get(name)
        if factory is None:
            logger.warning("Unknown sandbox backend in config: %s", name)
            continue
        backends.append(factory())
    return backends


def build_default_sandbox_adapter() -> SandboxAdapter:
    return SandboxAdapter(build_default_backends())
