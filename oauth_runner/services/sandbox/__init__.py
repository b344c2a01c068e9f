from .adapter import SandboxAdapter, build_default_backends, build_default_sandbox_adapter
from .bubblewrap import BubblewrapBackend
from .contracts import SandboxBackend, SandboxPaths, SandboxResult
from .firejail import FirejailBackend

__all__ = [
    "SandboxAdapter",
    "SandboxBackend",
    "SandboxPaths",
    "SandboxResult",
    "BubblewrapBackend",
    "FirejailBackend",
    "build_default_backends",
    "build_default_sandbox_adapter",
]
