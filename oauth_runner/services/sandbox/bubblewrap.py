from __future__ import annotations

import logging
import platform
import shutil
from typing import Optional

from ...config import config
from ...runtime.oauth.contracts import Invocation
from .common import (
    SystemFn,
    WhichFn,
    command_available,
    default_paths,
    is_linux,
    memory_limit_prefix,
    sandbox_env,
)
from .contracts import SandboxPaths


logger = logging.getLogger(__name__)


class BubblewrapBackend:
    """Namespace sandbox via `bwrap`: read-only system, workspace mounted as home."""

    name = "bubblewrap"
    command = "bwrap"

    def __init__(
        self,
        paths: SandboxPaths | None = None,
        *,
        network_isolation: bool | None = None,
        which: WhichFn = shutil.which,
        system: SystemFn = platform.system,
    ) -> None:
        self.paths = paths or default_paths()
        self.network_isolation = (
            bool(config.SANDBOX.ENABLE_NETWORK_ISOLATION) if network_isolation is None else network_isolation
        )
        self._which = which
        self._system = system

    def is_available(self) -> bool:
        return is_linux(self._system) and command_available(self.command, self._which)

    def wrap(self, invocation: Invocation) -> Optional[Invocation]:
        paths = self.paths
        writable: list[str] = []
        for path in invocation.writable_paths:
            writable += ["--bind", path, path]
        args: list[str] = [
            "--unshare-all",
            *([] if self.network_isolation else ["--share-net"]),
            "--die-with-parent",
            "--new-session",
            "--proc", "/proc",
            "--dev", "/dev",
            "--tmpfs", "/tmp",
            "--bind", paths.workspace, paths.user_home,
            "--ro-bind", "/usr", "/usr",
            "--ro-bind-try", "/lib", "/lib",
            "--ro-bind-try", "/lib64", "/lib64",
            "--ro-bind-try", "/bin", "/bin",
            "--ro-bind-try", "/sbin", "/sbin",
            "--ro-bind-try", "/etc/resolv.conf", "/etc/resolv.conf",
            "--ro-bind-try", "/etc/hosts", "/etc/hosts",
            "--ro-bind-try", "/etc/ssl", "/etc/ssl",
            "--ro-bind-try", "/etc/ca-certificates", "/etc/ca-certificates",
            "--ro-bind-try", paths.local_bin, paths.local_bin,
            *writable,
            "--cap-drop", "ALL",
            "--hostname", config.SANDBOX.HOSTNAME,
            "--",
            *memory_limit_prefix(self._which),
            invocation.program,
            *invocation.args,
        ]
        logger.debug("bubblewrap wrapping %s", invocation.program)
        return Invocation(
            program=self.command,
            args=tuple(args),
            env=sandbox_env(paths, invocation.env),
            writable_paths=invocation.writable_paths,
        )
