from __future__ import annotations

import logging
import platform
import shutil
from typing import Optional

from ...config import config
from ...runtime.oauth.contracts import Invocation
from .common import SystemFn, WhichFn, command_available, default_paths, is_linux, sandbox_env
from .contracts import SandboxPaths

logger = logging.getLogger(__name__)


class FirejailBackend:
    """Profile sandbox via `firejail`, caged to the MCP workspace."""

    name = "firejail"
    command = "firejail"

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
        # --quiet keeps firejail's banner out of the helper's output stream
        args: list[str] = [
            "--quiet",
            f"--private={paths.workspace}",
            "--noroot",
        ]
        if self.network_isolation:
            args += ["--net=none", "--netfilter", "--protocol=unix,inet,inet6"]
        args += [
            "--seccomp",
            "--restrict-namespaces",
            f"--whitelist={paths.local_bin}",
            f"--whitelist={paths.workspace}",
            *(f"--whitelist={path}" for path in invocation.writable_paths),
            *(f"--read-write={path}" for path in invocation.writable_paths),
            "--read-only=/usr/bin",
            "--read-only=/usr/lib",
            "--read-only=/usr/local/bin",
            "--read-only=/usr/local/lib",
            "--private-etc=passwd,group,hosts,resolv.conf,ssl,ca-certificates",
            "--private-tmp",
            "--private-dev",
            "--caps.drop=all",
            "--disable-mnt",
            "--shell=none",
            f"--rlimit-as={int(config.SANDBOX.MEMORY_MAX_MB) * 1024 * 1024}",
            "--",
            invocation.program,
            *invocation.args,
        ]
        logger.debug("firejail wrapping %s", invocation.program)
        return Invocation(
            program=self.command,
            args=tuple(args),
            env=sandbox_env(paths, invocation.env),
            writable_paths=invocation.writable_paths,
        )
