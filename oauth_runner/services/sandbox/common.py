from __future__ import annotations

import platform
import shutil
from typing import Callable, Mapping, Optional

from ...config import config
from .contracts import SandboxPaths

WhichFn = Callable[[str], Optional[str]]
SystemFn = Callable[[], str]


def default_paths() -> SandboxPaths:
    return SandboxPaths(
        user_home=config.SANDBOX.USER_HOME,
        local_bin=config.SANDBOX.LOCAL_BIN,
        workspace=config.SANDBOX.WORKSPACE,
    )


def command_available(command: str, which: WhichFn = shutil.which) -> bool:
    return which(command) is not None


def is_linux(system: SystemFn = platform.system) -> bool:
    return system().lower() == "linux"


def memory_limit_prefix(which: WhichFn = shutil.which) -> list[str]:
    """`prlimit` address-space cap placed in front of the sandboxed program, when available."""
    limit_mb = int(config.SANDBOX.MEMORY_MAX_MB)
    if limit_mb <= 0 or not command_available("prlimit", which):
        return []
    return ["prlimit", f"--as={limit_mb * 1024 * 1024}", "--"]


def sandbox_env(paths: SandboxPaths, invocation_env: Mapping[str, str]) -> dict[str, str]:
    """Environment seen inside the sandbox; the helper's own variables win."""
    user = config.SANDBOX.SANDBOX_USER
    env = {
        "PATH": f"{paths.local_bin}:/usr/local/bin:/usr/bin:/bin",
        "HOME": paths.user_home,
        "USER": user,
        "USERNAME": user,
        "LOGNAME": user,
        "PYTHONUSERBASE": paths.workspace,
        "UV_ROOT": f"{paths.user_home}/.local/uv",
        "UV_SYSTEM_PYTHON": "true",
    }
    env.update(invocation_env)
    return env
