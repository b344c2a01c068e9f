"""
Core Configuration Definitions.

This module defines the default structure and values for the application's
configuration system using `yacs`. It serves as the single source of truth
for all configurable parameters.

Configuration is organized into sections:
- SYSTEM: Global paths and environment settings.
- LOGGING: Service log level, rotating file and per-module levels.
- OAUTH: Helper process orchestration (timeouts, bridge tool, callback ports).
- SANDBOX: Isolation backend selection and sandbox filesystem layout.
"""

import os
from pathlib import Path
from yacs.config import CfgNode as CN  # type: ignore[import-untyped]
import platform


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _default_local_base_dir() -> Path:
    system = platform.system().lower()
    if system == "windows":
        local_app_data = os.environ.get("LOCALAPPDATA")
        if local_app_data:
            return Path(local_app_data) / "McpOAuthRunner"
        return Path.home() / "AppData" / "Local" / "McpOAuthRunner"
    if system == "darwin":
        return Path.home() / "Library" / "Application Support" / "McpOAuthRunner"
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "mcp-oauth-runner"
    return Path.home() / ".local" / "share" / "mcp-oauth-runner"


_C = CN()

# -----------------------------------------------------------------------------
# System Configuration
# -----------------------------------------------------------------------------
_C.SYSTEM = CN()
# Root directory of the project (calculated dynamically if not set)
_C.SYSTEM.ROOT = str(Path(__file__).parent.parent)

# Data directory for session logs and helper token directories
_C.SYSTEM.DATA_DIR = os.environ.get("OAUTH_RUNNER_DATA_DIR", str(_default_local_base_dir()))

# Service log directory
_C.SYSTEM.LOGS_DIR = os.path.join(_C.SYSTEM.DATA_DIR, "logs")

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
_C.LOGGING = CN()
_C.LOGGING.LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
_C.LOGGING.FILE = os.environ.get("LOG_FILE", os.path.join(_C.SYSTEM.LOGS_DIR, "oauth_runner.log"))
_C.LOGGING.MAX_BYTES = int(os.environ.get("LOG_MAX_BYTES", str(5 * 1024 * 1024)))
_C.LOGGING.BACKUP_COUNT = int(os.environ.get("LOG_BACKUP_COUNT", "5"))
# Logger name -> level; an empty level inherits the root level.
_C.LOGGING.MODULE_LEVELS = [
    ("oauth_runner.services", os.environ.get("OAUTH_RUNNER_SERVICES_LOG_LEVEL", "").upper()),
]

# -----------------------------------------------------------------------------
# OAuth helper orchestration
# -----------------------------------------------------------------------------
_C.OAUTH = CN()

# How long a start request waits for the first URL/token/exit signal (seconds)
_C.OAUTH.FIRST_SIGNAL_TIMEOUT_SEC = float(
    os.environ.get("OAUTH_FIRST_SIGNAL_TIMEOUT_SEC", "30")
)

# Total helper lifetime before the session is forced to timed_out (seconds)
_C.OAUTH.SESSION_TTL_SEC = float(os.environ.get("OAUTH_SESSION_TTL_SEC", "300"))

# Delay between a terminal transition and session removal (seconds)
_C.OAUTH.CLEANUP_DELAY_SEC = float(os.environ.get("OAUTH_CLEANUP_DELAY_SEC", "5"))

# SIGTERM -> SIGKILL escalation window (seconds)
_C.OAUTH.TERMINATE_GRACE_SEC = float(os.environ.get("OAUTH_TERMINATE_GRACE_SEC", "3"))

# Captured output bounds
_C.OAUTH.OUTPUT_BUFFER_MAX_CHARS = 20000
_C.OAUTH.OUTPUT_TAIL_LINES = 20

# Remote bridge tool (remote-proxy strategy)
_C.OAUTH.REMOTE_BRIDGE_LAUNCHER = os.environ.get("OAUTH_REMOTE_BRIDGE_LAUNCHER", "npx")
_C.OAUTH.REMOTE_BRIDGE_PACKAGES = _env_list("OAUTH_REMOTE_BRIDGE_PACKAGES", ["mcp-remote"])

# Callback port used by the bridge when no provider entry matches
_C.OAUTH.DEFAULT_CALLBACK_PORT = int(os.environ.get("OAUTH_DEFAULT_CALLBACK_PORT", "3334"))

# Provider hostname suffix -> fixed callback port registered with that provider
_C.OAUTH.PROVIDER_CALLBACK_PORTS = [("linear.app", 14881)]

# Direct strategy
_C.OAUTH.DIRECT_AUTH_FLAG = "--oauth"
_C.OAUTH.DIRECT_AUTH_FLAG_ALIASES = ["--oauth", "--auth"]
_C.OAUTH.DIRECT_DEFAULT_COMMAND = "node"

# Root of helper-managed token directories
_C.OAUTH.AUTH_DIR = os.environ.get(
    "OAUTH_AUTH_DIR",
    os.path.join(_C.SYSTEM.DATA_DIR, "mcp-auth"),
)

# Per-session operator logs (events.jsonl + raw output)
_C.OAUTH.SESSION_LOGS_ENABLED = _env_bool("OAUTH_SESSION_LOGS_ENABLED", True)

# Variables inherited from the service environment by every helper process
_C.OAUTH.INHERITED_ENV_KEYS = ["PATH", "HOME", "USER", "LANG", "LC_ALL", "TMPDIR", "SHELL", "TERM"]

# -----------------------------------------------------------------------------
# Sandbox policy
# -----------------------------------------------------------------------------
_C.SANDBOX = CN()

# OAuth helpers run sandboxed whenever a backend exists, whatever the server's own preference
_C.SANDBOX.FORCE_FOR_OAUTH = _env_bool("OAUTH_SANDBOX_FORCE", True)

# Backend preference order
_C.SANDBOX.ISOLATION_TYPE = os.environ.get("MCP_ISOLATION_TYPE", "bubblewrap")
_C.SANDBOX.ISOLATION_FALLBACK = os.environ.get("MCP_ISOLATION_FALLBACK", "firejail")

# OAuth helpers need the network; isolating it is opt-in
_C.SANDBOX.ENABLE_NETWORK_ISOLATION = _env_bool("MCP_ENABLE_NETWORK_ISOLATION", False)

_actual_home = os.environ.get("HOME") or str(Path.home())
_C.SANDBOX.USER_HOME = os.environ.get("SANDBOX_USER_HOME", _actual_home)
_C.SANDBOX.LOCAL_BIN = os.environ.get("SANDBOX_LOCAL_BIN", os.path.join(_actual_home, ".local", "bin"))
_C.SANDBOX.WORKSPACE = os.environ.get(
    "SANDBOX_MCP_WORKSPACE",
    os.path.join(_actual_home, "mcp-workspace"),
)
_C.SANDBOX.SANDBOX_USER = os.environ.get("SANDBOX_USER", "mcp")
_C.SANDBOX.MEMORY_MAX_MB = int(os.environ.get("MCP_MEMORY_MAX_MB", "512"))
_C.SANDBOX.HOSTNAME = "mcp-sandbox"


def get_cfg_defaults():
    """
    Get a yacs CfgNode object with default values.
    Returns a clone to ensure thread-safety during initialization.
    """
    return _C.clone()
