"""
Translate an MCP server description into the helper invocation that performs
its OAuth handshake. Pure: nothing here touches the filesystem or spawns.
"""

from __future__ import annotations

import os
import re
from typing import Iterable, Optional, Sequence
from urllib.parse import urlparse

from ..config import config
from ..errors import NoRemoteUrlFound, UnsupportedServerType
from ..models import ServerType
from ..runtime.oauth.contracts import BuildResult, Invocation, ServerDescription

STRATEGY_REMOTE_PROXY = "remote_proxy"
STRATEGY_DIRECT = "direct"

_URL_IN_ARG_PATTERN = re.compile(r"https?://[^\s'\"]+", re.IGNORECASE)
_DIRECT_TYPES = {ServerType.SSE.value, ServerType.STREAMABLE_HTTP.value}
_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class InvocationBuilder:
    def __init__(
        self,
        *,
        bridge_packages: Sequence[str] | None = None,
        bridge_launcher: str | None = None,
        default_callback_port: int | None = None,
        provider_ports: Iterable[Sequence[object]] | None = None,
        auth_root: str | None = None,
    ) -> None:
        self.bridge_packages = tuple(
            bridge_packages if bridge_packages is not None else config.OAUTH.REMOTE_BRIDGE_PACKAGES
        )
        self.bridge_launcher = bridge_launcher or config.OAUTH.REMOTE_BRIDGE_LAUNCHER
        self.default_callback_port = int(
            default_callback_port if default_callback_port is not None else config.OAUTH.DEFAULT_CALLBACK_PORT
        )
        rows = provider_ports if provider_ports is not None else config.OAUTH.PROVIDER_CALLBACK_PORTS
        self.provider_ports = tuple((str(host).lower(), int(port)) for host, port in rows)
        self.auth_root = auth_root if auth_root is not None else config.OAUTH.AUTH_DIR

    def build(self, server: ServerDescription) -> BuildResult:
        bridge = self._detect_bridge(server.args)
        if bridge is not None:
            return self._build_remote_proxy(server, bridge)
        if _server_type_value(server.server_type) in _DIRECT_TYPES:
            return self._build_direct(server)
        raise UnsupportedServerType(server.server_name, _server_type_value(server.server_type))

    def _detect_bridge(self, args: Sequence[str]) -> Optional[str]:
        for arg in args:
            if arg in self.bridge_packages:
                return arg
        return None

    def _build_remote_proxy(self, server: ServerDescription, bridge: str) -> BuildResult:
        remote_url = extract_remote_url(server.args)
        if remote_url is None:
            raise NoRemoteUrlFound(server.server_name)
        provider_hint, callback_port = self.resolve_callback_port(remote_url)
        auth_dir = self.auth_dir_for(server.server_id)

        env = dict(server.env)
        env["OAUTH_CALLBACK_PORT"] = str(callback_port)
        # mcp-remote keeps its client registration and tokens here
        env["MCP_REMOTE_CONFIG_DIR"] = auth_dir
        invocation = Invocation(
            program=self.bridge_launcher,
            args=("-y", bridge, remote_url, "--port", str(callback_port)),
            env=env,
            writable_paths=(auth_dir,),
        )
        return BuildResult(
            invocation=invocation,
            strategy=STRATEGY_REMOTE_PROXY,
            callback_port=callback_port,
            remote_url=remote_url,
            provider_hint=provider_hint,
            auth_dir=auth_dir,
        )

    def _build_direct(self, server: ServerDescription) -> BuildResult:
        args = list(server.args)
        if not any(arg in config.OAUTH.DIRECT_AUTH_FLAG_ALIASES for arg in args):
            args.append(config.OAUTH.DIRECT_AUTH_FLAG)
        invocation = Invocation(
            program=server.command or config.OAUTH.DIRECT_DEFAULT_COMMAND,
            args=tuple(args),
            env=dict(server.env),
        )
        provider_hint = None
        if server.url:
            provider_hint, _ = self._match_provider(server.url)
        return BuildResult(
            invocation=invocation,
            strategy=STRATEGY_DIRECT,
            remote_url=server.url,
            provider_hint=provider_hint,
            auth_dir=self.auth_dir_for(server.server_id),
        )

    def resolve_callback_port(self, remote_url: str) -> tuple[Optional[str], int]:
        provider_hint, port = self._match_provider(remote_url)
        return provider_hint, port if port is not None else self.default_callback_port

    def _match_provider(self, url: str) -> tuple[Optional[str], Optional[int]]:
        hostname = (urlparse(url).hostname or "").lower()
        if not hostname:
            return None, None
        for suffix, port in self.provider_ports:
            if hostname == suffix or hostname.endswith("." + suffix):
                return suffix.split(".", 1)[0], port
        return None, None

    def auth_dir_for(self, server_id: str) -> str:
        segment = _UNSAFE_PATH_CHARS.sub("_", server_id).strip(".") or "server"
        return os.path.join(self.auth_root, "servers", segment, "oauth", ".mcp-auth")


def extract_remote_url(args: Sequence[str]) -> Optional[str]:
    """First http(s) URL found in the argument list."""
    for arg in args:
        match = _URL_IN_ARG_PATTERN.search(arg)
        if match:
            return match.group(0)
    return None


def _server_type_value(server_type: object) -> str:
    value = getattr(server_type, "value", server_type)
    return str(value).strip().upper()
