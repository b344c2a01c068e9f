from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenRecord:
    token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[str] = None
    scope: Optional[str] = None
    source: Optional[Path] = None


class McpAuthTokenProbe:
    """
    Look for tokens that OAuth helpers persist on their own.

    Helpers such as mcp-remote write their credentials into a config
    directory instead of printing them; different helpers use different file
    layouts, so several well-known names are tried before falling back to any
    JSON file in a subdirectory.
    """

    def __init__(self, roots: Iterable[Path] = ()) -> None:
        self.roots = tuple(roots)

    def find(self, server_name: str, extra_roots: Iterable[Path] = ()) -> Optional[TokenRecord]:
        for root in (*extra_roots, *self.roots):
            record = self._probe_root(Path(root), server_name)
            if record is not None:
                return record
        return None

    def _probe_root(self, root: Path, server_name: str) -> Optional[TokenRecord]:
        if not root.is_dir():
            return None
        name = Path(server_name).name
        names = (f"{name}.json", f"{name}-token.json") if name else ()
        for filename in (*names, "tokens.json", "auth.json"):
            record = self._read_token_file(root / filename)
            if record is not None:
                return record
        try:
            entries = sorted(root.iterdir())
        except OSError:
            return None
        for entry in entries:
            if not entry.is_dir():
                continue
            try:
                candidates = sorted(entry.glob("*.json"), key=lambda p: (not p.name.endswith("_tokens.json"), p.name))
            except OSError:
                continue
            for candidate in candidates:
                record = self._read_token_file(candidate)
                if record is not None:
                    return record
        return None

    def _read_token_file(self, path: Path) -> Optional[TokenRecord]:
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.debug("Skipping unreadable token file %s", path)
            return None
        if not isinstance(data, dict):
            return None
        oauth = data.get("oauth") if isinstance(data.get("oauth"), dict) else {}
        token = _first_str(
            data.get("access_token"),
            data.get("accessToken"),
            data.get("token"),
            oauth.get("access_token"),
            oauth.get("accessToken"),
        )
        if token is None:
            return None
        return TokenRecord(
            token=token,
            refresh_token=_first_str(data.get("refresh_token"), data.get("refreshToken")),
            expires_at=_first_str(data.get("expires_at"), data.get("expiresAt")),
            scope=_first_str(data.get("scope")),
            source=path,
        )


def _first_str(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
