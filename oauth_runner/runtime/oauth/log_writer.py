from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class SessionLogPaths:
    server_id: str
    session_id: str
    root: Path
    events_path: Path
    output_path: Path


class SessionLogWriter:
    """Operator-only trail of one helper session: transitions and raw output."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def init_paths(self, *, server_id: str, session_id: str) -> SessionLogPaths | None:
        session_root = self.root / _safe_segment(server_id) / session_id
        try:
            session_root.mkdir(parents=True, exist_ok=True)
            events_path = session_root / "events.jsonl"
            output_path = session_root / "output.log"
            events_path.touch(exist_ok=True)
            output_path.touch(exist_ok=True)
        except OSError:
            logger.warning("Cannot create OAuth session log dir %s", session_root, exc_info=True)
            return None
        return SessionLogPaths(
            server_id=server_id,
            session_id=session_id,
            root=session_root,
            events_path=events_path,
            output_path=output_path,
        )

    def append_event(
        self,
        paths: SessionLogPaths | None,
        event_type: str,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        if paths is None:
            return
        data = {
            "ts": _utc_iso_now(),
            "type": event_type,
            "server_id": paths.server_id,
            "session_id": paths.session_id,
        }
        if payload:
            data.update(payload)
        try:
            with paths.events_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(data, ensure_ascii=False) + "\n")
        except OSError:
            logger.warning("Failed to append OAuth session event %s", event_type, exc_info=True)

    def append_output(self, paths: SessionLogPaths | None, line: str) -> None:
        if paths is None:
            return
        try:
            with paths.output_path.open("a", encoding="utf-8") as stream:
                stream.write(line + "\n")
        except OSError:
            logger.warning("Failed to append OAuth helper output", exc_info=True)


def _safe_segment(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in value.strip())
    return cleaned.strip(".") or "server"
