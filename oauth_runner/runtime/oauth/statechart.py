from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from oauth_runner.models import OAuthSessionStatus


class SessionEvent:
    SPAWNED = "process.spawned"
    SPAWN_FAILED = "process.spawn_failed"
    BUILD_FAILED = "invocation.build_failed"
    URL_FOUND = "scanner.url_found"
    TOKEN_FOUND = "scanner.token_found"
    EXITED_COMPLETE = "process.exited_complete"
    EXITED_FAILED = "process.exited_failed"
    DEADLINE_ELAPSED = "session.deadline_elapsed"
    CANCELED = "session.canceled"


TERMINAL_STATES = {
    OAuthSessionStatus.COMPLETED.value,
    OAuthSessionStatus.FAILED.value,
    OAuthSessionStatus.TIMED_OUT.value,
    OAuthSessionStatus.CANCELLED.value,
}


@dataclass(frozen=True)
class Transition:
    source: str
    event: str
    target: str


TRANSITIONS: tuple[Transition, ...] = (
    Transition("pending", SessionEvent.SPAWNED, "running"),
    Transition("pending", SessionEvent.BUILD_FAILED, "failed"),
    Transition("pending", SessionEvent.SPAWN_FAILED, "failed"),
    Transition("pending", SessionEvent.CANCELED, "cancelled"),
    Transition("running", SessionEvent.URL_FOUND, "url_issued"),
    Transition("running", SessionEvent.TOKEN_FOUND, "completed"),
    Transition("running", SessionEvent.EXITED_COMPLETE, "completed"),
    Transition("running", SessionEvent.EXITED_FAILED, "failed"),
    Transition("running", SessionEvent.DEADLINE_ELAPSED, "timed_out"),
    Transition("running", SessionEvent.CANCELED, "cancelled"),
    Transition("url_issued", SessionEvent.TOKEN_FOUND, "completed"),
    Transition("url_issued", SessionEvent.EXITED_COMPLETE, "completed"),
    Transition("url_issued", SessionEvent.EXITED_FAILED, "failed"),
    Transition("url_issued", SessionEvent.DEADLINE_ELAPSED, "timed_out"),
    Transition("url_issued", SessionEvent.CANCELED, "cancelled"),
)

_TRANSITION_INDEX: Dict[tuple[str, str], Transition] = {
    (row.source, row.event): row for row in TRANSITIONS
}


def transition_rows() -> Iterable[Transition]:
    return TRANSITIONS


def is_terminal(status: OAuthSessionStatus | str) -> bool:
    value = status.value if isinstance(status, OAuthSessionStatus) else str(status)
    return value in TERMINAL_STATES


def next_status(source: OAuthSessionStatus, event: str) -> Optional[OAuthSessionStatus]:
    """Target state for `event`, or None when the event does not apply in `source`."""
    row = _TRANSITION_INDEX.get((source.value, event))
    if row is None:
        return None
    return OAuthSessionStatus(row.target)
