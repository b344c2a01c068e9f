from __future__ import annotations

import logging
from typing import Protocol

from ..runtime.oauth.contracts import CredentialHandoff

logger = logging.getLogger(__name__)

PLACEHOLDER_TOKENS = {"", "true", "success", "ok", "authorized", "oauth_success"}


def is_placeholder_token(token: str | None) -> bool:
    return token is None or token.strip().lower() in PLACEHOLDER_TOKENS


class CredentialSink(Protocol):
    async def store(self, handoff: CredentialHandoff) -> None:
        ...


class InMemoryCredentialSink:
    """Default sink: keeps the latest handoff per server for the host to collect."""

    def __init__(self) -> None:
        self._handoffs: dict[str, CredentialHandoff] = {}

    async def store(self, handoff: CredentialHandoff) -> None:
        self._handoffs[handoff.server_id] = handoff
        logger.info(
            "OAuth credential received for server %s (provider=%s)",
            handoff.server_id,
            handoff.provider_hint or "-",
        )

    def pop(self, server_id: str) -> CredentialHandoff | None:
        return self._handoffs.pop(server_id, None)

    def get(self, server_id: str) -> CredentialHandoff | None:
        return self._handoffs.get(server_id)
