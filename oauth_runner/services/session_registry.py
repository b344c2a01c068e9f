from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Coroutine, Dict, Iterable, Optional, Protocol

from ..config import config
from ..errors import (
    AlreadyInProgressError,
    BuilderError,
    OAuthRunnerError,
    ProcessExitError,
    SessionTimeoutError,
    SpawnError,
)
from ..models import OAuthSessionSnapshot, OAuthSessionStatus, RequestIntent
from ..runtime.oauth.contracts import BuildResult, CredentialHandoff, Invocation, ServerDescription
from ..runtime.oauth.log_writer import SessionLogPaths, SessionLogWriter
from ..runtime.oauth.statechart import SessionEvent, is_terminal, next_status
from .credential_sink import CredentialSink, is_placeholder_token
from .invocation_builder import STRATEGY_REMOTE_PROXY, InvocationBuilder
from .output_scanner import OutputScanner, ScanSignal, TokenFound, UrlFound
from .process_supervisor import ProcessSupervisor
from .sandbox import SandboxAdapter
from .token_probe import McpAuthTokenProbe, TokenRecord

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SupervisorProtocol(Protocol):
    @property
    def pid(self) -> Optional[int]:
        ...

    @property
    def running(self) -> bool:
        ...

    async def start(self) -> None:
        ...

    def lines(self) -> AsyncIterator[str]:
        ...

    async def wait(self) -> int:
        ...

    async def terminate(self) -> None:
        ...


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


SupervisorFactory = Callable[[Invocation], SupervisorProtocol]
ScannerFactory = Callable[[Iterable[str]], OutputScanner]


@dataclass
class OAuthSession:
    server_id: str
    server_name: str
    session_id: str
    created_at: datetime
    updated_at: datetime
    deadline: datetime
    status: OAuthSessionStatus = OAuthSessionStatus.PENDING
    strategy: str = "unknown"
    invocation: Invocation | None = None
    sandbox_backend: Optional[str] = None
    callback_port: Optional[int] = None
    remote_url: Optional[str] = None
    provider_hint: Optional[str] = None
    auth_dir: Optional[str] = None
    oauth_url: Optional[str] = None
    token: Optional[str] = field(default=None, repr=False)
    token_record: TokenRecord | None = field(default=None, repr=False)
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    exit_code: Optional[int] = None
    output_buffer: str = ""
    released: bool = False
    first_signal: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    supervisor: SupervisorProtocol | None = field(default=None, repr=False)
    scanner: OutputScanner | None = field(default=None, repr=False)
    log_paths: SessionLogPaths | None = field(default=None, repr=False)
    _reader_task: asyncio.Task[Any] | None = field(default=None, repr=False)
    _deadline_task: asyncio.Task[Any] | None = field(default=None, repr=False)
    _cleanup_task: asyncio.Task[Any] | None = field(default=None, repr=False)

    @property
    def terminal(self) -> bool:
        return is_terminal(self.status)

    def append_output(self, line: str, max_chars: int) -> None:
        if self.terminal:
            return
        self.output_buffer = (self.output_buffer + line + "\n")[-max_chars:]

    def to_snapshot(self) -> OAuthSessionSnapshot:
        return OAuthSessionSnapshot(
            server_id=self.server_id,
            server_name=self.server_name,
            session_id=self.session_id,
            status=self.status,
            strategy=self.strategy,
            callback_port=self.callback_port,
            sandbox_backend=self.sandbox_backend,
            oauth_url=self.oauth_url,
            completed_with_token=not is_placeholder_token(self.token),
            error=self.error,
            exit_code=self.exit_code,
            created_at=self.created_at,
            updated_at=self.updated_at,
            deadline=self.deadline,
        )


class SessionRegistry:
    """
    Single-flight owner of OAuth helper sessions, keyed by server id.

    Every mutation of a server's entry (insert, transition, removal) happens
    under that server's lock; different servers never contend. Each live
    session owns one helper process, one output reader task and one deadline
    task. Terminal sessions stay visible for `cleanup_delay_sec` and are then
    terminated (again, idempotently) and removed.
    """

    def __init__(
        self,
        *,
        builder: InvocationBuilder,
        sandbox_adapter: SandboxAdapter,
        supervisor_factory: SupervisorFactory | None = None,
        scanner_factory: ScannerFactory | None = None,
        credential_sink: CredentialSink | None = None,
        token_probe: McpAuthTokenProbe | None = None,
        log_writer: SessionLogWriter | None = None,
        first_signal_timeout_sec: float | None = None,
        session_ttl_sec: float | None = None,
        cleanup_delay_sec: float | None = None,
        output_buffer_max_chars: int | None = None,
    ) -> None:
        self.builder = builder
        self.sandbox_adapter = sandbox_adapter
        self.supervisor_factory: SupervisorFactory = supervisor_factory or ProcessSupervisor
        self.scanner_factory: ScannerFactory = scanner_factory or (
            lambda ignored_urls: OutputScanner(ignored_urls=ignored_urls)
        )
        self.credential_sink = credential_sink
        self.token_probe = token_probe or McpAuthTokenProbe()
        self.log_writer = log_writer
        self.first_signal_timeout_sec = float(
            first_signal_timeout_sec
            if first_signal_timeout_sec is not None
            else config.OAUTH.FIRST_SIGNAL_TIMEOUT_SEC
        )
        self.session_ttl_sec = float(
            session_ttl_sec if session_ttl_sec is not None else config.OAUTH.SESSION_TTL_SEC
        )
        self.cleanup_delay_sec = float(
            cleanup_delay_sec if cleanup_delay_sec is not None else config.OAUTH.CLEANUP_DELAY_SEC
        )
        self.output_buffer_max_chars = int(output_buffer_max_chars or config.OAUTH.OUTPUT_BUFFER_MAX_CHARS)
        self._sessions: Dict[str, OAuthSession] = {}
        self._key_locks: Dict[str, _KeyLock] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._accepting = True

    # ------------------------------------------------------------------
    # Host lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._accepting = True
        logger.info(
            "OAuth session registry started: first_signal_timeout=%ss ttl=%ss cleanup_delay=%ss",
            self.first_signal_timeout_sec,
            self.session_ttl_sec,
            self.cleanup_delay_sec,
        )

    async def shutdown(self) -> None:
        """Cancel every live session and drop everything, without the grace delay."""
        self._accepting = False
        for server_id in list(self._sessions):
            await self.cancel_session(server_id, reason="Service shutting down")
            async with self._server_lock(server_id):
                session = self._sessions.get(server_id)
                if session is not None:
                    await self._release_locked(session)
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("OAuth session registry drained")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, server_id: str) -> Optional[OAuthSession]:
        return self._sessions.get(server_id)

    def snapshot(self, server_id: str) -> Optional[OAuthSessionSnapshot]:
        session = self._sessions.get(server_id)
        return session.to_snapshot() if session is not None else None

    def has_active_session(self, server_id: str) -> bool:
        session = self._sessions.get(server_id)
        return session is not None and not session.terminal

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start_session(
        self,
        server: ServerDescription,
        *,
        sandboxing_requested: bool = True,
        intent: RequestIntent = RequestIntent.REUSE,
    ) -> OAuthSession:
        """
        Start (or join) the OAuth helper session for `server`.

        Returns once the session has a URL, a completion, a failure, or the
        first-signal timeout elapsed; the helper keeps running in the
        background in the first and last cases.
        """
        if not self._accepting:
            raise RuntimeError("OAuth session registry is shut down")
        async with self._server_lock(server.server_id):
            session = self._sessions.get(server.server_id)
            if session is not None and not session.terminal:
                if intent == RequestIntent.REJECT:
                    raise AlreadyInProgressError(server.server_id, session.status.value)
                logger.info(
                    "OAuth session for %s already %s; joining it",
                    server.server_name,
                    session.status.value,
                )
            else:
                if session is not None:
                    # previous attempt is resolved but still inside its cleanup window
                    await self._release_locked(session)
                session = await self._create_locked(server, sandboxing_requested)
        await self._wait_first_signal(session)
        return session

    async def cancel_session(self, server_id: str, reason: str = "Cancelled by user") -> Optional[OAuthSession]:
        async with self._server_lock(server_id):
            session = self._sessions.get(server_id)
            if session is None or session.terminal:
                return session
            if session.supervisor is not None:
                await session.supervisor.terminate()
            await self._transition_locked(
                session,
                SessionEvent.CANCELED,
                error=reason,
                error_code="CANCELLED",
            )
            return session

    # ------------------------------------------------------------------
    # Session creation
    # ------------------------------------------------------------------

    async def _create_locked(self, server: ServerDescription, sandboxing_requested: bool) -> OAuthSession:
        now = _utc_now()
        session = OAuthSession(
            server_id=server.server_id,
            server_name=server.server_name,
            session_id=uuid.uuid4().hex,
            created_at=now,
            updated_at=now,
            deadline=now + timedelta(seconds=self.session_ttl_sec),
        )
        self._sessions[server.server_id] = session
        if self.log_writer is not None:
            session.log_paths = self.log_writer.init_paths(
                server_id=server.server_id,
                session_id=session.session_id,
            )
        self._log_event(session, "session.created", {"server_name": server.server_name})

        try:
            build = self.builder.build(server)
        except BuilderError as exc:
            logger.warning("Cannot build OAuth helper for %s: %s", server.server_name, exc.message)
            await self._fail_locked(session, SessionEvent.BUILD_FAILED, exc)
            return session
        except Exception:
            logger.exception("Unexpected error building OAuth helper for %s", server.server_name)
            await self._fail_locked(
                session,
                SessionEvent.BUILD_FAILED,
                OAuthRunnerError(code="INTERNAL_ERROR", message="Failed to prepare OAuth helper"),
            )
            return session

        self._apply_build(session, build, sandboxing_requested)
        assert session.invocation is not None
        session.scanner = self.scanner_factory([build.remote_url] if build.remote_url else [])
        try:
            supervisor = self.supervisor_factory(session.invocation)
            await supervisor.start()
        except SpawnError as exc:
            logger.error("OAuth helper for %s failed to spawn: %s", server.server_name, exc.message)
            await self._fail_locked(session, SessionEvent.SPAWN_FAILED, exc)
            return session
        except Exception as exc:
            logger.exception("Unexpected error spawning OAuth helper for %s", server.server_name)
            await self._fail_locked(
                session,
                SessionEvent.SPAWN_FAILED,
                SpawnError(session.invocation.program, str(exc) or type(exc).__name__),
            )
            return session

        session.supervisor = supervisor
        await self._transition_locked(session, SessionEvent.SPAWNED, pid=supervisor.pid)
        session._reader_task = self._spawn_task(self._consume_output(session))
        session._deadline_task = self._spawn_task(self._watch_deadline(session))
        return session

    def _apply_build(self, session: OAuthSession, build: BuildResult, sandboxing_requested: bool) -> None:
        sandbox = self.sandbox_adapter.apply(build.invocation, sandboxing_requested)
        session.strategy = build.strategy
        session.invocation = sandbox.invocation
        session.sandbox_backend = sandbox.backend
        session.callback_port = build.callback_port
        session.remote_url = build.remote_url
        session.provider_hint = build.provider_hint
        session.auth_dir = build.auth_dir
        if sandbox.backend is None and sandboxing_requested:
            logger.warning("OAuth helper for %s runs without sandbox", session.server_name)
        self._log_event(
            session,
            "invocation.resolved",
            {
                "strategy": build.strategy,
                "program": sandbox.invocation.program,
                "sandbox_backend": sandbox.backend,
                "callback_port": build.callback_port,
            },
        )

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    async def _consume_output(self, session: OAuthSession) -> None:
        supervisor = session.supervisor
        scanner = session.scanner
        if supervisor is None or scanner is None:
            return
        try:
            async for line in supervisor.lines():
                self._record_output(session, line)
                for signal in scanner.feed_line(line):
                    await self._on_signal(session, signal)
            for signal in scanner.finish():
                await self._on_signal(session, signal)
            exit_code = await supervisor.wait()
            await self._on_exit(session, exit_code)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("OAuth helper supervision failed for %s", session.server_name)
            async with self._server_lock(session.server_id):
                if session.terminal:
                    return
                await supervisor.terminate()
                await self._transition_locked(
                    session,
                    SessionEvent.EXITED_FAILED,
                    error="OAuth helper supervision failed",
                    error_code="INTERNAL_ERROR",
                )

    async def _watch_deadline(self, session: OAuthSession) -> None:
        remaining = (session.deadline - _utc_now()).total_seconds()
        await asyncio.sleep(max(0.0, remaining))
        async with self._server_lock(session.server_id):
            if session.terminal or session.released:
                return
            logger.warning(
                "OAuth session for %s timed out after %ss; terminating helper",
                session.server_name,
                self.session_ttl_sec,
            )
            if session.supervisor is not None:
                await session.supervisor.terminate()
            timeout = SessionTimeoutError(self.session_ttl_sec)
            await self._transition_locked(
                session,
                SessionEvent.DEADLINE_ELAPSED,
                error=timeout.message,
                error_code=timeout.code,
                retryable=True,
            )

    async def _deferred_cleanup(self, session: OAuthSession) -> None:
        await asyncio.sleep(self.cleanup_delay_sec)
        async with self._server_lock(session.server_id):
            await self._release_locked(session)

    def _spawn_task(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Signal handling
    # ------------------------------------------------------------------

    def _record_output(self, session: OAuthSession, line: str) -> None:
        session.append_output(line, self.output_buffer_max_chars)
        if self.log_writer is not None:
            self.log_writer.append_output(session.log_paths, line)

    async def _on_signal(self, session: OAuthSession, signal: ScanSignal) -> None:
        if isinstance(signal, UrlFound):
            async with self._server_lock(session.server_id):
                if await self._transition_locked(session, SessionEvent.URL_FOUND, oauth_url=signal.url):
                    logger.info("OAuth URL issued for %s", session.server_name)
            return
        if isinstance(signal, TokenFound):
            async with self._server_lock(session.server_id):
                if session.terminal:
                    return
                record = None
                if signal.token is None:
                    record = await self._probe_tokens(session)
                await self._complete_locked(session, SessionEvent.TOKEN_FOUND, signal.token, record)

    async def _on_exit(self, session: OAuthSession, exit_code: int) -> None:
        async with self._server_lock(session.server_id):
            session.exit_code = exit_code
            if session.terminal:
                return
            scanner = session.scanner
            tail = scanner.tail() if scanner is not None else ""
            if exit_code == 0:
                record = await self._probe_tokens(session)
                success_seen = scanner is not None and scanner.success_seen
                clean = scanner is None or not scanner.error_seen
                if record is not None or success_seen or (session.strategy == STRATEGY_REMOTE_PROXY and clean):
                    await self._complete_locked(session, SessionEvent.EXITED_COMPLETE, None, record)
                    return
                logger.warning(
                    "OAuth helper for %s exited cleanly without a completion signal: %s",
                    session.server_name,
                    tail or "-",
                )
            else:
                logger.warning(
                    "OAuth helper for %s exited with code %s: %s",
                    session.server_name,
                    exit_code,
                    tail or "-",
                )
            error = ProcessExitError(exit_code, tail)
            await self._transition_locked(
                session,
                SessionEvent.EXITED_FAILED,
                error=error.message,
                error_code=error.code,
            )

    async def _probe_tokens(self, session: OAuthSession) -> TokenRecord | None:
        roots = [Path(session.auth_dir)] if session.auth_dir else []
        try:
            return await asyncio.to_thread(self.token_probe.find, session.server_name, roots)
        except Exception:
            logger.warning("Token directory probe failed for %s", session.server_name, exc_info=True)
            return None

    async def _complete_locked(
        self,
        session: OAuthSession,
        event: str,
        token: Optional[str],
        record: TokenRecord | None,
    ) -> None:
        if token is None and record is not None:
            token = record.token
        if not await self._transition_locked(session, event, token=token, token_record=record):
            return
        logger.info(
            "OAuth completed for %s (%s)",
            session.server_name,
            "token captured" if not is_placeholder_token(token) else "credential managed by helper",
        )
        if self.credential_sink is None or is_placeholder_token(token):
            return
        assert token is not None
        handoff = CredentialHandoff(
            server_id=session.server_id,
            token=token,
            provider_hint=session.provider_hint,
            refresh_token=record.refresh_token if record else None,
            expires_at=record.expires_at if record else None,
            scope=record.scope if record else None,
        )
        try:
            await self.credential_sink.store(handoff)
        except Exception:
            logger.exception("Credential sink rejected token for %s", session.server_name)

    # ------------------------------------------------------------------
    # Transitions and cleanup (caller holds the server lock)
    # ------------------------------------------------------------------

    async def _fail_locked(self, session: OAuthSession, event: str, exc: OAuthRunnerError) -> None:
        await self._transition_locked(
            session,
            event,
            error=exc.message,
            error_code=exc.code,
            retryable=exc.retryable,
        )

    async def _transition_locked(self, session: OAuthSession, event: str, **changes: Any) -> bool:
        target = next_status(session.status, event)
        if target is None:
            logger.debug(
                "Ignoring %s for %s in state %s",
                event,
                session.server_name,
                session.status.value,
            )
            return False
        previous = session.status
        pid = changes.pop("pid", None)
        for key, value in changes.items():
            setattr(session, key, value)
        session.status = target
        session.updated_at = _utc_now()
        payload: dict[str, Any] = {"event": event, "from": previous.value, "to": target.value}
        if pid is not None:
            payload["pid"] = pid
        if session.error and session.terminal:
            payload["error"] = session.error
        self._log_event(session, "session.transition", payload)

        if target == OAuthSessionStatus.URL_ISSUED or session.terminal:
            session.first_signal.set()
        if session.terminal:
            self._on_terminal_locked(session)
        return True

    def _on_terminal_locked(self, session: OAuthSession) -> None:
        current = asyncio.current_task()
        if session._deadline_task is not None and session._deadline_task is not current:
            session._deadline_task.cancel()
        session._cleanup_task = self._spawn_task(self._deferred_cleanup(session))

    async def _release_locked(self, session: OAuthSession) -> None:
        if session.released:
            return
        session.released = True
        if session.supervisor is not None:
            await session.supervisor.terminate()
        current = asyncio.current_task()
        for task in (session._reader_task, session._deadline_task, session._cleanup_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        session.scanner = None
        if self._sessions.get(session.server_id) is session:
            del self._sessions[session.server_id]
        self._log_event(session, "session.removed", {"status": session.status.value})
        logger.debug("OAuth session %s for %s removed", session.session_id, session.server_name)

    @asynccontextmanager
    async def _server_lock(self, server_id: str) -> AsyncIterator[None]:
        entry = self._key_locks.get(server_id)
        if entry is None:
            entry = _KeyLock()
            self._key_locks[server_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            # waiters hold a use, so an entry with none left is safe to drop
            if entry.users == 0 and self._key_locks.get(server_id) is entry:
                del self._key_locks[server_id]

    def _log_event(self, session: OAuthSession, event_type: str, payload: dict[str, Any] | None = None) -> None:
        if self.log_writer is not None:
            self.log_writer.append_event(session.log_paths, event_type, payload)

    async def _wait_first_signal(self, session: OAuthSession) -> None:
        if session.first_signal.is_set():
            return
        try:
            await asyncio.wait_for(session.first_signal.wait(), timeout=self.first_signal_timeout_sec)
        except asyncio.TimeoutError:
            logger.info(
                "No OAuth signal from %s within %ss; helper keeps running",
                session.server_name,
                self.first_signal_timeout_sec,
            )
