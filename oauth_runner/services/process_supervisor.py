from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import signal
import subprocess
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Mapping, Optional

from ..config import config
from ..errors import SpawnError
from ..runtime.oauth.contracts import Invocation

logger = logging.getLogger(__name__)

_LINE_BREAK_PATTERN = re.compile(r"\r\n|\r|\n")


def build_process_env(
    invocation_env: Mapping[str, str],
    inherited_keys: Iterable[str] | None = None,
    source: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Minimal inherited environment with the invocation's variables on top."""
    keys = inherited_keys if inherited_keys is not None else config.OAUTH.INHERITED_ENV_KEYS
    origin = source if source is not None else os.environ
    env = {key: origin[key] for key in keys if key in origin}
    env.update({str(k): str(v) for k, v in invocation_env.items()})
    return env


class ProcessSupervisor:
    """
    Owns one helper process: spawn, merged output stream, bounded termination.

    stdout and stderr share one pipe so lines arrive in the order the helper
    wrote them.
    """

    def __init__(
        self,
        invocation: Invocation,
        *,
        terminate_grace_sec: float | None = None,
        inherited_env_keys: Iterable[str] | None = None,
        cwd: Path | None = None,
        read_chunk_size: int = 1024,
        max_line_chars: int | None = None,
        prefix: str = "OAuthHelper",
    ) -> None:
        self.invocation = invocation
        self.terminate_grace_sec = float(
            terminate_grace_sec if terminate_grace_sec is not None else config.OAUTH.TERMINATE_GRACE_SEC
        )
        self._inherited_env_keys = inherited_env_keys
        self._cwd = cwd
        self._read_chunk_size = read_chunk_size
        self._max_line_chars = int(max_line_chars or config.OAUTH.OUTPUT_BUFFER_MAX_CHARS)
        self._prefix = prefix
        self._proc: asyncio.subprocess.Process | None = None
        self._terminate_lock = asyncio.Lock()

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc is not None else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        if self._proc is not None:
            return
        for path in self.invocation.writable_paths:
            try:
                Path(path).mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise SpawnError(self.invocation.program, f"cannot prepare {path}: {exc.strerror or exc}") from exc
        kwargs: dict[str, Any] = {
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.STDOUT,
            "env": build_process_env(self.invocation.env, self._inherited_env_keys),
        }
        if self._cwd is not None:
            kwargs["cwd"] = str(self._cwd)
        if os.name == "nt":
            kwargs["creationflags"] = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        else:
            kwargs["start_new_session"] = True
        try:
            self._proc = await asyncio.create_subprocess_exec(*self.invocation.argv(), **kwargs)
        except FileNotFoundError as exc:
            raise SpawnError(self.invocation.program, "executable not found") from exc
        except PermissionError as exc:
            raise SpawnError(self.invocation.program, "permission denied") from exc
        except OSError as exc:
            raise SpawnError(self.invocation.program, str(exc)) from exc
        logger.info("[%s] spawned %s (pid=%s)", self._prefix, self.invocation.program, self._proc.pid)

    async def lines(self) -> AsyncIterator[str]:
        """Yield decoded output lines while the helper runs; ends at EOF."""
        if self._proc is None or self._proc.stdout is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await self._proc.stdout.read(self._read_chunk_size)
            if not chunk:
                break
            data = pending + decoder.decode(chunk)
            hold_cr = data.endswith("\r")
            parts = _LINE_BREAK_PATTERN.split(data[:-1] if hold_cr else data)
            pending = parts.pop() + ("\r" if hold_cr else "")
            for line in parts:
                yield line
            # Output without line breaks is cut into bounded pieces
            while len(pending) > self._max_line_chars:
                yield pending[:self._max_line_chars]
                pending = pending[self._max_line_chars:]
        pending = (pending + decoder.decode(b"", final=True)).rstrip("\r")
        if pending:
            yield pending

    async def wait(self) -> int:
        if self._proc is None:
            raise RuntimeError("helper process was never started")
        return await self._proc.wait()

    async def terminate(self) -> None:
        """SIGTERM, then SIGKILL after the grace window. Safe to call repeatedly."""
        async with self._terminate_lock:
            proc = self._proc
            if proc is None or proc.returncode is not None:
                return
            if os.name == "nt":
                await self._terminate_windows(proc)
            else:
                await self._terminate_posix(proc)

    async def _terminate_posix(self, proc: asyncio.subprocess.Process) -> None:
        try:
            pgid = os.getpgid(proc.pid)
        except ProcessLookupError:
            return
        except OSError:
            pgid = None

        if pgid is not None and pgid == proc.pid:
            try:
                os.killpg(pgid, signal.SIGTERM)
                await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace_sec)
                return
            except asyncio.TimeoutError:
                logger.warning("[%s] process group SIGTERM timeout, escalating to SIGKILL", self._prefix)
                try:
                    os.killpg(pgid, signal.SIGKILL)
                    await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace_sec)
                    return
                except ProcessLookupError:
                    return
                except Exception:
                    logger.warning("[%s] process group SIGKILL failed", self._prefix, exc_info=True)
            except ProcessLookupError:
                return
            except Exception:
                logger.warning("[%s] process group termination failed", self._prefix, exc_info=True)

        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace_sec)
        except ProcessLookupError:
            return
        except Exception:
            try:
                proc.kill()
                await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace_sec)
            except ProcessLookupError:
                return
            except Exception:
                logger.warning("[%s] fallback terminate/kill failed", self._prefix, exc_info=True)

    async def _terminate_windows(self, proc: asyncio.subprocess.Process) -> None:
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace_sec)
            return
        except Exception:
            pass
        try:
            proc.kill()
            await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace_sec)
        except Exception:
            logger.warning("[%s] windows terminate/kill failed", self._prefix, exc_info=True)
