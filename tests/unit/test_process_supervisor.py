import asyncio
import sys

import pytest

from oauth_runner.errors import SpawnError
from oauth_runner.runtime.oauth.contracts import Invocation
from oauth_runner.services.process_supervisor import ProcessSupervisor, build_process_env


def _python(code: str, env=None) -> Invocation:
    return Invocation(program=sys.executable, args=("-c", code), env=env or {})


def test_build_process_env_is_minimal():
    source = {"PATH": "/usr/bin", "HOME": "/home/u", "AWS_SECRET_ACCESS_KEY": "x"}
    env = build_process_env({"OAUTH_CALLBACK_PORT": "14881"}, ["PATH", "HOME"], source)
    assert env == {"PATH": "/usr/bin", "HOME": "/home/u", "OAUTH_CALLBACK_PORT": "14881"}


@pytest.mark.asyncio
async def test_lines_are_streamed_in_order_with_stderr_merged():
    code = (
        "import sys\n"
        "print('first', flush=True)\n"
        "print('second', file=sys.stderr, flush=True)\n"
        "sys.stdout.write('progress\\rthird\\nno-newline')\n"
    )
    supervisor = ProcessSupervisor(_python(code), terminate_grace_sec=1)
    await supervisor.start()
    lines = [line async for line in supervisor.lines()]
    assert await supervisor.wait() == 0
    assert lines == ["first", "second", "progress", "third", "no-newline"]
    assert not supervisor.running


@pytest.mark.asyncio
async def test_invocation_env_reaches_process():
    code = "import os; print(os.environ.get('OAUTH_CALLBACK_PORT'))"
    supervisor = ProcessSupervisor(_python(code, {"OAUTH_CALLBACK_PORT": "14881"}))
    await supervisor.start()
    lines = [line async for line in supervisor.lines()]
    await supervisor.wait()
    assert lines == ["14881"]


@pytest.mark.asyncio
async def test_terminate_kills_sleeping_process_and_is_idempotent():
    supervisor = ProcessSupervisor(_python("import time; time.sleep(30)"), terminate_grace_sec=1)
    await supervisor.start()
    assert supervisor.running
    await supervisor.terminate()
    assert not supervisor.running
    assert supervisor.returncode is not None
    await supervisor.terminate()
    assert supervisor.returncode is not None


@pytest.mark.asyncio
async def test_terminate_escalates_when_sigterm_is_ignored():
    code = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )
    supervisor = ProcessSupervisor(_python(code), terminate_grace_sec=0.3)
    await supervisor.start()
    lines = supervisor.lines()
    assert await asyncio.wait_for(lines.__anext__(), timeout=5) == "ready"
    await asyncio.wait_for(supervisor.terminate(), timeout=5)
    assert not supervisor.running
    await lines.aclose()


@pytest.mark.asyncio
async def test_missing_executable_raises_spawn_error():
    supervisor = ProcessSupervisor(Invocation(program="definitely-not-a-real-helper-binary"))
    with pytest.raises(SpawnError) as exc_info:
        await supervisor.start()
    assert exc_info.value.code == "SPAWN_FAILED"
    assert supervisor.pid is None
    await supervisor.terminate()


@pytest.mark.asyncio
async def test_output_without_line_breaks_is_split_into_bounded_lines():
    code = "import sys; sys.stdout.write('x' * 100000); sys.stdout.flush()"
    supervisor = ProcessSupervisor(_python(code), terminate_grace_sec=1, max_line_chars=4096)
    await supervisor.start()
    lines = [line async for line in supervisor.lines()]
    assert await supervisor.wait() == 0
    assert all(len(line) <= 4096 for line in lines)
    assert sum(len(line) for line in lines) == 100000
    assert set("".join(lines)) == {"x"}


@pytest.mark.asyncio
async def test_writable_paths_are_created_before_spawn(tmp_path):
    auth_dir = tmp_path / "mcp-auth" / "linear"
    code = f"import os; print(os.path.isdir({str(auth_dir)!r}))"
    invocation = Invocation(program=sys.executable, args=("-c", code), writable_paths=(str(auth_dir),))
    supervisor = ProcessSupervisor(invocation, terminate_grace_sec=1)
    await supervisor.start()
    lines = [line async for line in supervisor.lines()]
    await supervisor.wait()
    assert lines == ["True"]
    assert auth_dir.is_dir()


@pytest.mark.asyncio
async def test_unpreparable_writable_path_raises_spawn_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    invocation = Invocation(program=sys.executable, args=("-c", "pass"), writable_paths=(str(blocker / "auth"),))
    supervisor = ProcessSupervisor(invocation)
    with pytest.raises(SpawnError) as exc_info:
        await supervisor.start()
    assert exc_info.value.code == "SPAWN_FAILED"
    assert "cannot prepare" in exc_info.value.message
    assert not supervisor.running
