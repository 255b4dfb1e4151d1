"""
LocalSandbox behavior against the in-memory engine.

Covers lazy single-flight initialization, command results and
notifications, the run queue, file I/O, tools, and kill().
"""
from __future__ import annotations

import asyncio
from typing import Any, List

import pytest
import pytest_asyncio

from sandcastle.config import Settings
from sandcastle.engine.connection import ProcessResult
from sandcastle.engine.pool import ConnectionPool, PoolConfig
from sandcastle.exceptions import EngineError, ExecutionError
from sandcastle.models import CommandOptions
from sandcastle.sandbox.events import EndEvent, ErrorEvent, StartEvent, UpdateEvent
from sandcastle.sandbox.instance import NOT_RUNNING_MESSAGE, LocalSandbox, SandboxState
from tests.fakes import FakeDaemon, FakeToolManager


@pytest_asyncio.fixture
async def pool(daemon: FakeDaemon):
    pool = ConnectionPool(daemon.factory)
    yield pool
    await pool.close()


def _sandbox(pool: ConnectionPool, settings: Settings, sandbox_id: str = "sb-test", **kwargs: Any) -> LocalSandbox:
    return LocalSandbox(sandbox_id, pool=pool, settings=settings, **kwargs)


def _record(sandbox: LocalSandbox) -> List[Any]:
    events: List[Any] = []
    sandbox.on(events.append)
    return events


# Initialization


@pytest.mark.asyncio
async def test_initialization_is_lazy(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    sandbox = _sandbox(pool, settings)
    assert sandbox.state is SandboxState.UNINITIALIZED
    assert sandbox.workspace is None
    assert daemon.calls == []

    result = await sandbox.commands.run("echo hi")

    assert result.exit_code == 0
    assert result.stdout == "hi\n"
    assert sandbox.state is SandboxState.READY
    assert len(daemon.ops("start_container")) == 1
    await sandbox.kill()


@pytest.mark.asyncio
async def test_container_gets_env_workdir_and_cache_volume(
    pool: ConnectionPool, settings: Settings, daemon: FakeDaemon
) -> None:
    sandbox = _sandbox(pool, settings, envs={"API_KEY": "secret"}, workdir="/work")
    workspace = await sandbox.ensure_initialized()

    assert daemon.ops("create_volume") == [("create_volume", "sb-test-cache")]
    _, name, image, workdir, env, volume = daemon.ops("start_container")[0]
    assert name == "sb-test"
    assert image == "ubuntu:24.04"
    assert workdir == "/work"
    assert env == {"API_KEY": "secret"}
    assert volume == "sb-test-cache"
    assert workspace.revision == 0
    assert workspace.volume == "sb-test-cache"
    await sandbox.kill()


@pytest.mark.asyncio
async def test_root_agent_gets_no_cache_volume(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    sandbox = _sandbox(pool, settings, agent_type="grok")
    workspace = await sandbox.ensure_initialized()

    assert daemon.ops("create_volume") == []
    assert workspace.volume is None
    assert workspace.image == "sandcastle/sandcastle-grok:1.0"
    await sandbox.kill()


@pytest.mark.asyncio
async def test_concurrent_initialization_is_single_flight(
    pool: ConnectionPool, settings: Settings, daemon: FakeDaemon
) -> None:
    sandbox = _sandbox(pool, settings)
    workspaces = await asyncio.gather(*(sandbox.ensure_initialized() for _ in range(5)))

    assert len(daemon.ops("start_container")) == 1
    assert len(daemon.connections) == 1
    assert all(ws is workspaces[0] for ws in workspaces)
    await sandbox.kill()


@pytest.mark.asyncio
async def test_failed_initialization_is_retried(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    daemon.fail_counts["run"] = 1
    sandbox = _sandbox(pool, settings)
    events = _record(sandbox)

    first = await sandbox.commands.run("echo one")
    assert first.exit_code == 1
    assert first.stdout == ""
    assert "exit code 1" in first.stderr
    assert sandbox.state is SandboxState.UNINITIALIZED
    assert [type(e) for e in events] == [StartEvent, ErrorEvent, EndEvent]

    second = await sandbox.commands.run("echo two")
    assert second.exit_code == 0
    assert second.stdout == "two\n"
    assert len(daemon.ops("start_container")) == 2
    await sandbox.kill()


# Commands and notifications


@pytest.mark.asyncio
async def test_successful_run_emits_start_updates_end(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    daemon.exec_results["build.sh"] = ProcessResult(stdout="step 1\n\nstep 2\n", stderr="note\n", exit_code=0)
    sandbox = _sandbox(pool, settings)
    events = _record(sandbox)

    result = await sandbox.commands.run("build.sh")

    assert result.exit_code == 0
    assert result.stdout == "step 1\n\nstep 2\n"
    assert result.stderr == "note\n"
    assert isinstance(events[0], StartEvent) and events[0].command == "build.sh"
    updates = [e for e in events if isinstance(e, UpdateEvent)]
    assert [(u.line, u.stream) for u in updates] == [
        ("step 1", "stdout"),
        ("step 2", "stdout"),
        ("note", "stderr"),
    ]
    assert isinstance(events[-1], EndEvent)
    assert not any(isinstance(e, ErrorEvent) for e in events)
    await sandbox.kill()


@pytest.mark.asyncio
async def test_line_callbacks(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    daemon.exec_results["make"] = ProcessResult(stdout="a\nb\n", stderr="w\n", exit_code=0)
    sandbox = _sandbox(pool, settings)
    out: List[str] = []
    err: List[str] = []

    await sandbox.commands.run("make", on_stdout=out.append, on_stderr=err.append)

    assert out == ["a", "b"]
    assert err == ["w"]
    await sandbox.kill()


@pytest.mark.asyncio
async def test_failed_command_returns_parsed_exit_code(
    pool: ConnectionPool, settings: Settings, daemon: FakeDaemon
) -> None:
    daemon.exec_results["pytest"] = EngineError(
        "docker exec failed with exit code 2: collection errors", exit_code=2
    )
    sandbox = _sandbox(pool, settings)
    events = _record(sandbox)

    result = await sandbox.commands.run("pytest")

    assert result.exit_code == 2
    assert result.stdout == ""
    assert "collection errors" in result.stderr
    assert [type(e) for e in events] == [StartEvent, ErrorEvent, EndEvent]
    assert events[1].exit_code == 2
    await sandbox.kill()


@pytest.mark.asyncio
async def test_failure_without_exit_code_defaults_to_one(
    pool: ConnectionPool, settings: Settings, daemon: FakeDaemon
) -> None:
    daemon.exec_results["weird"] = EngineError("connection reset by peer")
    sandbox = _sandbox(pool, settings)
    result = await sandbox.commands.run("weird")
    assert result.exit_code == 1
    await sandbox.kill()


@pytest.mark.asyncio
async def test_timeout_reports_exit_code_124(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    daemon.exec_delay = 0.5
    sandbox = _sandbox(pool, settings)
    result = await sandbox.commands.run("sleep 100", CommandOptions(timeout_seconds=0.05))
    assert result.exit_code == 124
    await sandbox.kill()


@pytest.mark.asyncio
async def test_background_command(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    sandbox = _sandbox(pool, settings)
    events = _record(sandbox)

    result = await sandbox.commands.run("npm run dev", background=True)

    assert result.exit_code == 0
    assert result.stdout == "Background command started: npm run dev"
    assert result.revision == 1
    _, _, command, detach, _ = daemon.ops("exec")[0]
    assert command == "npm run dev"
    assert detach is True
    assert [type(e) for e in events] == [StartEvent, EndEvent]
    await sandbox.kill()


@pytest.mark.asyncio
async def test_sanitizer_rejects_before_execution(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    sandbox = _sandbox(pool, settings)
    events = _record(sandbox)

    result = await sandbox.commands.run("ls; rm -rf /", sanitize=True)

    assert result.exit_code == 1
    assert "';'" in result.stderr
    assert daemon.ops("exec") == []
    assert [type(e) for e in events] == [StartEvent, ErrorEvent, EndEvent]

    # Quoted metacharacters pass
    ok = await sandbox.commands.run('echo "a; b"', sanitize=True)
    assert ok.exit_code == 0
    await sandbox.kill()


@pytest.mark.asyncio
async def test_runs_are_serialized_in_submission_order(
    pool: ConnectionPool, settings: Settings, daemon: FakeDaemon
) -> None:
    daemon.exec_delay = 0.01
    sandbox = _sandbox(pool, settings)

    results = await asyncio.gather(*(sandbox.commands.run(f"echo {n}") for n in range(4)))

    assert [r.stdout for r in results] == ["0\n", "1\n", "2\n", "3\n"]
    assert [call[2] for call in daemon.ops("exec")] == [f"echo {n}" for n in range(4)]
    assert [r.revision for r in results] == [1, 2, 3, 4]
    await sandbox.kill()


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_runs(pool: ConnectionPool, settings: Settings) -> None:
    sandbox = _sandbox(pool, settings)

    def broken(event: Any) -> None:
        raise RuntimeError("listener bug")

    sandbox.on(broken)
    result = await sandbox.commands.run("echo ok")
    assert result.exit_code == 0
    await sandbox.kill()


@pytest.mark.asyncio
async def test_unsubscribe(pool: ConnectionPool, settings: Settings) -> None:
    sandbox = _sandbox(pool, settings)
    events: List[Any] = []
    unsubscribe = sandbox.on(events.append)
    await sandbox.commands.run("echo one")
    seen = len(events)
    unsubscribe()
    await sandbox.commands.run("echo two")
    assert len(events) == seen
    await sandbox.kill()


# Files


@pytest.mark.asyncio
async def test_write_then_read_file(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    sandbox = _sandbox(pool, settings)
    events = _record(sandbox)

    workspace = await sandbox.write_file("src/app.py", "print('hi')\n")
    assert workspace.revision == 1
    assert sandbox.workspace is workspace

    assert await sandbox.read_file("src/app.py") == "print('hi')\n"
    assert await sandbox.read_file("/workspace/src/app.py") == "print('hi')\n"
    # File operations emit no notifications
    assert events == []
    await sandbox.kill()


@pytest.mark.asyncio
async def test_read_missing_file_raises(pool: ConnectionPool, settings: Settings) -> None:
    sandbox = _sandbox(pool, settings)
    with pytest.raises(ExecutionError) as exc_info:
        await sandbox.read_file("nope.txt")
    assert exc_info.value.code == "read_failed"
    await sandbox.kill()


@pytest.mark.asyncio
async def test_revision_advances_across_operations(pool: ConnectionPool, settings: Settings) -> None:
    sandbox = _sandbox(pool, settings)
    first = await sandbox.commands.run("echo a")
    await sandbox.write_file("f.txt", "x")
    second = await sandbox.commands.run("echo b")
    assert (first.revision, second.revision) == (1, 3)
    await sandbox.kill()


# Tools


@pytest.mark.asyncio
async def test_tool_forwarding(pool: ConnectionPool, settings: Settings) -> None:
    manager = FakeToolManager()
    sandbox = _sandbox(
        pool,
        settings,
        tool_manager=manager,
        tool_config={"servers": [{"name": "web", "command": "web-mcp"}]},
    )

    tools = await sandbox.list_tools()
    assert tools[0]["name"] == "search"
    assert manager.servers == [{"name": "web", "command": "web-mcp"}]

    result = await sandbox.execute_tool("search", {"q": "python"})
    assert result == {"ok": True, "tool": "search"}
    assert manager.calls == [("search", {"q": "python"})]

    await sandbox.kill()
    assert manager.cleaned_up


@pytest.mark.asyncio
async def test_tools_without_manager_raise(pool: ConnectionPool, settings: Settings) -> None:
    sandbox = _sandbox(pool, settings)
    with pytest.raises(ExecutionError) as exc_info:
        await sandbox.list_tools()
    assert exc_info.value.code == "no_tool_manager"
    await sandbox.kill()


# Lifecycle


@pytest.mark.asyncio
async def test_killed_sandbox_run_returns_not_running(
    pool: ConnectionPool, settings: Settings, daemon: FakeDaemon
) -> None:
    sandbox = _sandbox(pool, settings)
    events = _record(sandbox)
    await sandbox.kill()

    result = await sandbox.commands.run("echo hi")

    assert result.exit_code == -1
    assert result.stderr == NOT_RUNNING_MESSAGE
    assert events == []
    assert daemon.ops("exec") == []


@pytest.mark.asyncio
async def test_killed_sandbox_file_ops_raise(pool: ConnectionPool, settings: Settings) -> None:
    sandbox = _sandbox(pool, settings)
    await sandbox.kill()

    with pytest.raises(ExecutionError) as exc_info:
        await sandbox.read_file("a.txt")
    assert exc_info.value.exit_code == -1
    with pytest.raises(ExecutionError):
        await sandbox.write_file("a.txt", "x")
    with pytest.raises(ExecutionError):
        await sandbox.ensure_initialized()


@pytest.mark.asyncio
async def test_kill_removes_container_and_releases_connection(
    pool: ConnectionPool, settings: Settings, daemon: FakeDaemon
) -> None:
    sandbox = _sandbox(pool, settings)
    workspace = await sandbox.ensure_initialized()
    connection = daemon.connections[0]

    await sandbox.kill()

    assert sandbox.state is SandboxState.KILLED
    assert not sandbox.running
    assert sandbox.workspace is None
    assert workspace.container_id not in daemon.containers
    assert "sb-test" not in pool
    assert connection.closed
    # Cache volume survives for resume
    assert "sb-test-cache" in daemon.volumes


@pytest.mark.asyncio
async def test_kill_can_remove_volume(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    sandbox = _sandbox(pool, settings)
    await sandbox.ensure_initialized()
    await sandbox.kill(remove_volume=True)
    assert "sb-test-cache" not in daemon.volumes


@pytest.mark.asyncio
async def test_kill_is_idempotent(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    sandbox = _sandbox(pool, settings)
    await sandbox.ensure_initialized()
    await sandbox.kill()
    calls = len(daemon.calls)
    await sandbox.kill()
    assert len(daemon.calls) == calls


@pytest.mark.asyncio
async def test_kill_before_initialization(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    sandbox = _sandbox(pool, settings)
    await sandbox.kill()
    assert daemon.calls == []
    assert sandbox.state is SandboxState.KILLED


@pytest.mark.asyncio
async def test_kill_during_initialization_cleans_up(settings: Settings, daemon: FakeDaemon) -> None:
    gate = asyncio.Event()

    async def slow_factory(key: str):
        await gate.wait()
        return await daemon.factory(key)

    pool = ConnectionPool(slow_factory)
    try:
        sandbox = _sandbox(pool, settings)
        init = asyncio.create_task(sandbox.ensure_initialized())
        await asyncio.sleep(0)
        await sandbox.kill()
        gate.set()

        with pytest.raises(ExecutionError):
            await init
        assert daemon.containers == {}
        assert "sb-test" not in pool
    finally:
        await pool.close()


@pytest.mark.asyncio
async def test_kill_during_run_does_not_report_success(
    pool: ConnectionPool, settings: Settings, daemon: FakeDaemon
) -> None:
    sandbox = _sandbox(pool, settings)
    await sandbox.ensure_initialized()
    events = _record(sandbox)
    daemon.exec_delay = 0.2

    run = asyncio.create_task(sandbox.commands.run("make build"))
    await asyncio.sleep(0.05)
    await sandbox.kill()
    result = await run

    assert result.exit_code == -1
    assert result.stderr == NOT_RUNNING_MESSAGE
    assert sandbox.workspace is None
    assert sandbox.state is SandboxState.KILLED
    assert [type(e) for e in events] == [StartEvent, EndEvent]


@pytest.mark.asyncio
async def test_evicted_connection_keeps_serving_its_sandbox(
    settings: Settings, daemon: FakeDaemon
) -> None:
    pool = ConnectionPool(daemon.factory, PoolConfig(capacity=1))
    try:
        first = _sandbox(pool, settings, "sb-a")
        second = _sandbox(pool, settings, "sb-b")

        assert (await first.commands.run("echo one")).exit_code == 0
        assert (await second.commands.run("echo two")).exit_code == 0
        assert "sb-a" not in pool

        result = await first.commands.run("echo again")
        assert result.exit_code == 0
        assert result.stdout == "again\n"

        held = daemon.connections[0]
        await first.kill()
        assert held.closed
        assert (await second.commands.run("echo still")).exit_code == 0
        await second.kill()
    finally:
        await pool.close()


@pytest.mark.asyncio
async def test_keep_alive_touches_pool_entry(daemon: FakeDaemon, settings: Settings) -> None:
    fast = settings.model_copy(update={"pool_ttl": 0.03})
    pool = ConnectionPool(daemon.factory)
    try:
        sandbox = _sandbox(pool, fast)
        await sandbox.ensure_initialized()
        connection = daemon.connections[0]
        await asyncio.sleep(0.06)
        assert connection.touches >= 1
        await sandbox.kill()
    finally:
        await pool.close()


@pytest.mark.asyncio
async def test_async_context_manager_kills(pool: ConnectionPool, settings: Settings) -> None:
    async with _sandbox(pool, settings) as sandbox:
        await sandbox.commands.run("echo hi")
    assert sandbox.state is SandboxState.KILLED


@pytest.mark.asyncio
async def test_pause_and_get_host(pool: ConnectionPool, settings: Settings, daemon: FakeDaemon) -> None:
    sandbox = _sandbox(pool, settings)
    await sandbox.pause()
    assert await sandbox.get_host(3000) == "localhost"
    assert daemon.calls == []
    assert sandbox.state is SandboxState.UNINITIALIZED
