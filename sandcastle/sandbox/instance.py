"""
LocalSandbox: one disposable workspace container for one agent workload.

State machine:
    UNINITIALIZED -> INITIALIZING -> READY <-> EXECUTING
    any state -> KILLED (terminal)

Initialization is lazy and single-flight: the first command or file
operation starts it, and concurrent callers await the same attempt.
It borrows one pooled engine connection keyed by the sandbox id,
resolves the agent image, mounts a per-sandbox cache volume at the
working directory (except for agents that run as root), and starts a
long-running workspace container.

Commands, reads and writes are serialized through a FIFO lock. Every
state-changing operation replaces the held Workspace handle with its
advanced revision.

commands.run() never raises for engine or command failures. It returns
a CommandResult and emits Start, then Update lines or an Error, then End.

Usage:
    sandbox = await provider.create(envs={"API_KEY": "..."}, agent_type="claude")
    sandbox.on(print)
    result = await sandbox.commands.run("echo hi")
    await sandbox.kill()
"""

from __future__ import annotations

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from sandcastle import telemetry
from sandcastle.config import Settings, get_settings
from sandcastle.engine.connection import EngineConnection
from sandcastle.engine.pool import ConnectionPool
from sandcastle.exceptions import EngineError, ExecutionError
from sandcastle.models import (
    DEFAULT_WORKDIR,
    ROOT_AGENT_TYPES,
    CommandOptions,
    CommandResult,
)
from sandcastle.sandbox.events import (
    EndEvent,
    ErrorEvent,
    EventEmitter,
    EventListener,
    StartEvent,
    UpdateEvent,
    log_errors,
)
from sandcastle.sandbox.image import ImageResolver
from sandcastle.sandbox.workspace import Workspace
from sandcastle.security import sanitize_command
from sandcastle.tools import ToolManager, tool_servers

logger = logging.getLogger(__name__)

NOT_RUNNING_MESSAGE = "Sandbox instance is not running"

_EXIT_CODE = re.compile(r"exit code (-?\d+)")

ResolverFactory = Callable[[EngineConnection, Settings], ImageResolver]


class SandboxState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    EXECUTING = "executing"
    KILLED = "killed"


def parse_exit_code(text: str, default: int = 1) -> int:
    """Exit status from failure text containing `exit code N`."""
    match = _EXIT_CODE.search(text)
    return int(match.group(1)) if match else default


def _not_running() -> CommandResult:
    return CommandResult(exit_code=-1, stderr=NOT_RUNNING_MESSAGE)


class SandboxCommands:
    """The `sandbox.commands` surface."""

    def __init__(self, sandbox: "LocalSandbox") -> None:
        self._sandbox = sandbox

    async def run(
        self,
        command: str,
        options: Optional[CommandOptions] = None,
        **kwargs: Any,
    ) -> CommandResult:
        """
        Run a shell command in the sandbox.

        Options may be passed as a CommandOptions or as keyword arguments
        (timeout_seconds, background, on_stdout, on_stderr, sanitize).
        """
        opts = options or CommandOptions(**kwargs)
        return await self._sandbox._run_command(command, opts)


class LocalSandbox:
    """
    Sandbox backed by a local container engine.

    Must be constructed inside a running event loop when a tool manager
    is given, since tool initialization starts immediately.
    """

    def __init__(
        self,
        sandbox_id: str,
        *,
        pool: ConnectionPool,
        settings: Optional[Settings] = None,
        envs: Optional[Mapping[str, str]] = None,
        agent_type: Optional[str] = None,
        workdir: str = DEFAULT_WORKDIR,
        tool_manager: Optional[ToolManager] = None,
        tool_config: Optional[Mapping[str, Any]] = None,
        resolver_factory: ResolverFactory = ImageResolver,
    ) -> None:
        self.sandbox_id = sandbox_id
        self.agent_type = agent_type
        self.workdir = workdir
        self.envs: Dict[str, str] = dict(envs or {})
        self.volume_key = f"{sandbox_id}-cache"
        self.commands = SandboxCommands(self)

        self._pool = pool
        self._settings = settings or get_settings()
        self._resolver_factory = resolver_factory

        self._state = SandboxState.UNINITIALIZED
        self._init_task: Optional[asyncio.Task] = None
        self._run_lock = asyncio.Lock()
        self._connection: Optional[EngineConnection] = None
        self._workspace: Optional[Workspace] = None
        self._released = asyncio.Event()
        self._keepalive_task: Optional[asyncio.Task] = None

        self._events = EventEmitter()
        self._events.on(log_errors)

        self._tool_manager = tool_manager
        self._tool_task: Optional[asyncio.Task] = None
        if tool_manager is not None:
            self._tool_task = asyncio.get_running_loop().create_task(
                self._initialize_tools(tool_servers(tool_config))
            )

    def __repr__(self) -> str:
        return (
            f"LocalSandbox(id={self.sandbox_id!r}, agent_type={self.agent_type!r}, "
            f"state={self._state.value})"
        )

    async def __aenter__(self) -> "LocalSandbox":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.kill()

    @property
    def state(self) -> SandboxState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is not SandboxState.KILLED

    @property
    def workspace(self) -> Optional[Workspace]:
        """Current workspace handle, None before initialization and after kill."""
        return self._workspace

    @property
    def tool_manager(self) -> Optional[ToolManager]:
        return self._tool_manager

    def on(self, listener: EventListener) -> Callable[[], None]:
        """Register a notification listener. Returns an unsubscribe callable."""
        return self._events.on(listener)

    # Initialization

    async def ensure_initialized(self) -> Workspace:
        """
        Initialize once; concurrent callers share the in-flight attempt.

        A failed attempt is not cached: the next call starts a new one.

        Raises:
            ExecutionError: If the sandbox has been killed.
            ResolutionError / EngineError: If initialization fails.
        """
        self._check_running()
        if self._init_task is None:
            self._state = SandboxState.INITIALIZING
            self._init_task = asyncio.get_running_loop().create_task(
                self._initialize()
            )
        # Shielded so one caller's cancellation does not abort the shared attempt
        await asyncio.shield(self._init_task)
        self._check_running()
        assert self._workspace is not None
        return self._workspace

    async def _initialize(self) -> None:
        try:
            with telemetry.span(
                "sandcastle.initialize",
                sandbox_id=self.sandbox_id,
                agent_type=self.agent_type,
            ):
                connection = await self._pool.get_connection(self.sandbox_id)
                self._connection = connection

                resolver = self._resolver_factory(connection, self._settings)
                image = await resolver.resolve(self.agent_type)

                volume: Optional[str] = None
                if self.agent_type not in ROOT_AGENT_TYPES:
                    volume = self.volume_key
                    await connection.create_volume(volume)

                container_id = await connection.start_container(
                    self.sandbox_id,
                    image,
                    workdir=self.workdir,
                    env=self.envs,
                    volume=volume,
                )
        except BaseException:
            self._init_task = None
            if self._state is SandboxState.INITIALIZING:
                self._state = SandboxState.UNINITIALIZED
            raise

        if self._state is SandboxState.KILLED:
            # kill() raced initialization; do not leave the container behind
            self._connection = None
            await connection.remove_container(container_id)
            await self._release_connection(connection)
            return

        self._workspace = Workspace(
            sandbox_id=self.sandbox_id,
            container_id=container_id,
            image=image,
            workdir=self.workdir,
            volume=volume,
        )
        self._keepalive_task = asyncio.get_running_loop().create_task(
            self._keep_alive()
        )
        self._state = SandboxState.READY
        logger.info(
            "Sandbox %s ready (image=%s, container=%s)",
            self.sandbox_id,
            image,
            container_id,
        )

    async def _keep_alive(self) -> None:
        """Hold the pooled connection: touch it until the sandbox is killed."""
        interval = self._settings.pool_ttl / 3
        while not self._released.is_set():
            try:
                await asyncio.wait_for(self._released.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self._pool.touch(self.sandbox_id)

    async def _initialize_tools(self, servers: List[Dict[str, Any]]) -> None:
        assert self._tool_manager is not None
        try:
            await self._tool_manager.initialize(servers)
            logger.debug(
                "Tool manager for %s initialized with %d server(s)",
                self.sandbox_id,
                len(servers),
            )
        except Exception as e:
            logger.warning(
                "Tool manager initialization failed for %s: %s", self.sandbox_id, e
            )

    # Commands

    async def _run_command(self, command: str, options: CommandOptions) -> CommandResult:
        if not self.running:
            return _not_running()

        async with self._run_lock:
            if not self.running:
                return _not_running()

            self._events.emit(StartEvent(sandbox_id=self.sandbox_id, command=command))
            try:
                with telemetry.span(
                    "sandcastle.run",
                    sandbox_id=self.sandbox_id,
                    background=options.background,
                ):
                    if options.sanitize:
                        sanitize_command(command)
                    workspace = await self.ensure_initialized()
                    self._state = SandboxState.EXECUTING
                    try:
                        if options.background:
                            return await self._run_background(command, workspace)
                        return await self._run_foreground(command, options, workspace)
                    except EngineError as e:
                        if self._state is SandboxState.KILLED:
                            return _not_running()
                        return self._failure(e)
            except Exception as e:
                return self._failure(e)
            finally:
                if self._state is SandboxState.EXECUTING:
                    self._state = SandboxState.READY
                self._events.emit(EndEvent(sandbox_id=self.sandbox_id, command=command))

    async def _run_background(self, command: str, workspace: Workspace) -> CommandResult:
        assert self._connection is not None
        await self._connection.exec(
            workspace.container_id, command, workdir=workspace.workdir, detach=True
        )
        if self._state is SandboxState.KILLED:
            return _not_running()
        self._workspace = workspace.advance()
        return CommandResult(
            exit_code=0,
            stdout=f"Background command started: {command}",
            revision=self._workspace.revision,
        )

    async def _run_foreground(
        self, command: str, options: CommandOptions, workspace: Workspace
    ) -> CommandResult:
        assert self._connection is not None
        result = await self._connection.exec(
            workspace.container_id,
            command,
            workdir=workspace.workdir,
            timeout=options.timeout_seconds,
        )
        if self._state is SandboxState.KILLED:
            return _not_running()
        self._workspace = workspace.advance()

        await self._stream(result.stdout, "stdout", options.on_stdout)
        # stderr from a successful command is informational
        await self._stream(result.stderr, "stderr", options.on_stderr)

        return CommandResult(
            exit_code=0,
            stdout=result.stdout,
            stderr=result.stderr,
            revision=self._workspace.revision,
        )

    async def _stream(
        self,
        output: str,
        stream: str,
        callback: Optional[Callable[[str], None]],
    ) -> None:
        """Emit one update per non-empty line, stream_line_delay apart."""
        lines = [line for line in output.splitlines() if line.strip()]
        delay = self._settings.stream_line_delay
        for index, line in enumerate(lines):
            if index and delay:
                await asyncio.sleep(delay)
            self._events.emit(
                UpdateEvent(sandbox_id=self.sandbox_id, line=line, stream=stream)
            )
            if callback is not None:
                try:
                    callback(line)
                except Exception as e:
                    logger.warning("%s callback failed: %s", stream, e)

    def _failure(self, error: Exception) -> CommandResult:
        text = str(error)
        if isinstance(error, ExecutionError):
            exit_code = error.exit_code
        else:
            exit_code = parse_exit_code(text)
        self._events.emit(
            ErrorEvent(sandbox_id=self.sandbox_id, message=text, exit_code=exit_code)
        )
        telemetry.log(
            "warning",
            "sandcastle.run failed",
            sandbox_id=self.sandbox_id,
            exit_code=exit_code,
        )
        return CommandResult(exit_code=exit_code, stdout="", stderr=text)

    # Files

    async def read_file(self, path: str) -> str:
        """
        Read a text file from the current workspace.

        Raises:
            ExecutionError: If killed or the file cannot be read.
        """
        self._check_running()
        async with self._run_lock:
            workspace = await self.ensure_initialized()
            assert self._connection is not None
            try:
                return await self._connection.read_file(workspace.container_id, path)
            except EngineError as e:
                raise ExecutionError(
                    f"Failed to read {path}: {e.message}",
                    exit_code=e.exit_code if e.exit_code is not None else 1,
                    code="read_failed",
                ) from e

    async def write_file(self, path: str, content: str) -> Workspace:
        """
        Write a text file into the workspace, creating parent directories.

        Emits no notifications. Returns the advanced workspace handle.

        Raises:
            ExecutionError: If killed or the file cannot be written.
        """
        self._check_running()
        async with self._run_lock:
            workspace = await self.ensure_initialized()
            assert self._connection is not None
            try:
                await self._connection.write_file(
                    workspace.container_id, path, content
                )
            except EngineError as e:
                raise ExecutionError(
                    f"Failed to write {path}: {e.message}",
                    exit_code=e.exit_code if e.exit_code is not None else 1,
                    code="write_failed",
                ) from e
            self._check_running()
            self._workspace = workspace.advance()
            return self._workspace

    # Tools

    async def list_tools(self) -> List[Dict[str, Any]]:
        manager = await self._ready_tool_manager()
        return await manager.list_tools()

    async def execute_tool(self, name: str, args: Optional[Dict[str, Any]] = None) -> Any:
        manager = await self._ready_tool_manager()
        return await manager.execute_tool(name, args or {})

    async def _ready_tool_manager(self) -> ToolManager:
        self._check_running()
        if self._tool_manager is None:
            raise ExecutionError(
                f"Sandbox {self.sandbox_id} has no tool manager", code="no_tool_manager"
            )
        if self._tool_task is not None:
            await self._tool_task
        return self._tool_manager

    # Lifecycle

    async def kill(self, *, remove_volume: bool = False) -> None:
        """
        Tear the sandbox down. Terminal and idempotent.

        Removes the workspace container and releases the pooled connection.
        The cache volume is kept unless remove_volume is True, so a resumed
        sandbox with the same id sees its previous working directory.
        """
        if self._state is SandboxState.KILLED:
            return
        self._state = SandboxState.KILLED

        if self._tool_task is not None and not self._tool_task.done():
            self._tool_task.cancel()
        if self._tool_manager is not None:
            try:
                await self._tool_manager.cleanup()
            except Exception as e:
                logger.warning("Tool manager cleanup failed for %s: %s", self.sandbox_id, e)

        self._released.set()
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None

        connection, workspace = self._connection, self._workspace
        self._connection = None
        self._workspace = None

        if connection is not None:
            container = workspace.container_id if workspace else self.sandbox_id
            await connection.remove_container(container)
            if remove_volume:
                try:
                    await connection.remove_volume(self.volume_key)
                except EngineError as e:
                    logger.warning("Failed to remove volume %s: %s", self.volume_key, e)
        await self._release_connection(connection)

        logger.info("Killed sandbox %s", self.sandbox_id)

    async def _release_connection(self, connection: Optional[EngineConnection]) -> None:
        await self._pool.release(self.sandbox_id)
        # The pool no longer tracks a connection it evicted or swept
        if connection is not None and not connection.closed:
            await connection.close()

    async def pause(self) -> None:
        """No-op: workspace containers cannot be suspended and resumed."""
        logger.debug("Pause requested for sandbox %s (no-op)", self.sandbox_id)

    async def get_host(self, port: int) -> str:
        """Always localhost; ports are not mapped."""
        return "localhost"

    def _check_running(self) -> None:
        if self._state is SandboxState.KILLED:
            raise ExecutionError(NOT_RUNNING_MESSAGE, exit_code=-1, code="not_running")
