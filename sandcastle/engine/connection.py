"""
Engine connection: one handle to the container engine CLI.

Every image and container primitive the sandbox needs goes through an
EngineConnection: pull/build/tag/push for image resolution, volume and
container management for workspaces, exec for commands and file I/O.

Each primitive spawns the runtime CLI (`docker` or `podman`) as an
asyncio subprocess. A failed invocation raises EngineError whose message
carries `exit code N`, which the sandbox parses back out when turning
failures into command results.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from sandcastle.engine.runtime import (
    ContainerRuntime,
    detect_runtime,
    get_runtime_command,
)
from sandcastle.exceptions import EngineError

logger = logging.getLogger(__name__)

# Exit status reported for commands killed by a timeout (matches coreutils `timeout`)
TIMEOUT_EXIT_CODE = 124

# Writes stdin to "$1", creating parent directories first
_WRITE_FILE_SCRIPT = 'mkdir -p "$(dirname "$1")" && cat > "$1"'

_USERNAME_LINE = re.compile(r"^\s*Username:\s*(\S+)\s*$", re.MULTILINE)
_REGISTRY_LINE = re.compile(r"^\s*Registry:\s*(\S+)\s*$", re.MULTILINE)


@dataclass
class ProcessResult:
    """Captured output of one engine CLI invocation."""

    stdout: str
    stderr: str
    exit_code: int


@dataclass
class LoginStatus:
    """Registry login state reported by the engine."""

    logged_in: bool
    username: Optional[str] = None
    registry: Optional[str] = None


class EngineConnection:
    """
    Handle to the container engine, keyed by its owner.

    Connections are created by ConnectionPool and borrowed by exactly one
    sandbox for its lifetime. `last_used` is bumped on every invocation
    and by the owner's keep-alive loop; the pool sweeps stale entries.
    """

    def __init__(self, key: str, runtime: ContainerRuntime) -> None:
        self._key = key
        self._runtime = runtime
        self._command = get_runtime_command(runtime)
        self._created_at = time.monotonic()
        self._last_used = time.monotonic()
        self._closed = False

    @classmethod
    async def open(
        cls,
        key: str,
        *,
        runtime: Optional[str] = None,
        timeout: float = 30.0,
    ) -> "EngineConnection":
        """
        Detect the runtime and verify the engine answers within timeout.

        Raises:
            EngineError: If no runtime is available or the probe fails.
        """
        detected = await detect_runtime(runtime)
        connection = cls(key, detected)
        await connection._run(["version"], timeout=timeout)
        logger.debug("Opened engine connection %s (%s)", key, detected.value)
        return connection

    @property
    def key(self) -> str:
        return self._key

    @property
    def runtime(self) -> ContainerRuntime:
        return self._runtime

    @property
    def last_used(self) -> float:
        return self._last_used

    @property
    def closed(self) -> bool:
        return self._closed

    def touch(self) -> None:
        """Mark as active (reset idle timer)."""
        self._last_used = time.monotonic()

    def idle_seconds(self) -> float:
        """Seconds since last use."""
        return time.monotonic() - self._last_used

    async def close(self) -> None:
        """Mark closed. The engine CLI holds no persistent session."""
        self._closed = True

    async def _run(
        self,
        args: List[str],
        *,
        input: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> ProcessResult:
        """
        Run one engine CLI command and capture its output.

        Raises:
            EngineError: On spawn failure, timeout, or non-zero exit.
        """
        if self._closed:
            raise EngineError(
                f"Engine connection {self._key} is closed", code="connection_closed"
            )
        self.touch()

        argv = [self._command, *args]
        logger.debug("Engine: %s", " ".join(argv))

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if input is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EngineError(
                f"Failed to start {self._command}: {e}",
                command=argv,
                code="spawn_failed",
            ) from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(input=input), timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise EngineError(
                f"{self._command} {args[0]} timed out after {timeout}s "
                f"(exit code {TIMEOUT_EXIT_CODE})",
                command=argv,
                exit_code=TIMEOUT_EXIT_CODE,
                code="timeout",
            )

        stdout = stdout_bytes.decode(errors="replace")
        stderr = stderr_bytes.decode(errors="replace")
        exit_code = proc.returncode if proc.returncode is not None else -1

        if exit_code != 0:
            raise EngineError(
                f"{self._command} {args[0]} failed with exit code {exit_code}: "
                f"{stderr.strip()}",
                command=argv,
                exit_code=exit_code,
                stderr=stderr,
                code="engine_command_failed",
            )

        return ProcessResult(stdout=stdout, stderr=stderr, exit_code=exit_code)

    # Images

    async def pull(self, image: str) -> None:
        await self._run(["pull", image])

    async def build(
        self, tag: str, dockerfile: Path, *, timeout: Optional[float] = None
    ) -> None:
        """Build tag from dockerfile, using its directory as build context."""
        await self._run(
            ["build", "-t", tag, "-f", str(dockerfile), str(dockerfile.parent)],
            timeout=timeout,
        )

    async def tag(self, source: str, target: str) -> None:
        await self._run(["tag", source, target])

    async def push(self, image: str) -> None:
        await self._run(["push", image])

    async def image_exists(self, image: str) -> bool:
        try:
            await self._run(["image", "inspect", image])
        except EngineError:
            return False
        return True

    async def login_status(self) -> LoginStatus:
        """
        Probe registry login.

        Podman answers `login --get-login` directly; Docker lists the
        logged-in account in `docker info`.
        """
        try:
            if self._runtime == ContainerRuntime.PODMAN:
                result = await self._run(["login", "--get-login"])
                username = result.stdout.strip() or None
                return LoginStatus(logged_in=username is not None, username=username)

            result = await self._run(["info"])
        except EngineError as e:
            logger.debug("Login probe failed: %s", e)
            return LoginStatus(logged_in=False)

        user_match = _USERNAME_LINE.search(result.stdout)
        registry_match = _REGISTRY_LINE.search(result.stdout)
        return LoginStatus(
            logged_in=user_match is not None,
            username=user_match.group(1) if user_match else None,
            registry=registry_match.group(1) if registry_match else None,
        )

    # Volumes and containers

    async def create_volume(self, name: str) -> None:
        await self._run(["volume", "create", name])

    async def remove_volume(self, name: str) -> None:
        await self._run(["volume", "rm", "-f", name])

    async def start_container(
        self,
        name: str,
        image: str,
        *,
        workdir: str,
        env: Optional[Dict[str, str]] = None,
        volume: Optional[str] = None,
    ) -> str:
        """
        Start a long-running container and return its id.

        Any existing container with the same name is removed first.
        """
        await self.remove_container(name)

        args = ["run", "-d", "--name", name, "--workdir", workdir]
        for key, value in (env or {}).items():
            args.extend(["--env", f"{key}={value}"])
        if volume:
            args.extend(["--volume", f"{volume}:{workdir}"])
        # Keep the container alive between execs
        args.extend([image, "tail", "-f", "/dev/null"])

        result = await self._run(args)
        return result.stdout.strip() or name

    async def exec(
        self,
        container_id: str,
        command: str,
        *,
        workdir: Optional[str] = None,
        detach: bool = False,
        timeout: Optional[float] = None,
    ) -> ProcessResult:
        """Run `sh -c command` inside the container."""
        args = ["exec"]
        if detach:
            args.append("-d")
        if workdir:
            args.extend(["--workdir", workdir])
        args.extend([container_id, "sh", "-c", command])
        return await self._run(args, timeout=timeout)

    async def read_file(self, container_id: str, path: str) -> str:
        result = await self._run(["exec", container_id, "cat", "--", path])
        return result.stdout

    async def write_file(self, container_id: str, path: str, content: str) -> None:
        await self._run(
            ["exec", "-i", container_id, "sh", "-c", _WRITE_FILE_SCRIPT, "sh", path],
            input=content.encode("utf-8"),
        )

    async def remove_container(self, container_id: str) -> None:
        """Force remove; a missing container is not an error."""
        try:
            await self._run(["rm", "-f", container_id])
        except EngineError as e:
            logger.debug("Container removal of %s failed: %s", container_id, e)
