"""
Container runtime detection.

Handles detection of available container engines (Podman vs Docker)
and maps them to the CLI command used for every engine operation.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from enum import Enum
from typing import Optional

from sandcastle.exceptions import EngineError

logger = logging.getLogger(__name__)

# Seconds allowed for `<runtime> info` during detection
PROBE_TIMEOUT = 5.0


class ContainerRuntime(Enum):
    PODMAN = "podman"
    DOCKER = "docker"


async def _runtime_works(command: str) -> bool:
    """Verify the runtime CLI can reach its engine."""
    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            "info",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return False
    try:
        await asyncio.wait_for(proc.wait(), timeout=PROBE_TIMEOUT)
    except asyncio.TimeoutError:
        proc.kill()
        return False
    return proc.returncode == 0


async def detect_runtime(preferred: Optional[str] = None) -> ContainerRuntime:
    """
    Detect available container runtime.

    Priority:
    1. The preferred runtime, if given (no fallback)
    2. Podman (rootless/daemonless)
    3. Docker

    Raises:
        EngineError: If no supported runtime is found/working.
    """
    if preferred:
        runtime = ContainerRuntime(preferred)
        if shutil.which(runtime.value) and await _runtime_works(runtime.value):
            return runtime
        raise EngineError(
            f"Configured container runtime '{preferred}' is not available",
            code="runtime_unavailable",
        )

    for runtime in (ContainerRuntime.PODMAN, ContainerRuntime.DOCKER):
        if shutil.which(runtime.value) and await _runtime_works(runtime.value):
            logger.info("Detected container runtime: %s", runtime.value)
            return runtime

    raise EngineError(
        "No container runtime available. Please install Podman or Docker.",
        code="runtime_unavailable",
    )


def get_runtime_command(runtime: ContainerRuntime) -> str:
    """Return the CLI command for the runtime."""
    return runtime.value
