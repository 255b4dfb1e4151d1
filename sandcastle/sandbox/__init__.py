"""
Sandbox module: lazily initialized workspace containers for agent workloads.

Provides:
- LocalSandboxProvider: creates and resumes sandboxes sharing one connection pool
- LocalSandbox: state machine, run queue, file I/O and notifications
- ImageResolver: registry pull, local build, or generic fallback per agent type
- Workspace: immutable snapshot handle advanced by every state change

Usage:
    from sandcastle.sandbox import LocalSandboxProvider

    provider = LocalSandboxProvider()
    async with await provider.create(agent_type="claude") as sandbox:
        result = await sandbox.commands.run("ls -la")
"""
from sandcastle.sandbox.events import (
    EndEvent,
    ErrorEvent,
    EventEmitter,
    SandboxEvent,
    StartEvent,
    UpdateEvent,
)
from sandcastle.sandbox.image import ImageResolver, ResolvedImage
from sandcastle.sandbox.instance import LocalSandbox, SandboxState, parse_exit_code
from sandcastle.sandbox.provider import (
    LocalSandboxProvider,
    PrebuildReport,
    PrebuildResult,
    create_local_provider,
    prebuild_agent_images,
)
from sandcastle.sandbox.workspace import Workspace

__all__ = [
    "EndEvent",
    "ErrorEvent",
    "EventEmitter",
    "SandboxEvent",
    "StartEvent",
    "UpdateEvent",
    "ImageResolver",
    "ResolvedImage",
    "LocalSandbox",
    "SandboxState",
    "parse_exit_code",
    "LocalSandboxProvider",
    "PrebuildReport",
    "PrebuildResult",
    "create_local_provider",
    "prebuild_agent_images",
    "Workspace",
]
