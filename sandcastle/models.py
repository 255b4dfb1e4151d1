from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

AgentType = Literal["claude", "codex", "opencode", "gemini", "grok"]

AGENT_TYPES: Tuple[str, ...] = ("claude", "codex", "opencode", "gemini", "grok")

# Agents whose images run as root; a cache volume owned by the default
# volume user would conflict with their file permissions.
ROOT_AGENT_TYPES = frozenset({"grok"})

DEFAULT_WORKDIR = "/workspace"


class CommandResult(BaseModel):
    """
    Outcome of Sandbox.commands.run().

    Attributes:
        exit_code: 0 on success, parsed engine status on failure, -1 if the
            sandbox is not running.
        stdout: Captured standard output (empty on failure).
        stderr: Captured standard error, or the failure text.
        revision: Workspace revision this command produced, None if it
            did not change the workspace.
    """

    model_config = ConfigDict(frozen=True)

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    revision: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandOptions(BaseModel):
    """
    Per-call options for Sandbox.commands.run().

    Attributes:
        timeout_seconds: Wall-clock limit for a foreground command.
        background: Start the command detached and return immediately.
        on_stdout: Called once per non-empty stdout line.
        on_stderr: Called once per non-empty stderr line.
        sanitize: Reject shell metacharacters outside quotes before running.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    background: bool = False
    on_stdout: Optional[Callable[[str], None]] = None
    on_stderr: Optional[Callable[[str], None]] = None
    sanitize: bool = False


class Environment(BaseModel):
    """Inventory entry for Provider.list_environments()."""

    id: str
    name: str
    status: Literal["running", "stopped", "pending", "error"]
    agent_type: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    environment: Dict[str, str] = Field(default_factory=dict)
