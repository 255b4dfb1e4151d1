"""
Workspace snapshot handle.

A Workspace names the sandbox's current filesystem/process state: the
live container plus a revision counter. Every command or file write that
changes state yields a new Workspace via advance(); the old value is
replaced, never merged. Handles are immutable, so a caller holding an
older revision can tell the workspace has moved on.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class Workspace:
    """
    Immutable handle to a sandbox's workspace container.

    Attributes:
        sandbox_id: Owning sandbox
        container_id: Engine id of the long-running workspace container
        image: Image the container was started from
        workdir: Working directory inside the container
        volume: Cache volume mounted at workdir, if any
        revision: 0 at creation, +1 per state-changing operation
    """

    sandbox_id: str
    container_id: str
    image: str
    workdir: str
    volume: Optional[str] = None
    revision: int = 0

    def advance(self) -> "Workspace":
        """Handle for the state after one more operation."""
        return replace(self, revision=self.revision + 1)
