"""
Tool-invocation manager contract.

A sandbox can carry a tool manager that exposes callable tools (for
example MCP servers) to the agent it hosts. Sandcastle only drives the
manager through this interface; implementations live elsewhere.

The opaque `tool_config` handed to Provider.create() is passed to the
factory, and its "servers" entry to ToolManager.initialize().
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol


class ToolManager(Protocol):
    """Interface a tool-invocation manager must satisfy."""

    async def initialize(self, servers: List[Dict[str, Any]]) -> None:
        """Connect to the configured tool servers."""
        ...

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Describe every tool available to the agent."""
        ...

    async def execute_tool(self, name: str, args: Dict[str, Any]) -> Any:
        """Invoke a tool by name."""
        ...

    async def cleanup(self) -> None:
        """Disconnect from all servers."""
        ...


ToolManagerFactory = Callable[[Mapping[str, Any]], ToolManager]


def tool_servers(tool_config: Optional[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Server definitions from a tool config; empty if none are declared."""
    if not tool_config:
        return []
    servers = tool_config.get("servers") or []
    return [dict(server) for server in servers]
