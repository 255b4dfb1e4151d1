"""
sandcastle - Local sandboxes for coding-agent workloads.

Each sandbox is a long-running container started from an agent-specific
image, with a per-sandbox cache volume mounted at the working directory.
Containers are created lazily on first use.

Usage:
    import sandcastle

    provider = sandcastle.create_local_provider()
    sandbox = await provider.create(envs={"API_KEY": "..."}, agent_type="claude")
    result = await sandbox.commands.run("echo hello")
    await sandbox.kill()
    await provider.close()

Advanced usage via submodules:
    from sandcastle.config import Settings
    from sandcastle.engine import ConnectionPool, EngineConnection
    from sandcastle.sandbox import ImageResolver, prebuild_agent_images
"""

# =============================================================================
# Core API
# =============================================================================
from sandcastle.sandbox.provider import (  # noqa: F401
    LocalSandboxProvider,
    create_local_provider,
    prebuild_agent_images,
)
from sandcastle.sandbox.instance import LocalSandbox, SandboxState  # noqa: F401
from sandcastle.config import Settings, get_settings, reset_settings  # noqa: F401

# =============================================================================
# Data types
# =============================================================================
from sandcastle.models import (  # noqa: F401
    AGENT_TYPES,
    AgentType,
    CommandOptions,
    CommandResult,
    Environment,
)
from sandcastle.sandbox.workspace import Workspace  # noqa: F401
from sandcastle.security import sanitize_command  # noqa: F401
from sandcastle.retry import retry_with_backoff  # noqa: F401

# =============================================================================
# Exceptions
# =============================================================================
from sandcastle.exceptions import (  # noqa: F401
    SandcastleError,
    ConfigurationError,
    CommandValidationError,
    EngineError,
    ResolutionError,
    ExecutionError,
)

__version__ = "0.1.0"

__all__ = [
    "LocalSandboxProvider",
    "create_local_provider",
    "prebuild_agent_images",
    "LocalSandbox",
    "SandboxState",
    "Settings",
    "get_settings",
    "reset_settings",
    "AGENT_TYPES",
    "AgentType",
    "CommandOptions",
    "CommandResult",
    "Environment",
    "Workspace",
    "sanitize_command",
    "retry_with_backoff",
    "SandcastleError",
    "ConfigurationError",
    "CommandValidationError",
    "EngineError",
    "ResolutionError",
    "ExecutionError",
]
