"""
Container engine access: runtime detection, connections, and pooling.

Provides:
- ContainerRuntime / detect_runtime: which CLI (podman or docker) to drive
- EngineConnection: image, volume, container and exec primitives
- ConnectionPool: bounded LRU + TTL cache of connections keyed by sandbox id
"""
from sandcastle.engine.runtime import (
    ContainerRuntime,
    detect_runtime,
    get_runtime_command,
)
from sandcastle.engine.connection import (
    EngineConnection,
    LoginStatus,
    ProcessResult,
)
from sandcastle.engine.pool import (
    ConnectionFactory,
    ConnectionPool,
    PoolConfig,
)

__all__ = [
    "ContainerRuntime",
    "detect_runtime",
    "get_runtime_command",
    "EngineConnection",
    "LoginStatus",
    "ProcessResult",
    "ConnectionFactory",
    "ConnectionPool",
    "PoolConfig",
]
