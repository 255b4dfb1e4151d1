"""
LocalSandboxProvider: factory for LocalSandbox instances.

Sandboxes are created lazily: create() returns immediately and the
workspace container is built on first use (or straight away in the
background when auto_install is set). All sandboxes from one provider
share one ConnectionPool.

The provider tracks the sandboxes it hands out. resume() returns the live
instance for an id when there is one; otherwise it rebuilds a sandbox
under that id, and because the cache volume is keyed by the id, files
written to the working directory before kill() are visible again.

Usage:
    provider = LocalSandboxProvider()
    sandbox = await provider.create(agent_type="claude")
    ...
    await provider.close()
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sandcastle.config import Settings, get_settings
from sandcastle.engine.connection import EngineConnection
from sandcastle.engine.pool import ConnectionFactory, ConnectionPool, PoolConfig
from sandcastle.exceptions import ConfigurationError, SandcastleError
from sandcastle.models import AGENT_TYPES, DEFAULT_WORKDIR, Environment
from sandcastle.sandbox.image import ImageResolver, ImageSource, dockerfile_path
from sandcastle.sandbox.instance import LocalSandbox
from sandcastle.tools import ToolManagerFactory

logger = logging.getLogger(__name__)

SANDBOX_ID_PREFIX = "sandcastle"


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def new_sandbox_id(agent_type: Optional[str] = None) -> str:
    """sandcastle-<agent|default>-<base36 ms timestamp>-<random>"""
    timestamp = _base36(int(time.time() * 1000))
    suffix = uuid.uuid4().hex[:6]
    return f"{SANDBOX_ID_PREFIX}-{agent_type or 'default'}-{timestamp}-{suffix}"


def agent_type_from_id(sandbox_id: str) -> Optional[str]:
    """Agent type embedded in an id from new_sandbox_id(), if any."""
    parts = sandbox_id.split("-")
    if len(parts) >= 2 and parts[0] == SANDBOX_ID_PREFIX and parts[1] in AGENT_TYPES:
        return parts[1]
    return None


def connection_factory(settings: Settings) -> ConnectionFactory:
    """Pool factory opening real engine connections."""

    async def _open(key: str) -> EngineConnection:
        return await EngineConnection.open(
            key, runtime=settings.runtime, timeout=settings.connection_timeout
        )

    return _open


class LocalSandboxProvider:
    """
    Creates sandboxes backed by the local container engine.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        pool: Optional[ConnectionPool] = None,
        tool_manager_factory: Optional[ToolManagerFactory] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._pool = pool if pool is not None else ConnectionPool(
            connection_factory(self._settings),
            PoolConfig(
                capacity=self._settings.pool_capacity,
                ttl_seconds=self._settings.pool_ttl,
                sweep_interval=self._settings.pool_sweep_interval,
            ),
        )
        self._tool_manager_factory = tool_manager_factory
        self._sandboxes: Dict[str, LocalSandbox] = {}

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    async def create(
        self,
        envs: Optional[Mapping[str, str]] = None,
        agent_type: Optional[str] = None,
        workdir: Optional[str] = None,
        tool_config: Optional[Mapping[str, Any]] = None,
    ) -> LocalSandbox:
        """Create a sandbox without initializing it (unless auto_install)."""
        return await self._build(
            new_sandbox_id(agent_type), envs, agent_type, workdir, tool_config
        )

    async def resume(
        self,
        sandbox_id: str,
        tool_config: Optional[Mapping[str, Any]] = None,
    ) -> LocalSandbox:
        """
        Return the live sandbox for sandbox_id, or rebuild one under that id.

        When rebuilding, only the id, the agent type encoded in it and the
        cache volume carry over. Environment variables are not restored.
        """
        live = self._sandboxes.get(sandbox_id)
        if live is not None and live.running:
            logger.info("Resuming live sandbox %s", sandbox_id)
            return live

        agent_type = agent_type_from_id(sandbox_id)
        logger.info("Resuming sandbox %s (agent_type=%s)", sandbox_id, agent_type)
        return await self._build(sandbox_id, None, agent_type, None, tool_config)

    async def list_environments(self) -> List[Environment]:
        """Always empty: this provider keeps no persistent inventory."""
        return []

    async def close(self) -> None:
        """Close the shared connection pool."""
        await self._pool.close()

    async def _build(
        self,
        sandbox_id: str,
        envs: Optional[Mapping[str, str]],
        agent_type: Optional[str],
        workdir: Optional[str],
        tool_config: Optional[Mapping[str, Any]],
    ) -> LocalSandbox:
        if agent_type is not None and agent_type not in AGENT_TYPES:
            raise ConfigurationError(
                f"Unknown agent type: {agent_type}",
                code="unknown_agent_type",
                details={"agent_type": agent_type, "known": list(AGENT_TYPES)},
            )

        if agent_type:
            dockerfile = dockerfile_path(self._settings, agent_type)
            build_definition = str(dockerfile) if dockerfile.is_file() else None
        else:
            build_definition = None

        tool_manager = None
        if tool_config is not None and self._tool_manager_factory is not None:
            tool_manager = self._tool_manager_factory(tool_config)

        workdir = workdir or DEFAULT_WORKDIR
        logger.info(
            "Creating sandbox %s (agent_type=%s, workdir=%s, build_definition=%s)",
            sandbox_id,
            agent_type,
            workdir,
            build_definition,
        )

        sandbox = LocalSandbox(
            sandbox_id,
            pool=self._pool,
            settings=self._settings,
            envs=envs,
            agent_type=agent_type,
            workdir=workdir,
            tool_manager=tool_manager,
            tool_config=tool_config,
        )

        self._sandboxes = {
            key: box for key, box in self._sandboxes.items() if box.running
        }
        self._sandboxes[sandbox_id] = sandbox

        if self._settings.auto_install:
            asyncio.get_running_loop().create_task(self._warm(sandbox))
        return sandbox

    async def _warm(self, sandbox: LocalSandbox) -> None:
        try:
            await sandbox.ensure_initialized()
        except Exception as e:
            logger.warning("Eager initialization of %s failed: %s", sandbox.sandbox_id, e)


def create_local_provider(settings: Optional[Settings] = None, **kwargs: Any) -> LocalSandboxProvider:
    """Convenience constructor mirroring LocalSandboxProvider(settings, ...)."""
    return LocalSandboxProvider(settings, **kwargs)


@dataclass
class PrebuildResult:
    agent_type: str
    success: bool
    image: Optional[str] = None
    source: Optional[ImageSource] = None
    error: Optional[str] = None


@dataclass
class PrebuildReport:
    results: List[PrebuildResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return any(r.success for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "results": [
                {
                    "agent_type": r.agent_type,
                    "success": r.success,
                    "image": r.image,
                    "source": r.source,
                    "error": r.error,
                }
                for r in self.results
            ],
        }


async def prebuild_agent_images(
    agent_types: Optional[Sequence[str]] = None,
    *,
    settings: Optional[Settings] = None,
    connection: Optional[EngineConnection] = None,
) -> PrebuildReport:
    """
    Resolve (pull or build) agent images ahead of sandbox creation.

    One agent failing does not stop the others.
    """
    settings = settings or get_settings()
    selected = list(agent_types) if agent_types else list(AGENT_TYPES)
    owned = connection is None
    if connection is None:
        connection = await connection_factory(settings)("prebuild")

    report = PrebuildReport()
    logger.info("Pre-building images for: %s", ", ".join(selected))
    try:
        resolver = ImageResolver(connection, settings)
        for agent_type in selected:
            try:
                resolved = await resolver.resolve_detailed(agent_type)
            except SandcastleError as e:
                logger.error("Failed to prepare image for %s: %s", agent_type, e)
                report.results.append(
                    PrebuildResult(agent_type=agent_type, success=False, error=e.message)
                )
                continue
            report.results.append(
                PrebuildResult(
                    agent_type=agent_type,
                    success=True,
                    image=resolved.reference,
                    source=resolved.source,
                )
            )
    finally:
        if owned:
            await connection.close()

    ready = sum(1 for r in report.results if r.success)
    logger.info("Prebuild complete: %d/%d images ready", ready, len(selected))
    return report
