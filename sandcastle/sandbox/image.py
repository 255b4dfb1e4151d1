"""
ImageResolver: turn an agent type into a runnable image reference.

Resolution policy, in order:
1. No agent type -> the generic base image.
2. Registry pull (with retry) of the agent's registry image. Success
   returns the registry reference.
3. Pull failed and a build definition (Dockerfile.<agent>) exists ->
   build the local tag once, then optionally tag and push it (with retry;
   push failure only warns). Build failure raises ResolutionError.
4. Pull failed and no build definition -> the generic image, with a warning.

The registry image name comes from, in priority order:
- registryImages[<agent>] in the user's config file
- <account>/<prefix>-<agent>:<version>, where account is the configured
  registry user, the remembered registryUser in the config file, the
  account reported by the engine's login probe, or the default published
  account. The default account publishes pinned versions; custom accounts
  use `latest`.

Usage:
    resolver = ImageResolver(connection, settings)
    image = await resolver.resolve("claude")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from sandcastle import telemetry
from sandcastle.config import Settings, get_settings
from sandcastle.engine.connection import EngineConnection
from sandcastle.exceptions import ConfigurationError, EngineError, ResolutionError
from sandcastle.models import AGENT_TYPES
from sandcastle.retry import retry_with_backoff

logger = logging.getLogger(__name__)

# Tag published under the default account
DEFAULT_IMAGE_VERSION = "1.0"
CUSTOM_IMAGE_VERSION = "latest"

ImageSource = Literal["generic", "cache", "registry", "build", "fallback"]


@dataclass
class ResolvedImage:
    """
    An image reference and how it was obtained.
    """

    # Image reference to start the workspace container from
    reference: str

    # Which branch of the policy produced it
    source: ImageSource

    # Registry image that was tried (None when no pull was attempted)
    registry_image: Optional[str] = None


def dockerfile_path(settings: Settings, agent_type: str) -> Path:
    """Build definition location for an agent: <dockerfiles_dir>/Dockerfile.<agent>."""
    return Path(settings.dockerfiles_dir) / f"Dockerfile.{agent_type}"


def local_tag(settings: Settings, agent_type: str) -> str:
    return f"{settings.image_prefix}-{agent_type}:latest"


class ImageResolver:
    """
    Resolves agent images against one engine connection.

    Resolution is never cached: every call re-runs the policy so a
    newly published or rebuilt image is picked up.
    """

    def __init__(
        self,
        connection: EngineConnection,
        settings: Optional[Settings] = None,
    ) -> None:
        self._connection = connection
        self._settings = settings or get_settings()

    async def resolve(self, agent_type: Optional[str] = None) -> str:
        """Return the image reference for agent_type."""
        resolved = await self.resolve_detailed(agent_type)
        return resolved.reference

    async def resolve_detailed(self, agent_type: Optional[str] = None) -> ResolvedImage:
        """
        Run the resolution policy and report which branch succeeded.

        Raises:
            ConfigurationError: If agent_type is not a known agent.
            ResolutionError: If the build definition exists but the build fails.
        """
        settings = self._settings
        if not agent_type:
            return ResolvedImage(reference=settings.base_image, source="generic")
        if agent_type not in AGENT_TYPES:
            raise ConfigurationError(
                f"Unknown agent type: {agent_type}",
                code="unknown_agent_type",
                details={"agent_type": agent_type, "known": list(AGENT_TYPES)},
            )

        with telemetry.span("sandcastle.resolve_image", agent_type=agent_type):
            tag = local_tag(settings, agent_type)

            # Disabled unless use_local_cache is set
            if settings.use_local_cache and await self._connection.image_exists(tag):
                logger.info("Using cached local image %s", tag)
                return ResolvedImage(reference=tag, source="cache")

            registry_image = await self.registry_image_name(agent_type)

            if settings.prefer_registry and registry_image:
                try:
                    await retry_with_backoff(
                        lambda: self._connection.pull(registry_image),
                        attempts=settings.retry_attempts,
                        base_delay=settings.retry_delay,
                        context=f"pull {registry_image}",
                        retry_on=(EngineError,),
                    )
                except EngineError as e:
                    logger.warning("Registry pull of %s failed: %s", registry_image, e)
                else:
                    logger.info("Using registry image %s", registry_image)
                    return ResolvedImage(
                        reference=registry_image,
                        source="registry",
                        registry_image=registry_image,
                    )

            dockerfile = dockerfile_path(settings, agent_type)
            if dockerfile.is_file():
                await self._build(agent_type, tag, dockerfile)
                if settings.push_images and registry_image:
                    await self._push(tag, registry_image)
                return ResolvedImage(
                    reference=tag, source="build", registry_image=registry_image
                )

            logger.warning(
                "No image available for %s (no %s); falling back to %s",
                agent_type,
                dockerfile.name,
                settings.base_image,
            )
            return ResolvedImage(
                reference=settings.base_image,
                source="fallback",
                registry_image=registry_image,
            )

    async def registry_image_name(self, agent_type: str) -> Optional[str]:
        """Registry reference to pull for agent_type."""
        settings = self._settings
        local_config = settings.local_config()

        override = local_config.registry_images.get(agent_type)
        if override:
            return override

        account = await self.registry_account()
        version = (
            DEFAULT_IMAGE_VERSION
            if account == settings.default_registry_user
            else CUSTOM_IMAGE_VERSION
        )
        return f"{account}/{settings.image_prefix}-{agent_type}:{version}"

    async def registry_account(self) -> str:
        """Configured, remembered, logged-in, or default registry account."""
        settings = self._settings
        if settings.registry_user:
            return settings.registry_user

        remembered = settings.local_config().registry_user
        if remembered:
            return remembered

        status = await self._connection.login_status()
        if status.logged_in and status.username:
            logger.debug("Using logged-in registry account %s", status.username)
            return status.username

        return settings.default_registry_user

    async def _build(self, agent_type: str, tag: str, dockerfile: Path) -> None:
        """Single build attempt; failure is fatal."""
        logger.info("Building %s from %s", tag, dockerfile)
        try:
            await self._connection.build(
                tag, dockerfile, timeout=self._settings.build_timeout
            )
        except EngineError as e:
            logger.error("Image build for %s failed: %s", agent_type, e)
            raise ResolutionError(
                f"Failed to build image {tag} for {agent_type}: {e.message}",
                agent_type=agent_type,
                image=tag,
                code="build_failed",
            ) from e
        logger.info("Image built: %s", tag)

    async def _push(self, tag: str, registry_image: str) -> None:
        """Tag and push; failure leaves the local tag usable."""
        settings = self._settings

        async def _tag_and_push() -> None:
            await self._connection.tag(tag, registry_image)
            await self._connection.push(registry_image)

        try:
            await retry_with_backoff(
                _tag_and_push,
                attempts=settings.retry_attempts,
                base_delay=settings.retry_delay,
                context=f"push {registry_image}",
                retry_on=(EngineError,),
            )
        except EngineError as e:
            logger.warning(
                "Push of %s failed, keeping local tag %s: %s", registry_image, tag, e
            )
        else:
            logger.info("Pushed %s", registry_image)
