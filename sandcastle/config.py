"""
Sandcastle configuration from explicit overrides and environment variables.

Every field resolves in the same order: an explicit override passed to
Settings.load(), then the SANDCASTLE_* environment variable, then the
default declared on the model. The result is frozen.

Usage:
    from sandcastle.config import Settings, get_settings

    settings = get_settings()              # process default, cached
    custom = Settings.load(retry_attempts=5)
    provider = LocalSandboxProvider(settings=custom)
"""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sandcastle.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".sandcastle" / "config.json"
DEFAULT_DOCKERFILES_DIR = Path(__file__).parent / "assets" / "dockerfiles"

RuntimeName = Literal["docker", "podman"]


def _env_truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(value: str) -> Optional[int]:
    try:
        return int(value)
    except ValueError:
        return None


def _env_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        return None


def _env_str(value: str) -> Optional[str]:
    return value or None


# field name -> (environment variable, parser). A parser returning None
# means "unparseable", and the field keeps its default.
_ENV_FIELDS: Dict[str, tuple[str, Callable[[str], Any]]] = {
    "retry_attempts": ("SANDCASTLE_RETRY_ATTEMPTS", _env_int),
    "retry_delay": ("SANDCASTLE_RETRY_DELAY", _env_float),
    "connection_timeout": ("SANDCASTLE_CONNECTION_TIMEOUT", _env_float),
    "prefer_registry": ("SANDCASTLE_PREFER_REGISTRY", _env_truthy),
    "push_images": ("SANDCASTLE_PUSH_IMAGES", _env_truthy),
    "registry_user": ("SANDCASTLE_REGISTRY_USER", _env_str),
    "auto_install": ("SANDCASTLE_AUTO_INSTALL", _env_truthy),
    "config_path": ("SANDCASTLE_CONFIG_PATH", _env_str),
    "runtime": ("SANDCASTLE_RUNTIME", _env_str),
    "dockerfiles_dir": ("SANDCASTLE_DOCKERFILES_DIR", _env_str),
    "build_timeout": ("SANDCASTLE_BUILD_TIMEOUT", _env_float),
    "pool_capacity": ("SANDCASTLE_POOL_CAPACITY", _env_int),
    "pool_ttl": ("SANDCASTLE_POOL_TTL", _env_float),
    "pool_sweep_interval": ("SANDCASTLE_POOL_SWEEP_INTERVAL", _env_float),
    "stream_line_delay": ("SANDCASTLE_STREAM_DELAY", _env_float),
    "use_local_cache": ("SANDCASTLE_USE_LOCAL_CACHE", _env_truthy),
}


class Settings(BaseModel):
    """
    Immutable sandcastle settings.

    Attributes:
        retry_attempts: Attempts for retried engine operations (pull, push).
        retry_delay: Base backoff delay in seconds (doubles per attempt).
        connection_timeout: Seconds allowed for the engine connect probe.
        prefer_registry: Try a registry pull before building locally.
        push_images: Push locally built images when a registry name is known.
        registry_user: Registry account to pull from and push to.
        auto_install: Initialize sandboxes eagerly at create time.
        config_path: JSON file with per-agent registry image overrides.
        runtime: Container engine CLI ("docker"/"podman"); None auto-detects.
        dockerfiles_dir: Directory holding Dockerfile.<agent> build definitions.
        build_timeout: Seconds allowed for a single image build.
        pool_capacity: Maximum live engine connections.
        pool_ttl: Seconds an unused connection survives the sweep.
        pool_sweep_interval: Seconds between TTL sweeps.
        stream_line_delay: Synthetic delay step between streamed output lines.
        use_local_cache: Reuse an existing local agent image before pulling.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)
    connection_timeout: float = Field(default=30.0, gt=0)
    prefer_registry: bool = True
    push_images: bool = True
    registry_user: Optional[str] = None
    auto_install: bool = False
    config_path: Path = DEFAULT_CONFIG_PATH
    runtime: Optional[RuntimeName] = None
    dockerfiles_dir: Path = DEFAULT_DOCKERFILES_DIR
    build_timeout: float = Field(default=600.0, gt=0)
    pool_capacity: int = Field(default=10, ge=1)
    pool_ttl: float = Field(default=1800.0, gt=0)
    pool_sweep_interval: float = Field(default=60.0, gt=0)
    stream_line_delay: float = Field(default=0.01, ge=0)
    use_local_cache: bool = False

    # Naming conventions, not environment driven
    image_prefix: str = "sandcastle"
    default_registry_user: str = "sandcastle"
    base_image: str = "ubuntu:24.04"

    @classmethod
    def load(cls, **overrides: Any) -> "Settings":
        """
        Build settings: explicit override, then environment, then default.

        Overrides set to None are treated as absent.

        Raises:
            ConfigurationError: If a resolved value fails validation.
        """
        unknown = set(overrides) - set(cls.model_fields)
        if unknown:
            raise ConfigurationError(
                f"Unknown settings: {', '.join(sorted(unknown))}",
                code="unknown_setting",
            )

        values: Dict[str, Any] = {}
        for name, (env_var, parse) in _ENV_FIELDS.items():
            raw = os.getenv(env_var)
            if raw is None:
                continue
            parsed = parse(raw)
            if parsed is None:
                logger.warning("Ignoring unparseable %s=%r", env_var, raw)
                continue
            values[name] = parsed

        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid settings: {e}", code="invalid_setting"
            ) from e

    def local_config(self) -> "LocalConfigFile":
        """Read the JSON config file at config_path."""
        return LocalConfigFile.read(self.config_path)


class LocalConfigFile(BaseModel):
    """
    Contents of the user's sandcastle config file.

    Only the keys used for image resolution are modeled; anything else
    written by other tools is preserved on the model but ignored.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    registry_user: Optional[str] = Field(default=None, alias="registryUser")
    registry_images: Dict[str, str] = Field(
        default_factory=dict, alias="registryImages"
    )

    @classmethod
    def read(cls, path: Path) -> "LocalConfigFile":
        """Load from path; a missing or malformed file reads as empty."""
        try:
            with open(Path(path).expanduser(), "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            logger.debug("No config file at %s", path)
            return cls()
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to read config file %s: %s", path, e)
            return cls()

        if not isinstance(data, dict):
            logger.warning("Config file %s is not a JSON object, ignoring", path)
            return cls()
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            logger.warning("Config file %s has invalid entries: %s", path, e)
            return cls()


@lru_cache()
def get_settings() -> Settings:
    """Get cached process-default settings."""
    return Settings.load()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()
