"""
Logfire tracing for sandbox operations.

Active when the `logfire` package is installed, unless SANDCASTLE_LOGFIRE
is set to a false value. SANDCASTLE_LOGFIRE_CONSOLE=0 silences console
output from Logfire itself.
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Iterator, Optional

# None: not probed yet. False: not installed.
_logfire: Any = None
_configured = False

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def _flag(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() in _TRUE_VALUES


def _module():
    global _logfire
    if _logfire is None:
        try:
            import logfire as module
        except ImportError:
            module = False
        _logfire = module
    return _logfire


def _console_setting():
    # logfire.configure(console=None) keeps its default console exporter
    return False if _flag("SANDCASTLE_LOGFIRE_CONSOLE") is False else None


def enabled() -> bool:
    if not _module():
        return False
    return _flag("SANDCASTLE_LOGFIRE") is not False


def configure() -> bool:
    """Configure Logfire once. Returns whether tracing is live."""
    global _configured
    if not enabled():
        return False
    if _configured:
        return True
    try:
        _logfire.configure(console=_console_setting())
    except Exception:  # noqa: BLE001
        return False
    _configured = True
    return True


@contextmanager
def span(name: str, **attrs: Any) -> Iterator[None]:
    if configure():
        with _logfire.span(name, **attrs):
            yield
    else:
        yield


def log(level: str, message: str, **attrs: Any) -> None:
    if configure():
        getattr(_logfire, level, _logfire.info)(message, **attrs)
