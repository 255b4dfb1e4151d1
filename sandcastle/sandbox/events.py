"""
Sandbox notifications.

Each commands.run() emits, in order:
- exactly one StartEvent
- zero or more UpdateEvent (one per output line), or one ErrorEvent
- exactly one EndEvent

Listeners are registered per sandbox with Sandbox.on(). Consumers
(telemetry, streaming UIs) switch on the `type` field.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class StartEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["start"] = "start"
    sandbox_id: str
    command: str
    timestamp: int = Field(default_factory=_now_ms)


class UpdateEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["update"] = "update"
    sandbox_id: str
    line: str
    stream: Literal["stdout", "stderr"] = "stdout"


class ErrorEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["error"] = "error"
    sandbox_id: str
    message: str
    exit_code: int


class EndEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["end"] = "end"
    sandbox_id: str
    command: str
    timestamp: int = Field(default_factory=_now_ms)


SandboxEvent = Union[StartEvent, UpdateEvent, ErrorEvent, EndEvent]

EventListener = Callable[[SandboxEvent], None]


def log_errors(event: SandboxEvent) -> None:
    """Default listener: surface command failures in the log."""
    if isinstance(event, ErrorEvent):
        logger.warning(
            "Sandbox %s command failed (exit %d): %s",
            event.sandbox_id,
            event.exit_code,
            event.message,
        )


class EventEmitter:
    """
    Synchronous fan-out of sandbox events to registered listeners.

    A failing listener is logged and skipped; it never breaks the
    command that emitted the event.
    """

    def __init__(self) -> None:
        self._listeners: List[EventListener] = []

    def on(self, listener: EventListener) -> Callable[[], None]:
        """Register listener. Returns a callable that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: SandboxEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning("Event listener failed on %s: %s", event.type, e)
