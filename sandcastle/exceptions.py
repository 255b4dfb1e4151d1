"""
Typed exceptions for sandcastle.

Provides structured error handling with:
- SandcastleError: Base exception for all sandcastle errors
- ConfigurationError: Invalid settings or unknown agent types
- CommandValidationError: Command rejected by the sanitizer
- EngineError: A container engine invocation failed
- ResolutionError: No usable image could be produced for an agent
- ExecutionError: Operation on a killed sandbox or failed execution

All exceptions include structured attributes for programmatic handling.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class SandcastleError(Exception):
    """Base exception for all sandcastle errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or notifications."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(SandcastleError):
    """Configuration or validation error.

    Raised when:
    - A settings value is out of range
    - An unknown agent type is requested
    """

    pass


class CommandValidationError(SandcastleError):
    """Command rejected by the sanitizer.

    Attributes:
        character: The shell metacharacter found outside quotes
    """

    def __init__(
        self,
        message: str,
        *,
        character: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if character:
            details["character"] = character
        self.character = character
        super().__init__(message, code=code, details=details)


class EngineError(SandcastleError):
    """Container engine invocation failed.

    The message always contains ``exit code N`` when the engine process
    ran to completion with a non-zero status, so callers that only see
    the text can still recover the status.

    Attributes:
        command: Argument vector passed to the engine CLI
        exit_code: Process exit status, or None if it never completed
        stderr: Captured standard error, if any
    """

    def __init__(
        self,
        message: str,
        *,
        command: Optional[List[str]] = None,
        exit_code: Optional[int] = None,
        stderr: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if command:
            details["command"] = " ".join(command)
        if exit_code is not None:
            details["exit_code"] = exit_code
        if stderr:
            details["stderr"] = stderr[:1000]  # Truncate for safety

        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr

        super().__init__(message, code=code, details=details)


class ResolutionError(SandcastleError):
    """Image resolution failed with no viable fallback.

    Raised when a build definition exists for the agent type but the
    build itself failed. Pull and push failures never raise this.

    Attributes:
        agent_type: Agent whose image could not be produced
        image: Local tag that was being built
    """

    def __init__(
        self,
        message: str,
        *,
        agent_type: Optional[str] = None,
        image: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if agent_type:
            details["agent_type"] = agent_type
        if image:
            details["image"] = image

        self.agent_type = agent_type
        self.image = image

        super().__init__(message, code=code, details=details)


class ExecutionError(SandcastleError):
    """Sandbox execution error.

    Raised when:
    - An operation is attempted on a killed sandbox
    - A file operation or tool call fails inside the sandbox

    Command runs never raise this; they fold it into a CommandResult.

    Attributes:
        exit_code: Exit status associated with the failure (-1 if not running)
    """

    def __init__(
        self,
        message: str,
        *,
        exit_code: int = 1,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["exit_code"] = exit_code
        self.exit_code = exit_code
        super().__init__(message, code=code, details=details)


__all__ = [
    "SandcastleError",
    "ConfigurationError",
    "CommandValidationError",
    "EngineError",
    "ResolutionError",
    "ExecutionError",
]
