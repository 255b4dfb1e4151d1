"""
Command sanitization for sandbox shell commands.

sanitize_command() rejects shell metacharacters that appear outside of
quoted substrings. Quoted text is opaque: `echo "a; b"` passes while
`echo a; rm -rf /` does not.

Usage:
    from sandcastle.security import sanitize_command

    command = sanitize_command(user_command)  # raises CommandValidationError
"""
from __future__ import annotations

import re
from typing import FrozenSet, List

from sandcastle.exceptions import CommandValidationError

# Characters that chain, substitute, redirect or group commands
SHELL_METACHARACTERS: FrozenSet[str] = frozenset(";&|`$(){}[]<>")

# Single- or double-quoted substring, no escapes inside
_QUOTED = re.compile(r"\"[^\"]*\"|'[^']*'")

_PLACEHOLDER = "\x00{}\x00"


def _mask_quoted(command: str) -> tuple[str, List[str]]:
    """Replace quoted substrings with indexed placeholders."""
    quoted: List[str] = []

    def _replace(match: re.Match) -> str:
        quoted.append(match.group(0))
        return _PLACEHOLDER.format(len(quoted) - 1)

    return _QUOTED.sub(_replace, command), quoted


def _unmask(masked: str, quoted: List[str]) -> str:
    for index, text in enumerate(quoted):
        masked = masked.replace(_PLACEHOLDER.format(index), text, 1)
    return masked


def sanitize_command(command: str) -> str:
    """
    Validate a shell command.

    Returns:
        The command, unchanged.

    Raises:
        CommandValidationError: If a metacharacter appears outside quotes.
    """
    masked, quoted = _mask_quoted(command)

    for char in masked:
        if char in SHELL_METACHARACTERS:
            raise CommandValidationError(
                f"Command contains disallowed character outside quotes: {char!r}",
                character=char,
                code="disallowed_character",
            )

    return _unmask(masked, quoted)

