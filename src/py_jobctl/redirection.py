"""Parsed commands and file redirections.

The engine never parses command lines.  It receives each pipeline
stage as data: an argument vector plus an ordered list of
redirections.  This module defines that data and the one piece of
behaviour attached to it — applying the redirections inside a freshly
forked child, just before ``exec``.

Semantics (the classic ``<`` and ``>``):
    - Redirections are applied **in list order**; a later one of the
      same direction wins, exactly as ``cmd > a > b`` writes to ``b``.
    - **Input** replaces stdin with the file, opened read-only.
    - **Output** replaces stdout with the file, created if missing and
      truncated if present (mode 0644 before the umask).
"""

import os
import shlex
from dataclasses import dataclass, field
from enum import StrEnum

_OUTPUT_FLAGS = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
_OUTPUT_MODE = 0o644


class Direction(StrEnum):
    """Which standard stream a redirection replaces."""

    INPUT = "<"
    OUTPUT = ">"


@dataclass(frozen=True)
class Redirection:
    """One ``<file`` or ``>file`` operator."""

    direction: Direction
    filename: str

    def __str__(self) -> str:
        """Format as ``< file`` / ``> file``."""
        return f"{self.direction} {shlex.quote(self.filename)}"


@dataclass(frozen=True)
class Command:
    """One pipeline stage: an argument vector and its redirections.

    Attributes:
        argv: Program name followed by its arguments (never empty).
        redirections: Applied in order after any pipe wiring.

    """

    argv: tuple[str, ...]
    redirections: tuple[Redirection, ...] = field(default=())

    def __post_init__(self) -> None:
        """Normalise sequences to tuples and reject an empty argv."""
        object.__setattr__(self, "argv", tuple(self.argv))
        object.__setattr__(self, "redirections", tuple(self.redirections))
        if not self.argv:
            msg = "A command needs at least one argument"
            raise ValueError(msg)

    @property
    def text(self) -> str:
        """Return the command as it would be typed."""
        parts = [shlex.join(self.argv), *(str(r) for r in self.redirections)]
        return " ".join(parts)


def pipeline_text(stages: list[Command] | tuple[Command, ...]) -> str:
    """Return the display text of a whole pipeline."""
    return " | ".join(stage.text for stage in stages)


def apply_redirections(redirections: tuple[Redirection, ...]) -> None:
    """Rewire stdin/stdout of the *current* process.

    Meant to run in a forked child.  Any ``OSError`` (missing file,
    permission denied) propagates so the caller can exit.
    """
    for redirection in redirections:
        if redirection.direction is Direction.INPUT:
            fd = os.open(redirection.filename, os.O_RDONLY)
            target = 0
        else:
            fd = os.open(redirection.filename, _OUTPUT_FLAGS, _OUTPUT_MODE)
            target = 1
        try:
            os.dup2(fd, target)
        finally:
            os.close(fd)
