"""Audit trail of job-control decisions.

The engine never prints: a job may own the terminal, and a GUI host
has no terminal at all.  Instead each component records what it did
(a group launched, a job parked after Ctrl-Z, a terminal hand-off that
failed, a job left untracked because the table was full) as an entry
the host may display, filter or ignore.

Entries carry the pid of the process (usually a group leader) they
concern, so ``log`` output can be matched against ``jobs`` output.

The trail is held in a ``deque`` with a fixed length: an interactive
session that runs for days keeps only its most recent entries.
"""

from collections import deque
from dataclasses import dataclass
from enum import IntEnum

DEFAULT_MAX_ENTRIES = 1000


class LogLevel(IntEnum):
    """How much an entry matters; higher values are more severe."""

    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3


@dataclass(frozen=True)
class LogEntry:
    """One recorded engine decision.

    Attributes:
        level: Severity of the entry.
        message: What happened, e.g. ``[2] stopped: sleep 10``.
        source: Component that recorded it ("executor", "engine", "jobs",
            "terminal", "watch").
        pid: Process the entry is about, or None for engine-wide events.

    """

    level: LogLevel
    message: str
    source: str
    pid: int | None = None

    def __str__(self) -> str:
        """Format as ``[LEVEL] source: message``."""
        return f"[{self.level.name}] {self.source}: {self.message}"


class Logger:
    """Bounded, in-memory audit trail shared by every engine component."""

    def __init__(self, *, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        """Create an empty trail keeping at most *max_entries* entries."""
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)

    @property
    def entries(self) -> list[LogEntry]:
        """Return a snapshot of the trail, oldest first."""
        return list(self._entries)

    def log(
        self,
        level: LogLevel,
        message: str,
        *,
        source: str,
        pid: int | None = None,
    ) -> None:
        """Record an entry, evicting the oldest one when the trail is full."""
        self._entries.append(LogEntry(level=level, message=message, source=source, pid=pid))

    def filter(
        self,
        *,
        min_level: LogLevel | None = None,
        source: str | None = None,
    ) -> list[LogEntry]:
        """Select entries by severity and component.

        Args:
            min_level: Keep entries at or above this level.
            source: Keep entries recorded by this component only.

        Returns:
            The matching entries, oldest first.

        """
        return [
            entry
            for entry in self._entries
            if (min_level is None or entry.level >= min_level)
            and (source is None or entry.source == source)
        ]

    def clear(self) -> None:
        """Forget every entry."""
        self._entries.clear()
