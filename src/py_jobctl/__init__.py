"""py-jobctl — POSIX command execution with job control.

Re-exports public symbols so callers can write::

    from py_jobctl import Command, JobControl, TerminalOwnership
"""

from py_jobctl.config import ConfigError, EngineConfig
from py_jobctl.engine import JobControl
from py_jobctl.executor import ExecutionResult, SpawnError
from py_jobctl.jobs import (
    AlreadyOccupiedError,
    EventKind,
    JobEvent,
    JobNotFoundError,
    JobTableError,
    NoForegroundJobError,
    ProcessState,
    TableFullError,
)
from py_jobctl.redirection import Command, Direction, Redirection
from py_jobctl.terminal import TerminalHandoff, TerminalOwnership
from py_jobctl.watch import WatchSession

__all__ = [
    "AlreadyOccupiedError",
    "Command",
    "ConfigError",
    "Direction",
    "EngineConfig",
    "EventKind",
    "ExecutionResult",
    "JobControl",
    "JobEvent",
    "JobNotFoundError",
    "JobTableError",
    "NoForegroundJobError",
    "ProcessState",
    "Redirection",
    "SpawnError",
    "TableFullError",
    "TerminalHandoff",
    "TerminalOwnership",
    "WatchSession",
]
