"""multiWatch: rerun several commands on an interval and show each run.

``multiWatch ["date", "ls /tmp"]`` keeps every listed command running
over and over, one second apart, and reports each run's output under a
header naming the command and the wall-clock time:

    "date", current_time: 1767225600
    ----------------------------------------------------
    Thu Jan  1 00:00:00 UTC 2026
    ----------------------------------------------------

Key ideas:
    - **Each run is an ordinary background job.**  The command goes
      through ``sh -c`` as a ``launch_background`` job, so stdout and
      stderr are captured, the run gets its own process group and shows
      up in ``jobs`` while it is alive.
    - **Never blocks.**  ``poll`` starts the runs that are due and reaps
      the ones that finished through ``poll_background_jobs``; the host
      calls it as often as it likes.
    - **Events are sorted, not swallowed.**  Job events that belong to
      the session become output blocks; every other event is handed
      back to the caller.
    - **Stopping is two-phase.**  ``stop`` sends SIGTERM to the runs in
      flight; the session is ``finished`` once those have been reaped.
"""

from __future__ import annotations

import ast
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from py_jobctl.executor import SpawnError
from py_jobctl.jobs import EventKind, JobEvent, JobTableError
from py_jobctl.logging import LogLevel
from py_jobctl.redirection import Command

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from py_jobctl.engine import JobControl

WATCH_INTERVAL = 1.0
MAX_WATCH_COMMANDS = 10

_RULE = "-" * 52
_SOURCE = "watch"


class WatchListError(ValueError):
    """Raised when a multiWatch argument is not a list of command strings."""


def parse_watch_list(text: str) -> list[str]:
    """Parse ``["cmd", 'cmd', ...]`` into command strings.

    Raises:
        WatchListError: If *text* is not a non-empty list of non-empty
            strings, or names more than ``MAX_WATCH_COMMANDS`` commands.

    """
    try:
        value = ast.literal_eval(text.strip())
    except (ValueError, TypeError, SyntaxError) as e:
        msg = 'expected a list like ["cmd1", "cmd2"]'
        raise WatchListError(msg) from e
    if not isinstance(value, list) or not value:
        msg = 'expected a list like ["cmd1", "cmd2"]'
        raise WatchListError(msg)
    if not all(isinstance(item, str) and item.strip() for item in value):
        msg = "every watched command must be a non-empty string"
        raise WatchListError(msg)
    if len(value) > MAX_WATCH_COMMANDS:
        msg = f"at most {MAX_WATCH_COMMANDS} commands can be watched"
        raise WatchListError(msg)
    return value


def format_block(command: str, output: bytes, timestamp: float) -> str:
    """Format one run's output under its header."""
    body = output.decode(errors="replace").rstrip("\n")
    lines = [f'"{command}", current_time: {int(timestamp)}', _RULE]
    if body:
        lines.append(body)
    lines.append(_RULE)
    return "\n".join(lines)


@dataclass
class _Watched:
    """One command of the session and the run currently in flight."""

    command: str
    job_id: int | None = None
    due: float = 0.0


class WatchSession:
    """A set of commands rerun every *interval* seconds."""

    def __init__(
        self,
        control: JobControl,
        commands: Sequence[str],
        *,
        interval: float = WATCH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """Create a session; nothing runs until ``poll`` is called.

        Args:
            control: The engine the runs are launched on.
            commands: Shell command lines, each run with ``sh -c``.
            interval: Seconds between the end of one run and the next.
            clock: Monotonic time source for scheduling.
            wall_clock: Time source for the headers.

        """
        self._control = control
        self._watched = [_Watched(command) for command in commands]
        self._interval = interval
        self._clock = clock
        self._wall_clock = wall_clock
        self._stopped = False

    @property
    def commands(self) -> list[str]:
        """Return the watched command lines."""
        return [w.command for w in self._watched]

    @property
    def active(self) -> bool:
        """Return True until ``stop`` is called."""
        return not self._stopped

    @property
    def finished(self) -> bool:
        """Return True once stopped and every run has been reaped."""
        return self._stopped and all(w.job_id is None for w in self._watched)

    def poll(self) -> tuple[list[str], list[JobEvent]]:
        """Start due runs and collect finished ones without blocking.

        Returns:
            The output blocks of runs that finished, and every job event
            that does not belong to this session.

        """
        blocks: list[str] = []
        if not self._stopped:
            blocks.extend(self._launch_due())

        others: list[JobEvent] = []
        owners = {w.job_id: w for w in self._watched if w.job_id is not None}
        for event in self._control.poll_background_jobs():
            watched = owners.get(event.job_id)
            if watched is None:
                others.append(event)
                continue
            if event.kind not in {EventKind.EXITED, EventKind.TERMINATED}:
                continue
            watched.job_id = None
            watched.due = self._clock() + self._interval
            if not self._stopped:
                blocks.append(format_block(watched.command, event.output, self._wall_clock()))
        return blocks, others

    def stop(self) -> None:
        """Stop rerunning and terminate the runs in flight."""
        if self._stopped:
            return
        self._stopped = True
        for watched in self._watched:
            if watched.job_id is not None:
                try:
                    self._control.terminate_job(watched.job_id)
                except JobTableError:
                    watched.job_id = None
        self._control.logger.log(LogLevel.INFO, "multiWatch stopped", source=_SOURCE)

    def _launch_due(self) -> list[str]:
        errors: list[str] = []
        now = self._clock()
        for watched in self._watched:
            if watched.job_id is not None or now < watched.due:
                continue
            try:
                watched.job_id = self._control.launch_background(
                    [Command(("sh", "-c", watched.command))],
                    command_text=watched.command,
                )
            except (SpawnError, JobTableError) as e:
                watched.due = now + self._interval
                errors.append(f'"{watched.command}": Error: {e}')
                self._control.logger.log(
                    LogLevel.WARNING, f"cannot run {watched.command}: {e}", source=_SOURCE
                )
        return errors
