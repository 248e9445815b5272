"""Job table — the foreground slot and the background job list.

In Unix, a "job" is a shell concept layered on top of kernel processes.
When you press Ctrl-Z on ``sleep 60``, the kernel only stops a process
group; it is the shell that turns that group into ``[1]+ Stopped``.

Key ideas:
    - **One foreground job** — the group that currently owns the
      terminal.  It has no job number (job id 0).
    - **Background jobs are numbered** — ``[1]``, ``[2]``, ... in the
      order they were suspended or launched.  Numbers are never reused
      within a session, even after earlier jobs finish.
    - **A job may be many processes** — every stage of a pipeline is a
      *member* of the same record and shares the leader's group id.
    - **Done jobs vanish** — a record is removed as soon as its last
      member is reaped; there is no DONE entry to clean up later.

Design choices:
    - The table is pure data: it never calls ``waitpid`` or ``kill``.
      ``reap_changes`` receives the poll function from the executor.
    - Auto-incrementing job ids via ``itertools.count``.
    - Capacity is bounded; exceeding it is a ``TableFullError`` and
      leaves the table untouched.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from itertools import count
from time import time

from py_jobctl.signals import ChildStatus, StatusKind

DEFAULT_CAPACITY = 100
DEFAULT_MAX_COMMAND_LENGTH = 512


class ProcessState(StrEnum):
    """State of a job or of one of its member processes."""

    RUNNING = "Running"
    STOPPED = "Stopped"
    DONE = "Done"


class EventKind(StrEnum):
    """Job-level transitions reported to the host.

    The values double as the labels of the classic notification line.
    """

    EXITED = "Done"
    TERMINATED = "Terminated"
    STOPPED = "Stopped"
    RESUMED = "Running"


class JobTableError(Exception):
    """Base class for job table failures."""


class AlreadyOccupiedError(JobTableError):
    """Raised when a live foreground job has not been cleared."""


class NoForegroundJobError(JobTableError):
    """Raised when an operation needs a foreground job and there is none."""


class TableFullError(JobTableError):
    """Raised when the background list is at capacity."""


class JobNotFoundError(JobTableError, LookupError):
    """Raised when a job id does not name a background job."""


@dataclass
class ProcessRecord:
    """A job: one process, or every process of one pipeline.

    Attributes:
        pid: PID of the group leader (the first stage).
        pgid: Process group shared by every member.
        command: Command text for display, bounded in length.
        state: Job-level state.
        job_id: Background job number, 0 while in the foreground.
        start_time: Wall-clock launch time.
        members: State of each member pid, in stage order.
        statuses: Final status of each member that has finished.

    """

    pid: int
    pgid: int
    command: str
    state: ProcessState = ProcessState.RUNNING
    job_id: int = 0
    start_time: float = field(default_factory=time)
    members: dict[int, ProcessState] = field(default_factory=dict)
    statuses: dict[int, ChildStatus] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Make sure the leader is always a member."""
        if not self.members:
            self.members = {self.pid: self.state}

    @property
    def pids(self) -> tuple[int, ...]:
        """Return every member pid in stage order."""
        return tuple(self.members)

    @property
    def pending(self) -> list[int]:
        """Return the member pids that have not finished."""
        return [pid for pid, state in self.members.items() if state is not ProcessState.DONE]

    @property
    def final_status(self) -> ChildStatus | None:
        """Return the last stage's status — the status of the whole job."""
        return self.statuses.get(self.pids[-1])

    def derive_state(self) -> ProcessState:
        """Fold the member states into one job state."""
        states = self.members.values()
        if all(s is ProcessState.DONE for s in states):
            return ProcessState.DONE
        if any(s is ProcessState.STOPPED for s in states):
            return ProcessState.STOPPED
        return ProcessState.RUNNING

    def __str__(self) -> str:
        """Format as ``[id] state command (pgid=N)``."""
        return f"[{self.job_id}] {self.state} {self.command} (pgid={self.pgid})"


@dataclass(frozen=True)
class JobEvent:
    """A job-level transition, delivered to the host's notify callback.

    Attributes:
        kind: What happened.
        job_id: Job number (0 for a foreground job).
        pid: The job's leader pid.
        command: The job's command text.
        signal: Terminating signal for TERMINATED events.
        exit_code: Exit code of the last stage for EXITED events.
        output: Output captured while the job ran in the background.

    """

    kind: EventKind
    job_id: int
    pid: int
    command: str
    signal: int | None = None
    exit_code: int | None = None
    output: bytes = b""

    def __str__(self) -> str:
        """Format as ``[1]+ Done                    sleep 1``."""
        return f"[{self.job_id}]+ {self.kind:<24}{self.command}"


def _member_state(status: ChildStatus) -> ProcessState:
    """Map a decoded wait status onto a member state."""
    if status.finished:
        return ProcessState.DONE
    if status.kind is StatusKind.STOPPED:
        return ProcessState.STOPPED
    return ProcessState.RUNNING


class JobTable:
    """Track the foreground job and the background jobs.

    All mutation goes through these methods so that the invariants hold:
    a single foreground slot, strictly increasing job ids, and a bounded
    background list.
    """

    def __init__(
        self,
        *,
        capacity: int = DEFAULT_CAPACITY,
        max_command_length: int = DEFAULT_MAX_COMMAND_LENGTH,
    ) -> None:
        """Create an empty table.

        Args:
            capacity: Maximum number of background jobs.
            max_command_length: Command text beyond this is cut off.

        """
        self._capacity = capacity
        self._max_command_length = max_command_length
        self._foreground: ProcessRecord | None = None
        self._background: list[ProcessRecord] = []
        self._counter = count(start=1)

    @property
    def capacity(self) -> int:
        """Return the background capacity."""
        return self._capacity

    @property
    def is_full(self) -> bool:
        """Return True if no further background job fits."""
        return len(self._background) >= self._capacity

    # -- Foreground slot -------------------------------------------------

    def set_foreground(
        self,
        pid: int,
        pgid: int,
        command: str,
        members: list[int] | tuple[int, ...] | None = None,
    ) -> ProcessRecord:
        """Register a freshly launched job as the foreground job.

        Args:
            pid: Leader pid.
            pgid: Process group of the job.
            command: Command text.
            members: Every pid of the job in stage order (default: just
                the leader).

        Returns:
            The new foreground record.

        Raises:
            AlreadyOccupiedError: If a live foreground job is registered.

        """
        self.ensure_foreground_free()
        pids = list(members) if members else [pid]
        record = ProcessRecord(
            pid=pid,
            pgid=pgid,
            command=command[: self._max_command_length],
            members=dict.fromkeys(pids, ProcessState.RUNNING),
        )
        self._foreground = record
        return record

    def clear_foreground(self) -> None:
        """Release the foreground slot (no-op when empty)."""
        self._foreground = None

    def get_foreground(self) -> ProcessRecord | None:
        """Return the foreground record, or None."""
        return self._foreground

    def move_foreground_to_background(self, state: ProcessState = ProcessState.STOPPED) -> int:
        """Turn the foreground job into a numbered background job.

        Args:
            state: State the job has in the background (Stopped after
                Ctrl-Z; Running when the host abandons the wait).

        Returns:
            The newly assigned job id.

        Raises:
            NoForegroundJobError: If the foreground slot is empty.
            TableFullError: If the background list is at capacity.

        """
        record = self._foreground
        if record is None:
            msg = "No foreground job to move to the background"
            raise NoForegroundJobError(msg)
        self.ensure_capacity()
        record.job_id = next(self._counter)
        record.state = state
        self._background.append(record)
        self._foreground = None
        return record.job_id

    def bring_to_foreground(self, job_id: int) -> ProcessRecord:
        """Move a background job into the foreground slot.

        The job gives up its number; if it is stopped again it gets a
        fresh one.

        Raises:
            JobNotFoundError: If no such background job exists.
            AlreadyOccupiedError: If a live foreground job is registered.

        """
        record = self.require(job_id)
        self.ensure_foreground_free()
        self._background.remove(record)
        record.job_id = 0
        record.state = ProcessState.RUNNING
        for pid in record.pending:
            record.members[pid] = ProcessState.RUNNING
        self._foreground = record
        return record

    # -- Background list -------------------------------------------------

    def add_background(
        self,
        pid: int,
        pgid: int,
        command: str,
        members: list[int] | tuple[int, ...] | None = None,
        state: ProcessState = ProcessState.RUNNING,
    ) -> int:
        """Register a job that was launched straight into the background.

        Returns:
            The newly assigned job id.

        Raises:
            TableFullError: If the background list is at capacity.

        """
        self.ensure_capacity()
        pids = list(members) if members else [pid]
        record = ProcessRecord(
            pid=pid,
            pgid=pgid,
            command=command[: self._max_command_length],
            state=state,
            job_id=next(self._counter),
            members=dict.fromkeys(pids, state),
        )
        self._background.append(record)
        return record.job_id

    def get(self, job_id: int) -> ProcessRecord | None:
        """Return a background job by its number, or None."""
        return next((r for r in self._background if r.job_id == job_id), None)

    def find_by_pid(self, pid: int) -> ProcessRecord | None:
        """Return the background job that has *pid* as a member, or None."""
        return next((r for r in self._background if pid in r.members), None)

    def update_state(self, pid: int, state: ProcessState) -> None:
        """Set the state of the background job owning *pid* and its live members."""
        record = self.find_by_pid(pid)
        if record is None:
            return
        record.state = state
        for member in record.pending:
            record.members[member] = state

    def remove(self, pid: int) -> ProcessRecord | None:
        """Drop the background job owning *pid*, keeping the others in order."""
        record = self.find_by_pid(pid)
        if record is not None:
            self._background.remove(record)
        return record

    def list_jobs(self) -> list[ProcessRecord]:
        """Return the background jobs in arrival order."""
        return list(self._background)

    # -- State changes ---------------------------------------------------

    def apply_status(self, pid: int, status: ChildStatus) -> ProcessRecord | None:
        """Record a member's decoded wait status on whichever job owns it.

        Returns:
            The owning record, or None if *pid* is not tracked.

        """
        record = self._owner(pid)
        if record is None:
            return None
        record.members[pid] = _member_state(status)
        if status.finished:
            record.statuses[pid] = status
        return record

    def reap_changes(
        self,
        poll: Callable[[int], ChildStatus | None],
        notify: Callable[[JobEvent], None],
    ) -> None:
        """Fold pending member changes into job transitions.

        Every unfinished member of every background job is polled once.
        Each job whose overall state changed produces exactly one event;
        finished jobs are removed.

        Args:
            poll: Non-blocking status query for one pid.
            notify: Receives one event per job-level transition.

        """
        for record in list(self._background):
            for pid in record.pending:
                status = poll(pid)
                if status is not None:
                    self.apply_status(pid, status)
            new_state = record.derive_state()
            if new_state is record.state:
                continue
            if new_state is ProcessState.DONE:
                self._background.remove(record)
                notify(_finished_event(record))
                continue
            record.state = new_state
            kind = EventKind.STOPPED if new_state is ProcessState.STOPPED else EventKind.RESUMED
            notify(JobEvent(kind=kind, job_id=record.job_id, pid=record.pid, command=record.command))

    # -- Checks ----------------------------------------------------------

    def require(self, job_id: int) -> ProcessRecord:
        """Return a background job by its number or raise JobNotFoundError."""
        record = self.get(job_id)
        if record is None:
            msg = f"No such job: {job_id}"
            raise JobNotFoundError(msg)
        return record

    def ensure_foreground_free(self) -> None:
        """Raise AlreadyOccupiedError unless the foreground slot can be taken."""
        current = self._foreground
        if current is not None and current.state is not ProcessState.DONE:
            msg = f"Foreground slot already holds pid {current.pid} ({current.command})"
            raise AlreadyOccupiedError(msg)

    def ensure_capacity(self) -> None:
        """Raise TableFullError if no further background job fits."""
        if self.is_full:
            msg = f"Maximum number of background jobs reached ({self._capacity})"
            raise TableFullError(msg)

    def _owner(self, pid: int) -> ProcessRecord | None:
        if self._foreground is not None and pid in self._foreground.members:
            return self._foreground
        return self.find_by_pid(pid)


def _finished_event(record: ProcessRecord) -> JobEvent:
    """Build the EXITED or TERMINATED event for a finished job."""
    status = record.final_status
    if status is not None and status.kind is StatusKind.SIGNALED:
        return JobEvent(
            kind=EventKind.TERMINATED,
            job_id=record.job_id,
            pid=record.pid,
            command=record.command,
            signal=status.signal,
        )
    return JobEvent(
        kind=EventKind.EXITED,
        job_id=record.job_id,
        pid=record.pid,
        command=record.command,
        exit_code=status.exit_code if status is not None else None,
    )
