"""JobControl — the one object a host talks to.

The engine wires the pieces together the way a kernel wires its
subsystems: one job table, one terminal coordinator, one executor and
one audit log, all created in the constructor and shared for the
lifetime of the session.

The host is single-threaded from the engine's point of view:

    - ``execute`` / ``execute_pipeline`` block (cooperatively, via the
      event hook) until the foreground job finishes or stops.
    - ``send_interrupt`` / ``send_stop`` are meant to be called *from*
      the event hook, e.g. when a GUI sees Ctrl-C.
    - ``poll_background_jobs`` is called between commands (a REPL does
      it before each prompt) and reports job-level transitions.

Shutdown terminates every job the engine still tracks, so a host that
exits never leaves stopped process groups behind.
"""

from __future__ import annotations

import contextlib
import os
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Self

from py_jobctl.config import EngineConfig
from py_jobctl.executor import ExecutionResult, Executor
from py_jobctl.jobs import EventKind, JobEvent, JobTable, ProcessState
from py_jobctl.logging import Logger, LogLevel
from py_jobctl.redirection import Command, Redirection
from py_jobctl.signals import Signal, poll_child, send_to_group
from py_jobctl.terminal import TerminalCoordinator, TerminalOwnership

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from types import TracebackType

    from py_jobctl.waiter import EventHook

DEFAULT_SHUTDOWN_GRACE = 1.0

_SOURCE = "engine"


class JobControl:
    """Execute commands and pipelines with POSIX job control."""

    def __init__(
        self,
        *,
        config: EngineConfig | None = None,
        ownership: TerminalOwnership | None = None,
        logger: Logger | None = None,
        notify: Callable[[JobEvent], None] | None = None,
    ) -> None:
        """Create the engine.

        Args:
            config: Capacities and timings (defaults to ``EngineConfig()``).
            ownership: Terminal state; captured from stdin when omitted.
                GUI hosts and tests pass ``TerminalOwnership.detached()``.
            logger: Audit log (a fresh one when omitted).
            notify: Default receiver for job events, used when a foreground
                job is stopped and by ``poll_background_jobs``.

        """
        self.config = config if config is not None else EngineConfig()
        self.logger = logger if logger is not None else Logger()
        self.table = JobTable(
            capacity=self.config.max_jobs,
            max_command_length=self.config.max_command_length,
        )
        self.coordinator = TerminalCoordinator(
            ownership if ownership is not None else TerminalOwnership.capture(),
            logger=self.logger,
        )
        self._notify = notify
        self._executor = Executor(
            table=self.table,
            coordinator=self.coordinator,
            config=self.config,
            logger=self.logger,
            notify=notify,
        )

    # -- Execution ---------------------------------------------------------

    def execute(
        self,
        argv: Sequence[str],
        redirections: Sequence[Redirection] = (),
        event_hook: EventHook | None = None,
        *,
        command_text: str | None = None,
    ) -> ExecutionResult:
        """Run one command in the foreground and capture stdout and stderr.

        Args:
            argv: Program and arguments.
            redirections: ``<`` / ``>`` operators, applied in order.
            event_hook: Called once per wait iteration.
            command_text: Display text; defaults to the quoted argv.

        Returns:
            The captured output and final status (or ``stopped=True``).

        Raises:
            SpawnError: If the capture pipe or the fork fails.
            AlreadyOccupiedError: If a foreground job is registered.

        """
        command = Command(tuple(argv), tuple(redirections))
        return self._executor.execute(command, event_hook, command_text=command_text)

    def execute_pipeline(
        self,
        stages: Sequence[Command],
        event_hook: EventHook | None = None,
        *,
        command_text: str | None = None,
    ) -> ExecutionResult:
        """Run ``stage1 | stage2 | ...`` in the foreground.

        Only the last stage's stdout is captured.

        Raises:
            ValueError: If *stages* is empty.
            SpawnError: If a pipe or a fork fails.
            AlreadyOccupiedError: If a foreground job is registered.

        """
        return self._executor.execute_pipeline(stages, event_hook, command_text=command_text)

    def launch_background(
        self,
        stages: Sequence[Command],
        *,
        command_text: str | None = None,
    ) -> int:
        """Start a command or pipeline in the background (``cmd &``).

        Returns:
            The new job id.

        """
        return self._executor.launch_background(stages, command_text=command_text)

    # -- Foreground signals ------------------------------------------------

    def send_interrupt(self) -> bool:
        """Send SIGINT to the foreground group (Ctrl-C).

        Returns:
            False if there is no foreground job.

        """
        return self._signal_foreground(Signal.SIGINT)

    def send_stop(self) -> bool:
        """Send SIGTSTP to the foreground group (Ctrl-Z).

        Returns:
            False if there is no foreground job.

        """
        return self._signal_foreground(Signal.SIGTSTP)

    def _signal_foreground(self, sig: Signal) -> bool:
        record = self.table.get_foreground()
        if record is None:
            return False
        self.logger.log(
            LogLevel.DEBUG,
            f"{sig.name} to foreground pgid {record.pgid}",
            source=_SOURCE,
            pid=record.pid,
        )
        return send_to_group(record.pgid, sig)

    # -- Background jobs ---------------------------------------------------

    def poll_background_jobs(
        self,
        notify: Callable[[JobEvent], None] | None = None,
    ) -> list[JobEvent]:
        """Reap background state changes without blocking.

        Finished jobs are removed and their parked output is attached to
        the EXITED / TERMINATED event.  Untracked jobs are drained and
        reaped too, but produce no events.

        Args:
            notify: Receiver for each event (defaults to the engine's).

        Returns:
            Every event produced by this poll, in job order.

        """
        self._executor.poll_untracked()
        for record in self.table.list_jobs():
            self._executor.collect(record.pgid)

        events: list[JobEvent] = []

        def _record(event: JobEvent) -> None:
            # The leader pid is the group id.
            if event.kind in {EventKind.EXITED, EventKind.TERMINATED}:
                events.append(replace(event, output=self._executor.release(event.pid)))
            else:
                events.append(event)

        self.table.reap_changes(poll_child, _record)

        receiver = notify if notify is not None else self._notify
        for event in events:
            self.logger.log(LogLevel.INFO, str(event), source="jobs", pid=event.pid)
            if receiver is not None:
                receiver(event)
        return events

    def list_jobs(self) -> list[tuple[int, str, ProcessState]]:
        """Return ``(job_id, command, state)`` for every background job."""
        return [(r.job_id, r.command, r.state) for r in self.table.list_jobs()]

    def resume_job(
        self,
        job_id: int,
        *,
        foreground: bool = False,
        event_hook: EventHook | None = None,
    ) -> ExecutionResult | None:
        """Continue a background job: ``fg`` when *foreground*, else ``bg``.

        Returns:
            The execution result for ``fg``, None for ``bg``.

        Raises:
            JobNotFoundError: If *job_id* is not a background job.

        """
        return self._executor.resume(job_id, foreground=foreground, event_hook=event_hook)

    def terminate_job(self, job_id: int, sig: int = Signal.SIGTERM) -> bool:
        """Send *sig* to a background job's group (``kill %n``).

        A stopped job is also continued so that it can act on the signal.

        Returns:
            False if the group no longer exists.

        Raises:
            JobNotFoundError: If *job_id* is not a background job.

        """
        record = self.table.require(job_id)
        delivered = send_to_group(record.pgid, sig)
        if record.state is ProcessState.STOPPED:
            send_to_group(record.pgid, Signal.SIGCONT)
        self.logger.log(
            LogLevel.INFO,
            f"[{job_id}] sent signal {sig}",
            source=_SOURCE,
            pid=record.pid,
        )
        return delivered

    # -- Lifecycle ---------------------------------------------------------

    def shutdown(self, grace: float = DEFAULT_SHUTDOWN_GRACE) -> None:
        """Terminate and reap every tracked job.

        Each group gets SIGTERM (and SIGCONT if stopped).  Groups still
        alive after *grace* seconds get SIGKILL.  All parked output is
        discarded.  Jobs left running untracked because the table was
        full are terminated the same way, since nothing would read their
        output afterwards.
        """
        records = self.table.list_jobs()
        foreground = self.table.get_foreground()
        if foreground is not None:
            records.append(foreground)
        groups = [record.pgid for record in records] + self._executor.untracked_groups
        for pgid in groups:
            send_to_group(pgid, Signal.SIGTERM)
            send_to_group(pgid, Signal.SIGCONT)

        deadline = time.monotonic() + grace
        pending = {pid for record in records for pid in record.pending}
        while (pending or self._executor.untracked_groups) and time.monotonic() < deadline:
            self._executor.poll_untracked()
            for pid in list(pending):
                status = poll_child(pid)
                if status is not None and status.finished:
                    pending.discard(pid)
            if pending or self._executor.untracked_groups:
                time.sleep(self.config.poll_interval)

        for record in records:
            if any(pid in pending for pid in record.pids):
                send_to_group(record.pgid, Signal.SIGKILL)
        for pid in pending:
            with contextlib.suppress(ChildProcessError):
                os.waitpid(pid, 0)
        self._executor.kill_untracked()

        for record in records:
            self.table.remove(record.pid)
            self._executor.release(record.pgid)
        self.table.clear_foreground()
        if records:
            self.logger.log(LogLevel.INFO, f"shut down {len(records)} job(s)", source=_SOURCE)

    def __enter__(self) -> Self:
        """Return the engine itself."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Shut down on leaving the ``with`` block."""
        self.shutdown()
