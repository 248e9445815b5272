"""Single-command and pipeline executors.

Running ``a | b | c`` as a job takes a precise sequence of system
calls.  Getting the order wrong leads to races (a job that cannot be
signalled yet), leaks (a pipe that never reports EOF) or hangs.

Launch order:
    1. **Pipes first** — the capture pipe and all N-1 inter-stage pipes
       are created before anything is forked, so a pipe failure never
       leaves a half-built job behind.
    2. **Fork each stage** — stage 0 becomes the leader of a new
       process group; later stages join it.  ``setpgid`` runs in both
       the child and the parent, so whichever is scheduled first, the
       group exists before the parent signals it or hands it the
       terminal.
    3. **Child side** — reset signal dispositions, dup the pipe ends
       onto stdin/stdout, apply the stage's redirections, ``execvp``.
       A failed exec exits with status 127; it never returns into the
       parent's code.
    4. **Parent side** — close every pipe end the parent no longer
       needs immediately after each fork, so EOF propagates once the
       real writers exit.

Supervision:
    The job is registered as the foreground job, the terminal is handed
    to its group, and the wait/drain loop runs until the job finishes
    or stops.  A stopped job is moved to the background with its
    capture pipe *parked*, so output written after ``bg`` or ``fg`` is
    not lost.

Only the single-command path merges stderr into the capture; in a
pipeline only the final stage's stdout is captured.
"""

from __future__ import annotations

import contextlib
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, NoReturn

from py_jobctl.capture import CapturePipe, OutputBuffer
from py_jobctl.jobs import EventKind, JobEvent, ProcessRecord, ProcessState, TableFullError
from py_jobctl.logging import Logger, LogLevel
from py_jobctl.redirection import Command, apply_redirections, pipeline_text
from py_jobctl.signals import ChildStatus, Signal, poll_child, send_to_group
from py_jobctl.waiter import WaitOutcome, wait_for_job

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from py_jobctl.config import EngineConfig
    from py_jobctl.jobs import JobTable
    from py_jobctl.terminal import TerminalCoordinator
    from py_jobctl.waiter import EventHook

EXEC_FAILED_STATUS = 127
REDIRECT_FAILED_STATUS = 1

_SOURCE = "executor"


class SpawnError(Exception):
    """Raised when the pipes or processes of a job cannot be created."""


@dataclass(frozen=True)
class ExecutionResult:
    """What a foreground execution produced.

    Attributes:
        output: Captured bytes, at most ``output_capacity`` of them.
        pids: Every member pid in stage order.
        pgid: The job's process group (equal to ``pids[0]``).
        statuses: Final status per stage; None for a stage that had not
            finished when the job stopped.
        truncated: True if output beyond the capacity was dropped.
        stopped: True if the job was suspended rather than finished.
        job_id: Background job number assigned on suspension.
        warnings: Non-fatal problems the host should show.

    """

    output: bytes
    pids: tuple[int, ...]
    pgid: int
    statuses: tuple[ChildStatus | None, ...]
    truncated: bool = False
    stopped: bool = False
    job_id: int | None = None
    warnings: tuple[str, ...] = ()

    @property
    def exit_code(self) -> int | None:
        """Return the last stage's shell-style exit code, if it finished."""
        last = self.statuses[-1] if self.statuses else None
        return last.exit_code if last is not None else None

    @property
    def text(self) -> str:
        """Return the output decoded as UTF-8 (undecodable bytes replaced)."""
        return self.output.decode(errors="replace")


@dataclass
class _Parked:
    """The capture side of a job that lives in the background."""

    capture: CapturePipe
    buffer: OutputBuffer


@dataclass
class _Untracked:
    """A job the table had no room for, still read and reaped by pgid."""

    capture: CapturePipe
    pending: set[int]
    command: str


def _report(message: str) -> None:
    """Write a diagnostic to the child's stderr (which may be the capture)."""
    with contextlib.suppress(OSError):
        os.write(2, f"py-jobctl: {message}\n".encode(errors="replace"))


class Executor:
    """Spawn jobs and supervise them until they finish or stop."""

    def __init__(
        self,
        *,
        table: JobTable,
        coordinator: TerminalCoordinator,
        config: EngineConfig,
        logger: Logger,
        notify: Callable[[JobEvent], None] | None = None,
    ) -> None:
        """Create an executor.

        Args:
            table: Where jobs are registered.
            coordinator: Terminal and signal posture.
            config: Capacities and timings.
            logger: Audit log.
            notify: Receives a STOPPED event whenever a foreground job
                is suspended.

        """
        self._table = table
        self._coordinator = coordinator
        self._config = config
        self._logger = logger
        self._notify = notify
        self._parked: dict[int, _Parked] = {}
        self._untracked: dict[int, _Untracked] = {}
        # Enough reads to fill a buffer, plus one to notice EOF.
        self._reads_per_collect = -(-config.output_capacity // config.read_chunk_size) + 1

    # -- Foreground execution ---------------------------------------------

    def execute(
        self,
        command: Command,
        event_hook: EventHook | None = None,
        *,
        command_text: str | None = None,
    ) -> ExecutionResult:
        """Run one command in the foreground, capturing stdout and stderr.

        Raises:
            SpawnError: If the capture pipe or the fork fails.
            AlreadyOccupiedError: If a foreground job is still registered.

        """
        text = command_text if command_text is not None else command.text
        return self._run_foreground((command,), merge_stderr=True, hook=event_hook, text=text)

    def execute_pipeline(
        self,
        stages: Sequence[Command],
        event_hook: EventHook | None = None,
        *,
        command_text: str | None = None,
    ) -> ExecutionResult:
        """Run a pipeline in the foreground, capturing the last stage's stdout.

        Raises:
            ValueError: If *stages* is empty.
            SpawnError: If a pipe or a fork fails.
            AlreadyOccupiedError: If a foreground job is still registered.

        """
        stages = tuple(stages)
        if not stages:
            msg = "A pipeline needs at least one stage"
            raise ValueError(msg)
        if len(stages) == 1:
            return self.execute(stages[0], event_hook, command_text=command_text)
        text = command_text if command_text is not None else pipeline_text(stages)
        return self._run_foreground(stages, merge_stderr=False, hook=event_hook, text=text)

    def _run_foreground(
        self,
        stages: tuple[Command, ...],
        *,
        merge_stderr: bool,
        hook: EventHook | None,
        text: str,
    ) -> ExecutionResult:
        self._table.ensure_foreground_free()
        pids, capture = self._spawn(stages, merge_stderr=merge_stderr)
        record = self._table.set_foreground(pids[0], pids[0], text, members=pids)
        self._log(LogLevel.INFO, f"started pgid {record.pgid}: {text}", pid=record.pid)
        buffer = OutputBuffer(self._config.output_capacity)
        return self._supervise(record, capture, buffer, hook)

    # -- Background execution ---------------------------------------------

    def launch_background(
        self,
        stages: Sequence[Command],
        *,
        command_text: str | None = None,
    ) -> int:
        """Start a job straight in the background (``cmd &``).

        Returns:
            The new job id.

        Raises:
            TableFullError: If the background list is at capacity.
            SpawnError: If a pipe or a fork fails.

        """
        stages = tuple(stages)
        if not stages:
            msg = "A pipeline needs at least one stage"
            raise ValueError(msg)
        self._table.ensure_capacity()
        text = command_text if command_text is not None else pipeline_text(stages)
        pids, capture = self._spawn(stages, merge_stderr=len(stages) == 1)
        job_id = self._table.add_background(pids[0], pids[0], text, members=pids)
        self._parked[pids[0]] = _Parked(capture, OutputBuffer(self._config.output_capacity))
        self._log(LogLevel.INFO, f"[{job_id}] started in background: {text}", pid=pids[0])
        return job_id

    def resume(
        self,
        job_id: int,
        *,
        foreground: bool = False,
        event_hook: EventHook | None = None,
    ) -> ExecutionResult | None:
        """Continue a background job (``bg``) or wait on it again (``fg``).

        Returns:
            The execution result for a foreground resume, else None.

        Raises:
            JobNotFoundError: If *job_id* is not a background job.
            AlreadyOccupiedError: If *foreground* and a foreground job exists.

        """
        record = self._table.require(job_id)
        if not foreground:
            self._table.update_state(record.pid, ProcessState.RUNNING)
            send_to_group(record.pgid, Signal.SIGCONT)
            self._log(LogLevel.INFO, f"[{job_id}] continued in background", pid=record.pid)
            return None
        record = self._table.bring_to_foreground(job_id)
        parked = self._parked.pop(record.pgid)
        self._log(LogLevel.INFO, f"[{job_id}] brought to foreground", pid=record.pid)
        return self._supervise(record, parked.capture, parked.buffer, event_hook, resume=True)

    # -- Parked output ----------------------------------------------------

    def collect(self, pgid: int) -> None:
        """Move what a background job has written into its buffer.

        At most a buffer's worth of chunks is read per call, so a job
        that writes without pause cannot keep the caller here.
        """
        parked = self._parked.get(pgid)
        if parked is None:
            return
        self._read_some(parked.capture, parked.buffer)

    def release(self, pgid: int) -> bytes:
        """Collect the remaining output of a finished job and close its pipe."""
        self.collect(pgid)
        parked = self._parked.pop(pgid, None)
        if parked is None:
            return b""
        parked.capture.close()
        return parked.buffer.getvalue()

    def _read_some(self, capture: CapturePipe, buffer: OutputBuffer) -> None:
        for _ in range(self._reads_per_collect):
            if not capture.read_available(buffer, self._config.read_chunk_size):
                return

    # -- Untracked jobs ---------------------------------------------------

    @property
    def untracked_groups(self) -> list[int]:
        """Return the pgids of running jobs the table had no room for."""
        return list(self._untracked)

    def poll_untracked(self) -> list[int]:
        """Drain and reap untracked jobs without blocking.

        Their output is read and discarded so that they never write to a
        pipe without a reader.  The pipe is closed once every member has
        finished.

        Returns:
            The pgids of untracked jobs that finished during this call.

        """
        finished: list[int] = []
        for pgid, job in list(self._untracked.items()):
            self._read_some(job.capture, OutputBuffer(0))
            for pid in list(job.pending):
                status = poll_child(pid)
                if status is not None and status.finished:
                    job.pending.discard(pid)
            if not job.pending:
                job.capture.close()
                del self._untracked[pgid]
                self._log(LogLevel.INFO, f"untracked pgid {pgid} finished: {job.command}", pid=pgid)
                finished.append(pgid)
        return finished

    def kill_untracked(self) -> None:
        """SIGKILL every remaining untracked group, reap it and close its pipe."""
        for pgid, job in self._untracked.items():
            send_to_group(pgid, Signal.SIGKILL)
            for pid in job.pending:
                with contextlib.suppress(ChildProcessError):
                    os.waitpid(pid, 0)
            job.capture.close()
        self._untracked.clear()

    def _untrack(self, record: ProcessRecord, capture: CapturePipe) -> None:
        self._table.clear_foreground()
        self._untracked[record.pgid] = _Untracked(capture, set(record.pending), record.command)

    # -- Spawning ---------------------------------------------------------

    def _spawn(
        self,
        stages: tuple[Command, ...],
        *,
        merge_stderr: bool,
    ) -> tuple[list[int], CapturePipe]:
        """Create the pipes and fork every stage into one process group."""
        try:
            capture = CapturePipe()
        except OSError as e:
            self._log(LogLevel.ERROR, f"cannot create capture pipe: {e.strerror}")
            msg = f"pipe: {e.strerror}"
            raise SpawnError(msg) from e

        links: list[tuple[int, int]] = []
        try:
            for _ in range(len(stages) - 1):
                links.append(os.pipe())
        except OSError as e:
            for read_fd, write_fd in links:
                os.close(read_fd)
                os.close(write_fd)
            capture.close()
            self._log(LogLevel.ERROR, f"cannot create pipeline pipe: {e.strerror}")
            msg = f"pipe: {e.strerror}"
            raise SpawnError(msg) from e

        open_fds = {fd for link in links for fd in link}
        pids: list[int] = []
        pgid = 0
        last = len(stages) - 1
        for index, stage in enumerate(stages):
            stdin_fd = links[index - 1][0] if index > 0 else None
            stdout_fd = links[index][1] if index < last else capture.write_fd
            try:
                pid = os.fork()
            except OSError as e:
                self._abort(pids, pgid, open_fds, capture)
                self._log(LogLevel.ERROR, f"fork failed for {stage.argv[0]}: {e.strerror}")
                msg = f"fork: {e.strerror}"
                raise SpawnError(msg) from e
            if pid == 0:
                self._exec_child(stage, pgid, stdin_fd, stdout_fd, merge_stderr=merge_stderr)
            if index == 0:
                pgid = pid
            self._coordinator.place_in_group(pid, pgid)
            pids.append(pid)
            for fd in (stdin_fd, stdout_fd if index < last else None):
                if fd is not None:
                    os.close(fd)
                    open_fds.discard(fd)
        capture.close_write()
        return pids, capture

    def _exec_child(
        self,
        stage: Command,
        pgid: int,
        stdin_fd: int | None,
        stdout_fd: int,
        *,
        merge_stderr: bool,
    ) -> NoReturn:
        """Become the stage's program.  Runs in the forked child only."""
        status = EXEC_FAILED_STATUS
        try:
            self._coordinator.prepare_child(pgid)
            if stdin_fd is not None:
                os.dup2(stdin_fd, 0)
            os.dup2(stdout_fd, 1)
            if merge_stderr:
                os.dup2(stdout_fd, 2)
            try:
                apply_redirections(stage.redirections)
            except OSError as e:
                status = REDIRECT_FAILED_STATUS
                _report(f"{e.filename}: {e.strerror}")
            else:
                os.execvp(stage.argv[0], stage.argv)
        except OSError as e:
            _report(f"{stage.argv[0]}: {e.strerror}")
        finally:
            os._exit(status)

    def _abort(
        self,
        pids: list[int],
        pgid: int,
        open_fds: set[int],
        capture: CapturePipe,
    ) -> None:
        """Undo a partially spawned pipeline: no job is left behind."""
        for fd in open_fds:
            os.close(fd)
        open_fds.clear()
        capture.close()
        if not pids:
            return
        send_to_group(pgid, Signal.SIGKILL)
        for pid in pids:
            with contextlib.suppress(ChildProcessError):
                os.waitpid(pid, 0)

    # -- Supervision ------------------------------------------------------

    def _supervise(
        self,
        record: ProcessRecord,
        capture: CapturePipe,
        buffer: OutputBuffer,
        hook: EventHook | None,
        *,
        resume: bool = False,
    ) -> ExecutionResult:
        """Hand over the terminal, wait, and settle the job's fate."""
        self._coordinator.give_terminal_to(record.pgid)
        try:
            if resume:
                send_to_group(record.pgid, Signal.SIGCONT)
            result = wait_for_job(
                record.pending,
                capture,
                buffer,
                hook=hook,
                poll_interval=self._config.poll_interval,
                chunk_size=self._config.read_chunk_size,
            )
        except BaseException:
            self._abandon(record, capture, buffer)
            raise
        finally:
            self._coordinator.take_terminal_back()

        for pid, status in result.changes.items():
            self._table.apply_status(pid, status)

        if result.outcome is WaitOutcome.DONE:
            self._table.clear_foreground()
            capture.close()
            final = record.final_status
            self._log(LogLevel.INFO, f"pgid {record.pgid} finished: {final}", pid=record.pid)
            return self._result(record, buffer)
        return self._park_stopped(record, capture, buffer)

    def _park_stopped(
        self,
        record: ProcessRecord,
        capture: CapturePipe,
        buffer: OutputBuffer,
    ) -> ExecutionResult:
        """Move a suspended foreground job into the background table."""
        try:
            job_id = self._table.move_foreground_to_background()
        except TableFullError as e:
            self._untrack(record, capture)
            send_to_group(record.pgid, Signal.SIGCONT)
            warning = f"{e}; continuing untracked: {record.command}"
            self._log(LogLevel.WARNING, warning, pid=record.pid)
            return self._result(record, buffer, stopped=True, warnings=(warning,))

        self._parked[record.pgid] = _Parked(capture, OutputBuffer(self._config.output_capacity))
        self._log(LogLevel.INFO, f"[{job_id}] stopped: {record.command}", pid=record.pid)
        if self._notify is not None:
            self._notify(
                JobEvent(
                    kind=EventKind.STOPPED,
                    job_id=job_id,
                    pid=record.pid,
                    command=record.command,
                )
            )
        return self._result(record, buffer, stopped=True, job_id=job_id)

    def _abandon(self, record: ProcessRecord, capture: CapturePipe, buffer: OutputBuffer) -> None:
        """Keep tracking a job whose wait was cut short by the host."""
        try:
            job_id = self._table.move_foreground_to_background(ProcessState.RUNNING)
        except TableFullError:
            self._untrack(record, capture)
            self._log(LogLevel.WARNING, f"wait abandoned, job untracked: {record.command}")
            return
        self._parked[record.pgid] = _Parked(capture, buffer)
        self._log(LogLevel.WARNING, f"[{job_id}] wait abandoned, job left running", pid=record.pid)

    def _result(
        self,
        record: ProcessRecord,
        buffer: OutputBuffer,
        *,
        stopped: bool = False,
        job_id: int | None = None,
        warnings: tuple[str, ...] = (),
    ) -> ExecutionResult:
        return ExecutionResult(
            output=buffer.getvalue(),
            pids=record.pids,
            pgid=record.pgid,
            statuses=tuple(record.statuses.get(pid) for pid in record.pids),
            truncated=buffer.truncated,
            stopped=stopped,
            job_id=job_id,
            warnings=warnings,
        )

    def _log(self, level: LogLevel, message: str, *, pid: int | None = None) -> None:
        self._logger.log(level, message, source=_SOURCE, pid=pid)
