"""The wait/drain loop.

Waiting for a foreground job must not freeze the host: a GUI still has
to repaint, a REPL may need to forward Ctrl-C.  So instead of one
blocking ``waitpid`` the engine runs a small cooperative loop:

    1. **Hook** — call the host's event hook, if any.  This is the
       only place host code runs during a wait.
    2. **Read** — one non-blocking read from the capture pipe.
    3. **Poll** — ``waitpid(WNOHANG | WUNTRACED | WCONTINUED)`` on each
       unfinished member.  All finished: drain the pipe and stop.  Any
       stopped: stop *without* draining (the pipe stays open while the
       job is suspended).
    4. **Sleep** — a millisecond or so, to bound CPU use.

Real parallelism comes from the kernel running the children; the loop
itself is single-threaded and never blocks indefinitely except in the
final drain, after every writer has exited.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TypeAlias

from py_jobctl.capture import CapturePipe, OutputBuffer
from py_jobctl.signals import ChildStatus, StatusKind, poll_child

# Called once per loop iteration; must return promptly.
EventHook: TypeAlias = Callable[[], None]


class WaitOutcome(StrEnum):
    """Why the wait loop returned."""

    DONE = "done"
    STOPPED = "stopped"


@dataclass
class WaitResult:
    """What the loop observed.

    Attributes:
        outcome: DONE when every member finished, STOPPED otherwise.
        changes: The last status seen for each pid that changed.

    """

    outcome: WaitOutcome
    changes: dict[int, ChildStatus] = field(default_factory=dict)


def wait_for_job(
    pids: list[int],
    capture: CapturePipe,
    buffer: OutputBuffer,
    *,
    hook: EventHook | None = None,
    poll_interval: float,
    chunk_size: int,
    poll: Callable[[int], ChildStatus | None] = poll_child,
) -> WaitResult:
    """Wait for the given members while draining their output.

    Args:
        pids: Unfinished members of the job.
        capture: The job's capture pipe.
        buffer: Where captured bytes go.
        hook: Host event hook, called every iteration.
        poll_interval: Seconds to sleep between iterations.
        chunk_size: Maximum bytes per non-blocking read.
        poll: Status query for one pid.

    Returns:
        The outcome and every status change observed.

    """
    pending = list(pids)
    changes: dict[int, ChildStatus] = {}
    while True:
        if hook is not None:
            hook()
        capture.read_available(buffer, chunk_size)

        stopped = False
        for pid in list(pending):
            status = poll(pid)
            if status is None:
                continue
            changes[pid] = status
            if status.finished:
                pending.remove(pid)
            elif status.kind is StatusKind.STOPPED:
                stopped = True

        if not pending:
            capture.drain(buffer, chunk_size)
            return WaitResult(WaitOutcome.DONE, changes)
        if stopped:
            return WaitResult(WaitOutcome.STOPPED, changes)
        time.sleep(poll_interval)
