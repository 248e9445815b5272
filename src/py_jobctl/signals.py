"""Job-control signals and child wait-status decoding.

A shell does not deliver signals itself; the kernel does.  What the
shell *does* own is the bookkeeping around them:

    - **Which signals a child must get back.**  The shell ignores
      SIGTSTP, SIGTTIN and SIGTTOU so that Ctrl-Z and terminal
      hand-offs cannot suspend it.  Dispositions set to ``SIG_IGN``
      survive ``exec``, so every child has to reset them before
      running a program.  Python additionally ignores SIGPIPE, which
      would otherwise break ``yes | head``.
    - **What ``waitpid`` told us.**  The raw status word packs four
      different events (exit, death by signal, stop, continue) into
      one integer.  ``decode_status`` turns it into a ``ChildStatus``.

Design choices:
    - **IntEnum with the platform's values** — ``Signal.SIGTSTP`` is
      usable anywhere ``signal.SIGTSTP`` is, including ``os.killpg``.
    - **Frozen status records** — a status is a fact about the past.
    - **A reaped-elsewhere pid is a status, not an error** — if
      ``waitpid`` says the child no longer exists the job is simply
      finished (``StatusKind.LOST``).
"""

import os
import signal
from dataclasses import dataclass
from enum import IntEnum, StrEnum


class Signal(IntEnum):
    """Signals the job-control engine sends or resets."""

    SIGINT = signal.SIGINT
    SIGQUIT = signal.SIGQUIT
    SIGKILL = signal.SIGKILL
    SIGPIPE = signal.SIGPIPE
    SIGTERM = signal.SIGTERM
    SIGCHLD = signal.SIGCHLD
    SIGCONT = signal.SIGCONT
    SIGSTOP = signal.SIGSTOP
    SIGTSTP = signal.SIGTSTP
    SIGTTIN = signal.SIGTTIN
    SIGTTOU = signal.SIGTTOU


CHILD_DEFAULTS: tuple[Signal, ...] = (
    Signal.SIGINT,
    Signal.SIGQUIT,
    Signal.SIGTSTP,
    Signal.SIGTTIN,
    Signal.SIGTTOU,
    Signal.SIGCHLD,
    Signal.SIGPIPE,
)
"""Signals restored to ``SIG_DFL`` in every child before ``exec``."""

SHELL_IGNORED: frozenset[Signal] = frozenset({Signal.SIGTSTP, Signal.SIGTTIN, Signal.SIGTTOU})
"""Signals an interactive host ignores so the keyboard cannot stop it."""

_SIGNALED_EXIT_BASE = 128


class StatusKind(StrEnum):
    """What a ``waitpid`` report says happened to a child."""

    EXITED = "exited"
    SIGNALED = "signaled"
    STOPPED = "stopped"
    CONTINUED = "continued"
    LOST = "lost"


@dataclass(frozen=True)
class ChildStatus:
    """One decoded state change of a child process.

    Attributes:
        kind: The kind of change.
        value: Exit code for EXITED, signal number for SIGNALED and
            STOPPED, None otherwise.

    """

    kind: StatusKind
    value: int | None = None

    @property
    def finished(self) -> bool:
        """Return True if the child will never run again."""
        return self.kind in {StatusKind.EXITED, StatusKind.SIGNALED, StatusKind.LOST}

    @property
    def signal(self) -> int | None:
        """Return the terminating or stopping signal, if any."""
        if self.kind in {StatusKind.SIGNALED, StatusKind.STOPPED}:
            return self.value
        return None

    @property
    def exit_code(self) -> int | None:
        """Return the shell-style exit code (128 + signal for deaths)."""
        match self.kind:
            case StatusKind.EXITED:
                return self.value
            case StatusKind.SIGNALED:
                assert self.value is not None
                return _SIGNALED_EXIT_BASE + self.value
            case _:
                return None

    def __str__(self) -> str:
        """Format as ``exited(0)``, ``signaled(15)``, ``lost``..."""
        if self.value is None:
            return str(self.kind)
        return f"{self.kind}({self.value})"


def decode_status(status: int) -> ChildStatus:
    """Decode a raw ``waitpid`` status word.

    Args:
        status: The second element of ``os.waitpid``'s result.

    Returns:
        The decoded status.

    Raises:
        ValueError: If the word matches none of the known forms.

    """
    if os.WIFEXITED(status):
        return ChildStatus(StatusKind.EXITED, os.WEXITSTATUS(status))
    if os.WIFSIGNALED(status):
        return ChildStatus(StatusKind.SIGNALED, os.WTERMSIG(status))
    if os.WIFSTOPPED(status):
        return ChildStatus(StatusKind.STOPPED, os.WSTOPSIG(status))
    if os.WIFCONTINUED(status):
        return ChildStatus(StatusKind.CONTINUED)
    msg = f"Unrecognised wait status: {status:#x}"
    raise ValueError(msg)


def poll_child(pid: int) -> ChildStatus | None:
    """Ask the kernel, without blocking, whether *pid* changed state.

    Returns:
        The decoded change, or None if nothing happened since the
        last poll.

    """
    try:
        reaped, status = os.waitpid(pid, os.WNOHANG | os.WUNTRACED | os.WCONTINUED)
    except ChildProcessError:
        return ChildStatus(StatusKind.LOST)
    if reaped == 0:
        return None
    return decode_status(status)


def send_to_group(pgid: int, sig: int) -> bool:
    """Signal every process in *pgid*.

    Returns:
        False if the group no longer exists.

    """
    try:
        os.killpg(pgid, sig)
    except ProcessLookupError:
        return False
    return True
