"""Terminal ownership and the signal posture of the shell and its children.

A terminal has exactly one *foreground process group*.  Keyboard
signals (Ctrl-C, Ctrl-Z) go to that group, and only that group may
read from the terminal.  A job-control shell therefore:

    1. Remembers its own process group at startup.
    2. Hands the terminal to a job's group before waiting on it
       (``tcsetpgrp``).
    3. Takes the terminal back when the job ends or stops, and
       restores the terminal modes the job may have changed.

Hosts embedded in a GUI usually have no terminal at all, and a shell
started with ``&`` from another shell is not in the foreground.  Both
are normal: every hand-off reports ``NO_CONTROLLING_TERMINAL`` and
execution carries on without terminal control.

Design choices:
    - **Ownership is a value, not a global** — ``TerminalOwnership`` is
      captured once and passed to the coordinator.
    - **SIGTTOU is blocked around tcsetpgrp** — when the shell is not
      the foreground group the kernel would otherwise stop it.  Blocking
      (rather than ignoring) works from any thread.
    - **The coordinator never reaps or retries** — it only establishes
      signal and terminal posture; fork/exec failures are the executor's.
"""

from __future__ import annotations

import contextlib
import os
import signal
import sys
import termios
from collections.abc import Generator
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from py_jobctl.logging import Logger, LogLevel
from py_jobctl.signals import CHILD_DEFAULTS, SHELL_IGNORED, Signal

_SOURCE = "terminal"


class TerminalHandoff(StrEnum):
    """Outcome of a terminal hand-off attempt."""

    GRANTED = "granted"
    NO_CONTROLLING_TERMINAL = "no controlling terminal"


@dataclass
class TerminalOwnership:
    """Process-wide terminal state, captured once at startup.

    Attributes:
        shell_pgid: The host's own process group.
        terminal_fd: The controlling terminal, or None when detached.
        saved_modes: ``termios`` attributes to restore after each job.

    """

    shell_pgid: int
    terminal_fd: int | None = None
    saved_modes: list[Any] | None = None

    @classmethod
    def capture(cls, fd: int | None = None) -> TerminalOwnership:
        """Record the current process group and terminal.

        Args:
            fd: Terminal descriptor to use; defaults to stdin.  A
                descriptor that is not a TTY means "no terminal".

        """
        if fd is None:
            try:
                fd = sys.stdin.fileno()
            except (AttributeError, ValueError, OSError):
                fd = None
        if fd is None or not os.isatty(fd):
            return cls.detached()
        try:
            modes = termios.tcgetattr(fd)
        except termios.error:
            modes = None
        return cls(shell_pgid=os.getpgrp(), terminal_fd=fd, saved_modes=modes)

    @classmethod
    def detached(cls) -> TerminalOwnership:
        """Return ownership for a host with no controlling terminal."""
        return cls(shell_pgid=os.getpgrp())

    @property
    def attached(self) -> bool:
        """Return True if a terminal descriptor is known."""
        return self.terminal_fd is not None


@contextlib.contextmanager
def _sigttou_blocked() -> Generator[None]:
    """Block SIGTTOU for the duration of a terminal call."""
    previous = signal.pthread_sigmask(signal.SIG_BLOCK, {Signal.SIGTTOU})
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


class TerminalCoordinator:
    """Move terminal control between the host and its jobs."""

    def __init__(self, ownership: TerminalOwnership, *, logger: Logger | None = None) -> None:
        """Create a coordinator for the given ownership.

        Args:
            ownership: The captured terminal state.
            logger: Audit log for hand-off results.

        """
        self._ownership = ownership
        self._logger = logger
        self._granted_to: int | None = None

    @property
    def ownership(self) -> TerminalOwnership:
        """Return the terminal state this coordinator manages."""
        return self._ownership

    @property
    def shell_pgid(self) -> int:
        """Return the host's own process group."""
        return self._ownership.shell_pgid

    def has_terminal_control(self) -> bool:
        """Return True if the host's group is the terminal's foreground group."""
        fd = self._ownership.terminal_fd
        if fd is None:
            return False
        try:
            return os.tcgetpgrp(fd) == self._ownership.shell_pgid
        except OSError:
            return False

    def install_shell_signals(self, *, ignore_interrupt: bool = False) -> None:
        """Ignore the job-control signals in an interactive host.

        Args:
            ignore_interrupt: Also ignore SIGINT (for hosts that handle
                Ctrl-C themselves, like a GUI).

        """
        ignored = set(SHELL_IGNORED)
        if ignore_interrupt:
            ignored.add(Signal.SIGINT)
        for sig in ignored:
            signal.signal(sig, signal.SIG_IGN)

    def give_terminal_to(self, pgid: int) -> TerminalHandoff:
        """Make *pgid* the terminal's foreground process group.

        Returns:
            GRANTED, or NO_CONTROLLING_TERMINAL when there is no terminal,
            the host is not in the foreground, or the call failed.

        """
        fd = self._ownership.terminal_fd
        if fd is None or not self.has_terminal_control():
            self._log(LogLevel.DEBUG, f"not handing terminal to pgid {pgid}: no control")
            return TerminalHandoff.NO_CONTROLLING_TERMINAL
        try:
            with _sigttou_blocked():
                os.tcsetpgrp(fd, pgid)
        except OSError as e:
            self._log(LogLevel.DEBUG, f"tcsetpgrp({pgid}) failed: {e.strerror}")
            return TerminalHandoff.NO_CONTROLLING_TERMINAL
        self._granted_to = pgid
        self._log(LogLevel.DEBUG, f"terminal given to pgid {pgid}")
        return TerminalHandoff.GRANTED

    def take_terminal_back(self) -> TerminalHandoff:
        """Return the terminal to the host and restore its modes.

        Only acts if an earlier ``give_terminal_to`` succeeded.
        """
        fd = self._ownership.terminal_fd
        if fd is None or self._granted_to is None:
            return TerminalHandoff.NO_CONTROLLING_TERMINAL
        self._granted_to = None
        try:
            with _sigttou_blocked():
                os.tcsetpgrp(fd, self._ownership.shell_pgid)
                if self._ownership.saved_modes is not None:
                    termios.tcsetattr(fd, termios.TCSADRAIN, self._ownership.saved_modes)
        except (OSError, termios.error) as e:
            self._log(LogLevel.DEBUG, f"could not take terminal back: {e}")
            return TerminalHandoff.NO_CONTROLLING_TERMINAL
        self._log(LogLevel.DEBUG, "terminal returned to shell")
        return TerminalHandoff.GRANTED

    def place_in_group(self, pid: int, pgid: int) -> None:
        """Put a child into *pgid* from the parent side.

        Child and parent both call ``setpgid`` so that neither order of
        scheduling leaves a window where the group does not exist yet.
        Losing the race (child already exec'd or exited) is harmless.
        """
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.setpgid(pid, pgid)

    @staticmethod
    def prepare_child(pgid: int) -> None:
        """Set up a freshly forked child before ``exec``.

        Args:
            pgid: Group to join, or 0 to become the leader of a new one.

        """
        with contextlib.suppress(OSError):
            os.setpgid(0, pgid)
        for sig in CHILD_DEFAULTS:
            signal.signal(sig, signal.SIG_DFL)
        signal.pthread_sigmask(signal.SIG_SETMASK, set())

    def _log(self, level: LogLevel, message: str) -> None:
        if self._logger is not None:
            self._logger.log(level, message, source=_SOURCE)
