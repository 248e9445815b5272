"""Tests for the REPL helpers and loop.

The REPL is the thin I/O wrapper around the shell, so its helpers are
tested in isolation and the loop itself is driven with a patched
``input``.
"""

import builtins
from unittest.mock import patch

import pytest

from py_jobctl.engine import JobControl
from py_jobctl.repl import build_prompt, format_banner, run
from py_jobctl.terminal import TerminalOwnership


class TestREPLHelpers:
    """Verify the pure helper functions."""

    def test_build_prompt_shows_directory_name(self) -> None:
        """The prompt shows the last component of the directory."""
        assert build_prompt("/home/alice/src") == "jobctl:src $ "

    def test_build_prompt_root(self) -> None:
        """The root directory is shown as ``/``."""
        assert build_prompt("/") == "jobctl:/ $ "

    def test_format_banner(self) -> None:
        """The banner names the program and the terminal mode."""
        control = JobControl(ownership=TerminalOwnership.detached())
        banner = format_banner(control)
        assert "py-jobctl" in banner
        assert "no terminal control" in banner
        assert f"pgid {control.coordinator.shell_pgid}" in banner


class TestRun:
    """Verify the loop with scripted input."""

    def test_runs_commands_until_exit(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Each line is executed and printed; exit ends the loop."""
        lines = iter(["echo from-repl", "exit"])
        with (
            patch.object(builtins, "input", side_effect=lambda _prompt: next(lines)),
            patch.object(TerminalOwnership, "capture", TerminalOwnership.detached),
        ):
            run()
        out = capsys.readouterr().out
        assert "from-repl" in out
        assert "Bye." in out

    def test_eof_ends_loop(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Ctrl-D (EOF) exits gracefully."""
        with (
            patch.object(builtins, "input", side_effect=EOFError),
            patch.object(TerminalOwnership, "capture", TerminalOwnership.detached),
        ):
            run()
        assert "Bye." in capsys.readouterr().out

    def test_bad_environment(self, capsys: pytest.CaptureFixture[str]) -> None:
        """An invalid PY_JOBCTL_* variable stops startup with status 2."""
        expected_status = 2
        with (
            patch.dict("os.environ", {"PY_JOBCTL_MAX_JOBS": "lots"}),
            pytest.raises(SystemExit) as excinfo,
        ):
            run()
        assert excinfo.value.code == expected_status
        assert "max_jobs" in capsys.readouterr().out
