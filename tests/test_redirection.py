"""Tests for commands and file redirection.

A ``Command`` is an argv plus an ordered list of ``<`` / ``>``
redirections.  Applying them happens in the forked child, so the
end-to-end tests run real commands through the engine and look at the
files they produce.
"""

from pathlib import Path

import pytest

from py_jobctl.engine import JobControl
from py_jobctl.redirection import Command, Direction, Redirection, pipeline_text
from py_jobctl.terminal import TerminalOwnership


def _control() -> JobControl:
    """Create an engine with no controlling terminal."""
    return JobControl(ownership=TerminalOwnership.detached())


class TestCommand:
    """Verify the command value type."""

    def test_empty_argv_rejected(self) -> None:
        """A command needs a program name."""
        with pytest.raises(ValueError, match="at least one"):
            Command(())

    def test_lists_become_tuples(self) -> None:
        """Sequences are normalised so commands stay hashable."""
        command = Command(["echo", "hi"], [Redirection(Direction.OUTPUT, "f")])  # type: ignore[arg-type]
        assert command.argv == ("echo", "hi")
        assert isinstance(command.redirections, tuple)
        assert hash(command)

    def test_text_quotes_arguments(self) -> None:
        """Display text is shell-quoted, redirections included."""
        command = Command(("echo", "a b"), (Redirection(Direction.OUTPUT, "out.txt"),))
        assert command.text == "echo 'a b' > out.txt"

    def test_pipeline_text(self) -> None:
        """Stages are joined with `` | ``."""
        stages = (Command(("ls",)), Command(("sort", "-r")))
        assert pipeline_text(stages) == "ls | sort -r"


class TestApplyRedirections:
    """Verify redirections in real children."""

    def test_output_creates_file(self, tmp_path: Path) -> None:
        """``>`` sends stdout to the file, not the capture."""
        target = tmp_path / "out.txt"
        result = _control().execute(
            ["echo", "hello"], [Redirection(Direction.OUTPUT, str(target))]
        )
        assert result.output == b""
        assert target.read_bytes() == b"hello\n"

    def test_output_truncates(self, tmp_path: Path) -> None:
        """An existing file is truncated, not appended to."""
        target = tmp_path / "out.txt"
        target.write_text("old content that is long\n")
        _control().execute(["echo", "new"], [Redirection(Direction.OUTPUT, str(target))])
        assert target.read_text() == "new\n"

    def test_input_from_file(self, tmp_path: Path) -> None:
        """``<`` feeds the file to stdin."""
        source = tmp_path / "in.txt"
        source.write_text("b\na\n")
        result = _control().execute(["sort"], [Redirection(Direction.INPUT, str(source))])
        assert result.output == b"a\nb\n"

    def test_last_output_wins(self, tmp_path: Path) -> None:
        """With two ``>`` the later file receives the output."""
        first = tmp_path / "a.txt"
        second = tmp_path / "b.txt"
        _control().execute(
            ["echo", "x"],
            [Redirection(Direction.OUTPUT, str(first)), Redirection(Direction.OUTPUT, str(second))],
        )
        assert first.read_text() == ""
        assert second.read_text() == "x\n"

    def test_missing_input_exits_one(self, tmp_path: Path) -> None:
        """A missing input file fails the child with status 1."""
        result = _control().execute(
            ["cat"], [Redirection(Direction.INPUT, str(tmp_path / "nope"))]
        )
        assert result.exit_code == 1
        assert b"nope" in result.output
