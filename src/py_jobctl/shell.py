"""The shell — a minimal command interpreter on top of JobControl.

The shell turns a typed line into either a builtin call or a job:

    - **Builtins** run in the shell process itself (``cd`` must, since
      a child cannot change its parent's directory; ``fg``/``bg``/
      ``jobs``/``kill`` operate on the shell's own job table).
    - **Everything else** becomes a pipeline of ``Command`` stages,
      run in the foreground or, with a trailing ``&``, the background.

Design choices:
    - **Returns strings, not prints.**  This keeps the shell fully
      testable; the REPL and the web UI decide how to display output.
    - **Command dispatch via a dict.**  Adding a builtin means writing
      a method and adding one dict entry.
    - **Parsing is deliberately small** — words, quotes, ``|``, ``<``,
      ``>`` and a trailing ``&``.  No variables, globs or ``&&``.
      ``multiWatch`` takes the rest of its line unparsed, because its
      argument is a bracketed list of quoted commands.
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeAlias

from py_jobctl.executor import SpawnError
from py_jobctl.jobs import EventKind, JobEvent, JobTableError
from py_jobctl.redirection import Command, Direction, Redirection
from py_jobctl.signals import Signal
from py_jobctl.watch import WatchListError, WatchSession, parse_watch_list

if TYPE_CHECKING:
    from py_jobctl.engine import JobControl
    from py_jobctl.executor import ExecutionResult
    from py_jobctl.waiter import EventHook

# Type alias for a builtin handler: takes a list of args, returns output.
_Handler: TypeAlias = Callable[[list[str]], str]

_PUNCTUATION = "|<>&"
_PIPE = "|"
_BACKGROUND = "&"


class ParseError(ValueError):
    """Raised when a command line cannot be split into stages."""


@dataclass(frozen=True)
class ParsedLine:
    """A command line split into pipeline stages.

    Attributes:
        stages: One ``Command`` per ``|``-separated stage.
        background: True if the line ended with ``&``.

    """

    stages: tuple[Command, ...]
    background: bool = False


def parse_line(line: str) -> ParsedLine:
    """Split *line* into pipeline stages.

    Args:
        line: Raw input, e.g. ``sort < in.txt | head -n 3 > out.txt &``.

    Returns:
        The stages; empty for a blank line.

    Raises:
        ParseError: On unbalanced quotes, a dangling operator, an empty
            stage or an ``&`` that is not last.

    """
    lexer = shlex.shlex(line, posix=True, punctuation_chars=_PUNCTUATION)
    lexer.whitespace_split = True
    try:
        tokens = list(lexer)
    except ValueError as e:
        raise ParseError(str(e)) from e
    if not tokens:
        return ParsedLine(stages=())

    background = tokens[-1] == _BACKGROUND
    if background:
        tokens.pop()
    stages: list[Command] = []
    argv: list[str] = []
    redirections: list[Redirection] = []
    pending: Direction | None = None

    def _finish_stage() -> None:
        if not argv:
            msg = "syntax error: empty command"
            raise ParseError(msg)
        stages.append(Command(tuple(argv), tuple(redirections)))
        argv.clear()
        redirections.clear()

    for token in tokens:
        if pending is not None:
            if token in {_PIPE, _BACKGROUND, Direction.INPUT, Direction.OUTPUT}:
                msg = f"syntax error near '{token}'"
                raise ParseError(msg)
            redirections.append(Redirection(pending, token))
            pending = None
        elif token == _PIPE:
            _finish_stage()
        elif token in {Direction.INPUT, Direction.OUTPUT}:
            pending = Direction(token)
        elif set(token) <= set(_PUNCTUATION):
            msg = f"syntax error near '{token}'"
            raise ParseError(msg)
        else:
            argv.append(token)
    if pending is not None:
        msg = f"syntax error: missing file after '{pending}'"
        raise ParseError(msg)
    _finish_stage()
    return ParsedLine(stages=tuple(stages), background=background)


def _parse_job_id(arg: str) -> int:
    """Accept ``3`` or ``%3``."""
    return int(arg.removeprefix("%"))


class Shell:
    """Command interpreter that drives a JobControl engine."""

    EXIT_SENTINEL = "__EXIT__"

    def __init__(self, *, control: JobControl, event_hook: EventHook | None = None) -> None:
        """Create a shell.

        Args:
            control: The job-control engine that runs commands.
            event_hook: Passed to every foreground wait.

        """
        self._control = control
        self._event_hook = event_hook
        self._commands: dict[str, _Handler] = {
            "help": self._cmd_help,
            "jobs": self._cmd_jobs,
            "fg": self._cmd_fg,
            "bg": self._cmd_bg,
            "kill": self._cmd_kill,
            "cd": self._cmd_cd,
            "log": self._cmd_log,
            "unwatch": self._cmd_unwatch,
            "exit": self._cmd_exit,
        }
        # Builtins that take the rest of the line unparsed.
        self._raw_commands: dict[str, Callable[[str], str]] = {
            "multiWatch": self._cmd_multiwatch,
        }
        self._watch: WatchSession | None = None

    @property
    def control(self) -> JobControl:
        """Return the engine behind this shell."""
        return self._control

    @property
    def command_names(self) -> list[str]:
        """Return the sorted builtin names."""
        return sorted([*self._commands, *self._raw_commands])

    @property
    def watching(self) -> bool:
        """Return True while a multiWatch session is rerunning commands."""
        return self._watch is not None and self._watch.active

    def execute(self, command: str) -> str:
        """Parse and run one command line.

        Args:
            command: The raw line (e.g. ``ls | sort -r``).

        Returns:
            The output as a string, an error message, or
            ``EXIT_SENTINEL`` when the shell should stop.

        """
        stripped = command.strip()
        if not stripped:
            return ""
        name, _, rest = stripped.partition(" ")
        if name in self._raw_commands:
            return self._raw_commands[name](rest)
        try:
            parsed = parse_line(stripped)
        except ParseError as e:
            return f"Error: {e}"
        if not parsed.stages:
            return ""

        first = parsed.stages[0]
        if len(parsed.stages) == 1 and not parsed.background and first.argv[0] in self._commands:
            return self._commands[first.argv[0]](list(first.argv[1:]))

        text = stripped.removesuffix(_BACKGROUND).rstrip() if parsed.background else stripped
        try:
            if parsed.background:
                job_id = self._control.launch_background(parsed.stages, command_text=text)
                return f"[{job_id}] {self._leader_pid(job_id)}"
            result = self._control.execute_pipeline(
                parsed.stages, self._event_hook, command_text=text
            )
        except (SpawnError, JobTableError) as e:
            return f"Error: {e}"
        return self._format_result(result, text)

    def notifications(self) -> str:
        """Poll background jobs and format what changed (REPL prompt hook).

        While a multiWatch session exists its runs are started here, and
        their output is reported as watch blocks instead of job events.
        """
        if self._watch is None:
            events = self._control.poll_background_jobs()
            return "\n".join(self._format_event(e) for e in events)
        blocks, events = self._watch.poll()
        if self._watch.finished:
            self._watch = None
        return "\n".join([*blocks, *(self._format_event(e) for e in events)])

    # -- Builtins ----------------------------------------------------------

    def _cmd_help(self, _args: list[str]) -> str:
        """List available builtins."""
        return "Available commands: " + ", ".join(self.command_names)

    def _cmd_jobs(self, _args: list[str]) -> str:
        """List background jobs."""
        jobs = self._control.list_jobs()
        if not jobs:
            return "No background jobs."
        return "\n".join(f"[{job_id}]  {state:<24}{text}" for job_id, text, state in jobs)

    def _cmd_fg(self, args: list[str]) -> str:
        """Bring a background job to the foreground and wait for it."""
        job_id = self._select_job(args)
        if isinstance(job_id, str):
            return job_id
        record = self._control.table.get(job_id)
        text = record.command if record is not None else ""
        try:
            result = self._control.resume_job(
                job_id, foreground=True, event_hook=self._event_hook
            )
        except JobTableError as e:
            return f"Error: {e}"
        assert result is not None
        return self._format_result(result, text, header=text)

    def _cmd_bg(self, args: list[str]) -> str:
        """Continue a stopped job in the background."""
        job_id = self._select_job(args)
        if isinstance(job_id, str):
            return job_id
        try:
            self._control.resume_job(job_id, foreground=False)
        except JobTableError as e:
            return f"Error: {e}"
        record = self._control.table.get(job_id)
        text = record.command if record is not None else ""
        return f"[{job_id}]+ {text} &"

    def _cmd_kill(self, args: list[str]) -> str:
        """Send a signal to a background job: ``kill [-SIG] %n``."""
        sig: int = Signal.SIGTERM
        if args and args[0].startswith("-"):
            name = args.pop(0)[1:].upper()
            try:
                sig = int(name) if name.isdigit() else Signal["SIG" + name.removeprefix("SIG")]
            except KeyError:
                return f"Error: unknown signal '{name}'"
        if not args:
            return "Usage: kill [-SIGNAL] %<job_id>"
        try:
            job_id = _parse_job_id(args[0])
        except ValueError:
            return f"Error: invalid job id '{args[0]}'"
        try:
            delivered = self._control.terminate_job(job_id, sig)
        except JobTableError as e:
            return f"Error: {e}"
        return "" if delivered else f"Error: job {job_id} has already exited"

    def _cmd_cd(self, args: list[str]) -> str:
        """Change the shell's working directory."""
        target = args[0] if args else os.path.expanduser("~")
        try:
            os.chdir(target)
        except OSError as e:
            return f"cd: {target}: {e.strerror}"
        return ""

    def _cmd_log(self, _args: list[str]) -> str:
        """Show recent log entries."""
        entries = self._control.logger.entries
        return "\n".join(str(e) for e in entries) if entries else "No log entries."

    def _cmd_multiwatch(self, text: str) -> str:
        """Rerun quoted commands every second: ``multiWatch ["a", "b"]``."""
        if not text.strip():
            return 'Usage: multiWatch ["cmd1", "cmd2", ...]'
        if self.watching:
            return "Error: multiWatch is already running"
        try:
            commands = parse_watch_list(text)
        except WatchListError as e:
            return f"Error: {e}"
        self._watch = WatchSession(self._control, commands)
        blocks, _ = self._watch.poll()
        lines = [f"Watching {len(commands)} command(s); 'unwatch' or Ctrl-C stops.", *blocks]
        return "\n".join(lines)

    def _cmd_unwatch(self, _args: list[str]) -> str:
        """Stop the multiWatch session."""
        if self._watch is None or not self._watch.active:
            return "Error: multiWatch is not running"
        self._watch.stop()
        return "multiWatch stopped."

    def _cmd_exit(self, _args: list[str]) -> str:
        """Terminate every job and signal the REPL to stop."""
        if self._watch is not None:
            self._watch.stop()
            self._watch = None
        self._control.shutdown()
        return self.EXIT_SENTINEL

    # -- Helpers -----------------------------------------------------------

    def _select_job(self, args: list[str]) -> int | str:
        """Return the job id named by *args* (default: newest), or an error."""
        if args:
            try:
                return _parse_job_id(args[0])
            except ValueError:
                return f"Error: invalid job id '{args[0]}'"
        jobs = self._control.list_jobs()
        if not jobs:
            return "Error: no current job"
        return jobs[-1][0]

    def _leader_pid(self, job_id: int) -> int:
        record = self._control.table.get(job_id)
        return record.pid if record is not None else 0

    def _format_result(self, result: ExecutionResult, text: str, *, header: str = "") -> str:
        lines = [header] if header else []
        output = result.text.rstrip("\n")
        if output:
            lines.append(output)
        if result.truncated:
            lines.append("(output truncated)")
        lines.extend(f"Warning: {w}" for w in result.warnings)
        if result.stopped and result.job_id is not None:
            event = JobEvent(
                kind=EventKind.STOPPED, job_id=result.job_id, pid=result.pids[0], command=text
            )
            lines.append(str(event))
        return "\n".join(lines)

    def _format_event(self, event: JobEvent) -> str:
        output = event.output.decode(errors="replace").rstrip("\n")
        return f"{output}\n{event}" if output else str(event)
