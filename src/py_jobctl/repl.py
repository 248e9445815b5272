"""Interactive REPL (Read-Eval-Print Loop) for the job-control shell.

The REPL is the terminal interface.  It creates the engine and the
shell, and enters the classic loop:

    1. **Notify** — report background jobs that finished or stopped.
    2. **Read** — display a prompt and read user input.
    3. **Eval** — pass the line to ``shell.execute()``.
    4. **Print** — display the result.
    5. **Loop** — repeat until the shell returns the exit sentinel.

The shell is fully testable (returns strings, no I/O); the REPL is the
thin I/O wrapper that connects it to ``stdin``/``stdout``.  The helper
functions (``build_prompt``, ``format_banner``) are pure and testable.
"""

import os
import readline
import time

from py_jobctl.config import ConfigError, EngineConfig
from py_jobctl.engine import JobControl
from py_jobctl.shell import Shell

_BANNER_WIDTH = 38
_WATCH_POLL_INTERVAL = 0.1


def format_banner(control: JobControl) -> str:
    """Format the startup banner.

    Args:
        control: The engine the REPL drives.

    Returns:
        A string suitable for printing to the console.

    """
    border = "=" * _BANNER_WIDTH
    mode = (
        "terminal control" if control.coordinator.has_terminal_control() else "no terminal control"
    )
    return (
        f"\n  {border}\n            py-jobctl v0.1.0\n     POSIX job control shell\n  {border}\n\n"
        f"  pgid {control.coordinator.shell_pgid}, {mode}, max {control.config.max_jobs} jobs\n"
        "\nType 'help' for builtins, 'exit' to quit.\n"
    )


def build_prompt(cwd: str | None = None) -> str:
    """Build the prompt string showing the working directory's name.

    Args:
        cwd: Directory to show (defaults to the current one).

    Returns:
        A prompt like ``jobctl:src $ ``.

    """
    path = cwd if cwd is not None else os.getcwd()
    name = os.path.basename(path.rstrip(os.sep)) or os.sep
    return f"jobctl:{name} $ "


def follow_watch(shell: Shell, poll_interval: float = _WATCH_POLL_INTERVAL) -> None:
    """Print multiWatch output until Ctrl+C stops the session."""
    try:
        while shell.watching:
            if notices := shell.notifications():
                print(notices)  # noqa: T201
            time.sleep(poll_interval)
    except KeyboardInterrupt:
        print()  # noqa: T201
        print(shell.execute("unwatch"))  # noqa: T201


def run() -> None:
    """Run the interactive REPL.

    This is the ``py-jobctl`` console entry point.  It handles:
    - Configuration from the environment.
    - The job-control signal posture when attached to a terminal.
    - Background notifications before each prompt.
    - Following a multiWatch session until Ctrl+C.
    - Graceful handling of Ctrl+C and Ctrl+D.
    - Terminating every job on exit.
    """
    try:
        config = EngineConfig.from_environment()
    except ConfigError as e:
        print(f"py-jobctl: {e}")  # noqa: T201
        raise SystemExit(2) from e

    control = JobControl(config=config)
    if control.coordinator.has_terminal_control():
        control.coordinator.install_shell_signals()
    shell = Shell(control=control)

    readline.parse_and_bind("tab: complete")
    print(format_banner(control))  # noqa: T201

    try:
        while True:
            if notices := shell.notifications():
                print(notices)  # noqa: T201
            try:
                line = input(build_prompt())
            except EOFError:
                # Ctrl+D: graceful exit
                print()  # noqa: T201
                break
            except KeyboardInterrupt:
                # Ctrl+C at the prompt discards the line
                print()  # noqa: T201
                continue

            result = shell.execute(line)
            if result == Shell.EXIT_SENTINEL:
                break
            if result:
                print(result)  # noqa: T201
            if shell.watching:
                follow_watch(shell)

    finally:
        control.shutdown()
        print("Bye.")  # noqa: T201
