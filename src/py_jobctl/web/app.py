"""Flask application factory for the py-jobctl web API.

The ``create_app`` function creates (or accepts) an engine, wraps it in
a shell, and returns a Flask app with three endpoints:

- ``POST /api/execute`` — execute a command line and return JSON.
- ``GET /api/jobs`` — list background jobs.
- ``GET /api/status`` — report whether the shell is still running.

The engine is single-threaded, so ``main`` serves without threads.
"""

from __future__ import annotations

from flask import Flask, Response, jsonify, request

from py_jobctl.engine import JobControl
from py_jobctl.shell import Shell
from py_jobctl.terminal import TerminalOwnership

_HTTP_BAD_REQUEST = 400


def create_app(control: JobControl | None = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        control: Engine to drive; a detached one is created if omitted.

    Returns:
        A configured Flask application ready to serve.

    """
    if control is None:
        control = JobControl(ownership=TerminalOwnership.detached())
    shell = Shell(control=control)
    state = {"halted": False}

    app = Flask(__name__)

    @app.route("/api/execute", methods=["POST"])
    def execute() -> tuple[Response, int] | Response:  # pyright: ignore[reportUnusedFunction]
        """Execute a command line and return JSON output.

        Expects JSON body: ``{"command": "..."}``

        Returns:
            JSON with ``output``, ``notifications`` and ``halted`` fields.

        """
        data = request.get_json(silent=True)
        if data is None or "command" not in data:
            return jsonify({"error": "Missing 'command' field"}), _HTTP_BAD_REQUEST

        if state["halted"]:
            return jsonify({"output": "Shell halted.", "notifications": "", "halted": True})

        command: str = data["command"]
        result = shell.execute(command)
        if result == Shell.EXIT_SENTINEL:
            state["halted"] = True
            return jsonify({"output": "Shell halted.", "notifications": "", "halted": True})

        notices = shell.notifications()
        return jsonify({"output": result, "notifications": notices, "halted": False})

    @app.route("/api/jobs")
    def jobs() -> Response:  # pyright: ignore[reportUnusedFunction]
        """Return the background jobs.

        Returns:
            JSON list of ``{"id", "command", "state"}`` objects.

        """
        shell.notifications()
        return jsonify(
            [
                {"id": job_id, "command": text, "state": str(job_state)}
                for job_id, text, job_state in control.list_jobs()
            ]
        )

    @app.route("/api/status")
    def status() -> Response:  # pyright: ignore[reportUnusedFunction]
        """Return engine status for polling.

        Returns:
            JSON with ``running``, ``jobs`` and ``capacity`` fields.

        """
        return jsonify(
            {
                "running": not state["halted"],
                "jobs": len(control.list_jobs()),
                "capacity": control.config.max_jobs,
            }
        )

    return app


def main() -> None:
    """Run the web API development server.

    This is the ``py-jobctl-web`` console entry point.
    """
    app = create_app()
    app.run(port=8080, threaded=False)
