"""Browser-facing JSON API for py-jobctl.

This package provides a Flask application that exposes the shell over
HTTP.  It is an **optional** extra — install with::

    pip install py-jobctl[web]

The ``create_app`` factory in ``app.py`` creates an engine with no
controlling terminal, wraps it in a shell, and serves three endpoints:

- ``POST /api/execute`` — execute a command line and return JSON.
- ``GET /api/jobs`` — the background job list.
- ``GET /api/status`` — engine status for dashboard polling.
"""
