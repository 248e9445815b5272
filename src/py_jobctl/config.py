"""Engine configuration.

The few numbers that shape the engine's behaviour live in one frozen
record so that a host can see, and a test can pin down, every limit:

- ``max_jobs`` — background job capacity.
- ``output_capacity`` — bytes of captured output kept per command;
  anything beyond is dropped and the result is marked truncated.
- ``read_chunk_size`` — bytes read from the capture pipe per iteration.
- ``poll_interval`` — seconds the wait loop sleeps between polls.
- ``max_command_length`` — command text kept for job listings.

``EngineConfig.from_environment`` reads the same settings from
``PY_JOBCTL_*`` variables, the way a child inherits its parent's
environment block.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import TypeVar

_ENV_PREFIX = "PY_JOBCTL_"
_MAX_POLL_INTERVAL = 0.1
_MS_PER_SECOND = 1000


class ConfigError(ValueError):
    """Raised when a configuration value is missing its mark."""


@dataclass(frozen=True)
class EngineConfig:
    """Limits and timings for the job-control engine."""

    max_jobs: int = 100
    output_capacity: int = 8192
    read_chunk_size: int = 4096
    poll_interval: float = 0.001
    max_command_length: int = 512

    def __post_init__(self) -> None:
        """Reject values the engine cannot work with."""
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name != "poll_interval" and value < 1:
                msg = f"{f.name} must be a positive integer (got {value})"
                raise ConfigError(msg)
        if not 0 < self.poll_interval <= _MAX_POLL_INTERVAL:
            msg = f"poll_interval must be in (0, {_MAX_POLL_INTERVAL}] seconds"
            raise ConfigError(msg)

    @classmethod
    def from_environment(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        """Build a config from ``PY_JOBCTL_*`` variables.

        Unset variables keep their defaults.  The poll interval is
        given in milliseconds (``PY_JOBCTL_POLL_INTERVAL_MS``).

        Args:
            environ: Variables to read (defaults to ``os.environ``).

        Raises:
            ConfigError: If a value does not parse or is out of range.

        """
        env = os.environ if environ is None else environ
        values: dict[str, int | float] = {}
        for name in ("max_jobs", "output_capacity", "read_chunk_size", "max_command_length"):
            raw = env.get(_ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = _parse(raw, int, name)
        raw = env.get(f"{_ENV_PREFIX}POLL_INTERVAL_MS")
        if raw is not None:
            values["poll_interval"] = _parse(raw, float, "poll_interval") / _MS_PER_SECOND
        return cls(**values)  # type: ignore[arg-type]


T = TypeVar("T", int, float)


def _parse(raw: str, kind: type[T], name: str) -> T:
    """Convert one environment string, wrapping the failure."""
    try:
        return kind(raw)
    except ValueError:
        msg = f"{name}: cannot parse {raw!r} as {kind.__name__}"
        raise ConfigError(msg) from None
