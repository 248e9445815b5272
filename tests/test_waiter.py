"""Tests for the wait/drain loop.

The loop is driven here with a scripted poll function and a real pipe,
so the order hook → read → poll → sleep can be observed without
spawning anything.
"""

import os

import pytest

from py_jobctl.capture import CapturePipe, OutputBuffer
from py_jobctl.signals import ChildStatus, Signal, StatusKind
from py_jobctl.waiter import WaitOutcome, wait_for_job

PID = 500
OTHER = 501
INTERVAL = 0.001
CHUNK = 4096


def _poll_after(calls: int, status: ChildStatus):
    """Return a poll that reports *status* on its *calls*-th invocation."""
    seen = {"n": 0}

    def _poll(_pid: int) -> ChildStatus | None:
        seen["n"] += 1
        return status if seen["n"] >= calls else None

    return _poll


class TestWaitForJob:
    """Verify outcomes and draining."""

    def test_done_drains_pipe(self) -> None:
        """When every member finishes, remaining output is drained."""
        pipe = CapturePipe()
        buffer = OutputBuffer(64)
        os.write(pipe.write_fd, b"tail")
        pipe.close_write()
        result = wait_for_job(
            [PID],
            pipe,
            buffer,
            poll_interval=INTERVAL,
            chunk_size=CHUNK,
            poll=_poll_after(1, ChildStatus(StatusKind.EXITED, 0)),
        )
        pipe.close()
        assert result.outcome is WaitOutcome.DONE
        assert result.changes[PID].exit_code == 0
        assert buffer.getvalue() == b"tail"

    def test_stopped_returns_without_drain(self) -> None:
        """A stopped member ends the wait while the pipe stays open."""
        pipe = CapturePipe()
        buffer = OutputBuffer(64)
        result = wait_for_job(
            [PID],
            pipe,
            buffer,
            poll_interval=INTERVAL,
            chunk_size=CHUNK,
            poll=_poll_after(3, ChildStatus(StatusKind.STOPPED, Signal.SIGTSTP)),
        )
        assert result.outcome is WaitOutcome.STOPPED
        assert not pipe.eof
        pipe.close()

    def test_hook_called_every_iteration(self) -> None:
        """The host hook runs once per loop iteration."""
        pipe = CapturePipe()
        pipe.close_write()
        calls: list[int] = []
        wait_for_job(
            [PID],
            pipe,
            OutputBuffer(8),
            hook=lambda: calls.append(1),
            poll_interval=INTERVAL,
            chunk_size=CHUNK,
            poll=_poll_after(4, ChildStatus(StatusKind.EXITED, 0)),
        )
        pipe.close()
        expected_calls = 4
        assert len(calls) == expected_calls

    def test_all_members_must_finish(self) -> None:
        """A pipeline is done only when both members have finished."""
        pipe = CapturePipe()
        pipe.close_write()
        script = {
            PID: [ChildStatus(StatusKind.EXITED, 0)],
            OTHER: [None, None, ChildStatus(StatusKind.EXITED, 1)],
        }

        def _poll(pid: int) -> ChildStatus | None:
            queue = script[pid]
            return queue.pop(0) if queue else None

        result = wait_for_job(
            [PID, OTHER], pipe, OutputBuffer(8), poll_interval=INTERVAL, chunk_size=CHUNK, poll=_poll
        )
        pipe.close()
        assert result.outcome is WaitOutcome.DONE
        assert set(result.changes) == {PID, OTHER}

    def test_hook_exception_propagates(self) -> None:
        """An exception raised by the hook ends the wait."""
        pipe = CapturePipe()

        def _boom() -> None:
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            wait_for_job(
                [PID],
                pipe,
                OutputBuffer(8),
                hook=_boom,
                poll_interval=INTERVAL,
                chunk_size=CHUNK,
                poll=lambda _pid: None,
            )
        pipe.close()
