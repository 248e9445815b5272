"""Tests for the job table.

The job table is pure bookkeeping: one foreground slot plus a bounded
list of numbered background jobs.  It never touches real processes, so
every test here drives it with fake pids and a scripted poll function.
"""

import pytest

from py_jobctl.jobs import (
    AlreadyOccupiedError,
    EventKind,
    JobEvent,
    JobNotFoundError,
    JobTable,
    NoForegroundJobError,
    ProcessRecord,
    ProcessState,
    TableFullError,
)
from py_jobctl.signals import ChildStatus, StatusKind

LEADER = 100
SECOND = 101


def _stopped_job(table: JobTable, pid: int = LEADER, command: str = "sleep 60") -> int:
    """Register a foreground job and suspend it into the background."""
    table.set_foreground(pid, pid, command)
    return table.move_foreground_to_background()


def _scripted_poll(script: dict[int, ChildStatus]):
    """Return a poll function that reports each scripted status once."""

    def _poll(pid: int) -> ChildStatus | None:
        return script.pop(pid, None)

    return _poll


class TestProcessRecord:
    """Verify the record data structure."""

    def test_leader_is_a_member(self) -> None:
        """A record created without members should contain its leader."""
        record = ProcessRecord(pid=LEADER, pgid=LEADER, command="true")
        assert record.pids == (LEADER,)
        assert record.pending == [LEADER]

    def test_derive_state_any_stopped(self) -> None:
        """One stopped member makes the whole job stopped."""
        record = ProcessRecord(
            pid=LEADER,
            pgid=LEADER,
            command="a | b",
            members={LEADER: ProcessState.RUNNING, SECOND: ProcessState.STOPPED},
        )
        assert record.derive_state() is ProcessState.STOPPED

    def test_derive_state_all_done(self) -> None:
        """The job is done only when every member is done."""
        record = ProcessRecord(
            pid=LEADER,
            pgid=LEADER,
            command="a | b",
            members={LEADER: ProcessState.DONE, SECOND: ProcessState.RUNNING},
        )
        assert record.derive_state() is ProcessState.RUNNING
        record.members[SECOND] = ProcessState.DONE
        assert record.derive_state() is ProcessState.DONE

    def test_str_includes_id_and_pgid(self) -> None:
        """String form shows job id, state, command and group."""
        record = ProcessRecord(pid=LEADER, pgid=LEADER, command="sleep 5", job_id=3)
        text = str(record)
        assert "[3]" in text
        assert "sleep 5" in text
        assert f"pgid={LEADER}" in text


class TestForegroundSlot:
    """Verify the single foreground slot."""

    def test_set_and_get(self) -> None:
        """A registered foreground job has job id 0."""
        table = JobTable()
        record = table.set_foreground(LEADER, LEADER, "cat")
        assert table.get_foreground() is record
        assert record.job_id == 0

    def test_second_foreground_rejected(self) -> None:
        """The slot holds at most one live job."""
        table = JobTable()
        table.set_foreground(LEADER, LEADER, "cat")
        with pytest.raises(AlreadyOccupiedError):
            table.set_foreground(SECOND, SECOND, "cat")

    def test_done_foreground_can_be_replaced(self) -> None:
        """A finished foreground record does not block the slot."""
        table = JobTable()
        record = table.set_foreground(LEADER, LEADER, "true")
        record.state = ProcessState.DONE
        table.set_foreground(SECOND, SECOND, "true")
        current = table.get_foreground()
        assert current is not None
        assert current.pid == SECOND

    def test_clear_when_empty_is_noop(self) -> None:
        """Clearing an empty slot does nothing."""
        table = JobTable()
        table.clear_foreground()
        assert table.get_foreground() is None

    def test_command_is_truncated(self) -> None:
        """Command text beyond the configured length is cut off."""
        max_length = 8
        table = JobTable(max_command_length=max_length)
        record = table.set_foreground(LEADER, LEADER, "x" * 100)
        assert len(record.command) == max_length

    def test_pipeline_members_recorded(self) -> None:
        """All stage pids are members of the foreground record."""
        table = JobTable()
        record = table.set_foreground(LEADER, LEADER, "a | b", members=[LEADER, SECOND])
        assert record.pids == (LEADER, SECOND)


class TestMoveToBackground:
    """Verify suspending the foreground job."""

    def test_ids_start_at_one_and_increase(self) -> None:
        """Job ids are 1, 2, 3 ... in order of suspension."""
        table = JobTable()
        ids = [_stopped_job(table, pid) for pid in (LEADER, SECOND, 102)]
        assert ids == [1, 2, 3]

    def test_ids_never_reused(self) -> None:
        """Removing a job does not free its number."""
        table = JobTable()
        _stopped_job(table, LEADER)
        table.remove(LEADER)
        expected_id = 2
        assert _stopped_job(table, SECOND) == expected_id

    def test_foreground_cleared_and_state_stopped(self) -> None:
        """After the move the slot is empty and the job is Stopped."""
        table = JobTable()
        job_id = _stopped_job(table, command="vim notes.txt")
        assert table.get_foreground() is None
        record = table.require(job_id)
        assert record.state is ProcessState.STOPPED
        assert record.command == "vim notes.txt"

    def test_no_foreground_raises(self) -> None:
        """Moving with an empty slot is an error."""
        table = JobTable()
        with pytest.raises(NoForegroundJobError):
            table.move_foreground_to_background()

    def test_full_table_leaves_state_untouched(self) -> None:
        """TableFullError neither assigns an id nor clears the slot."""
        table = JobTable(capacity=1)
        _stopped_job(table, LEADER)
        table.set_foreground(SECOND, SECOND, "cat")
        with pytest.raises(TableFullError):
            table.move_foreground_to_background()
        foreground = table.get_foreground()
        assert foreground is not None
        assert foreground.job_id == 0
        assert len(table.list_jobs()) == 1

    def test_running_state_when_abandoned(self) -> None:
        """The caller may park a job as Running."""
        table = JobTable()
        table.set_foreground(LEADER, LEADER, "sleep 9")
        job_id = table.move_foreground_to_background(ProcessState.RUNNING)
        assert table.require(job_id).state is ProcessState.RUNNING


class TestBackgroundList:
    """Verify lookups and updates on background jobs."""

    def test_add_background(self) -> None:
        """A job launched with & gets the next id and Running state."""
        table = JobTable()
        job_id = table.add_background(LEADER, LEADER, "sleep 5")
        assert job_id == 1
        assert table.list_jobs()[0].state is ProcessState.RUNNING

    def test_add_background_respects_capacity(self) -> None:
        """Adding beyond capacity raises."""
        table = JobTable(capacity=1)
        table.add_background(LEADER, LEADER, "sleep 5")
        assert table.is_full
        with pytest.raises(TableFullError):
            table.add_background(SECOND, SECOND, "sleep 5")

    def test_find_by_member_pid(self) -> None:
        """Any member pid finds its job."""
        table = JobTable()
        table.add_background(LEADER, LEADER, "a | b", members=[LEADER, SECOND])
        record = table.find_by_pid(SECOND)
        assert record is not None
        assert record.pid == LEADER

    def test_update_state(self) -> None:
        """Updating a job's state also updates its live members."""
        table = JobTable()
        job_id = _stopped_job(table)
        table.update_state(LEADER, ProcessState.RUNNING)
        record = table.require(job_id)
        assert record.state is ProcessState.RUNNING
        assert record.members[LEADER] is ProcessState.RUNNING

    def test_remove_keeps_order(self) -> None:
        """Removing a job preserves the order of the others."""
        table = JobTable()
        for pid in (LEADER, SECOND, 102):
            table.add_background(pid, pid, f"job {pid}")
        table.remove(SECOND)
        assert [r.pid for r in table.list_jobs()] == [LEADER, 102]

    def test_require_missing_raises(self) -> None:
        """Unknown job ids raise JobNotFoundError, a LookupError."""
        table = JobTable()
        with pytest.raises(JobNotFoundError):
            table.require(7)
        with pytest.raises(LookupError):
            table.require(7)

    def test_bring_to_foreground(self) -> None:
        """fg moves the job into the slot and drops its number."""
        table = JobTable()
        job_id = _stopped_job(table)
        record = table.bring_to_foreground(job_id)
        assert table.get_foreground() is record
        assert record.job_id == 0
        assert record.state is ProcessState.RUNNING
        assert table.list_jobs() == []

    def test_bring_to_foreground_when_occupied(self) -> None:
        """fg is refused while another foreground job runs."""
        table = JobTable()
        job_id = _stopped_job(table)
        table.set_foreground(SECOND, SECOND, "cat")
        with pytest.raises(AlreadyOccupiedError):
            table.bring_to_foreground(job_id)
        assert table.get(job_id) is not None


class TestReapChanges:
    """Verify folding member statuses into job events."""

    def test_exit_produces_one_done_event(self) -> None:
        """A finished job yields exactly one event and disappears."""
        table = JobTable()
        job_id = table.add_background(LEADER, LEADER, "sleep 1")
        events: list[JobEvent] = []
        poll = _scripted_poll({LEADER: ChildStatus(StatusKind.EXITED, 0)})
        table.reap_changes(poll, events.append)
        table.reap_changes(poll, events.append)
        assert len(events) == 1
        assert events[0].kind is EventKind.EXITED
        assert events[0].job_id == job_id
        assert events[0].exit_code == 0
        assert table.list_jobs() == []

    def test_signal_death_is_terminated(self) -> None:
        """A job killed by a signal yields a Terminated event."""
        table = JobTable()
        table.add_background(LEADER, LEADER, "sleep 60")
        events: list[JobEvent] = []
        sigterm = 15
        table.reap_changes(
            _scripted_poll({LEADER: ChildStatus(StatusKind.SIGNALED, sigterm)}),
            events.append,
        )
        assert events[0].kind is EventKind.TERMINATED
        assert events[0].signal == sigterm

    def test_pipeline_done_only_after_last_member(self) -> None:
        """A pipeline is reported once, when its last member finishes."""
        table = JobTable()
        table.add_background(LEADER, LEADER, "a | b", members=[LEADER, SECOND])
        events: list[JobEvent] = []
        table.reap_changes(
            _scripted_poll({LEADER: ChildStatus(StatusKind.EXITED, 0)}), events.append
        )
        assert events == []
        table.reap_changes(
            _scripted_poll({SECOND: ChildStatus(StatusKind.EXITED, 3)}), events.append
        )
        expected_code = 3
        assert len(events) == 1
        assert events[0].exit_code == expected_code

    def test_stop_and_resume_events(self) -> None:
        """External SIGSTOP / SIGCONT produce Stopped and Running events."""
        table = JobTable()
        table.add_background(LEADER, LEADER, "sleep 60")
        events: list[JobEvent] = []
        sigstop = 19
        table.reap_changes(
            _scripted_poll({LEADER: ChildStatus(StatusKind.STOPPED, sigstop)}), events.append
        )
        table.reap_changes(
            _scripted_poll({LEADER: ChildStatus(StatusKind.CONTINUED)}), events.append
        )
        assert [e.kind for e in events] == [EventKind.STOPPED, EventKind.RESUMED]

    def test_lost_child_is_done(self) -> None:
        """A pid reaped elsewhere ends the job instead of raising."""
        table = JobTable()
        table.add_background(LEADER, LEADER, "sleep 60")
        events: list[JobEvent] = []
        table.reap_changes(_scripted_poll({LEADER: ChildStatus(StatusKind.LOST)}), events.append)
        assert events[0].kind is EventKind.EXITED
        assert events[0].exit_code is None


class TestJobEvent:
    """Verify the notification line format."""

    def test_str_format(self) -> None:
        """Label is padded to 24 columns after ``[id]+``."""
        event = JobEvent(kind=EventKind.EXITED, job_id=2, pid=LEADER, command="sleep 1")
        assert str(event) == "[2]+ Done" + " " * 20 + "sleep 1"
