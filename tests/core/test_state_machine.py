"""
Run state machine tests.

The transition table is pure, so these run without a database.
"""

import pytest

from enliterator.core.exceptions import InvalidTransitionError
from enliterator.core.models import RunStatus
from enliterator.core.pipeline.state_machine import (
    RunEvent,
    allowed_events,
    can_transition,
    is_terminal,
    transition,
)


class TestTransitions:
    """Allowed transitions between run statuses."""

    @pytest.mark.parametrize(
        "current,event,expected",
        [
            (RunStatus.INITIALIZED, RunEvent.START, RunStatus.RUNNING),
            (RunStatus.PAUSED, RunEvent.START, RunStatus.RUNNING),
            (RunStatus.RUNNING, RunEvent.PAUSE, RunStatus.PAUSED),
            (RunStatus.RUNNING, RunEvent.ADVANCE, RunStatus.RUNNING),
            (RunStatus.RETRYING, RunEvent.ADVANCE, RunStatus.RUNNING),
            (RunStatus.RUNNING, RunEvent.COMPLETE, RunStatus.COMPLETED),
            (RunStatus.RUNNING, RunEvent.HOLD, RunStatus.RUNNING),
            (RunStatus.RUNNING, RunEvent.FAIL, RunStatus.FAILED),
            (RunStatus.FAILED, RunEvent.RETRY, RunStatus.RETRYING),
            (RunStatus.FAILED, RunEvent.SKIP, RunStatus.RUNNING),
            (RunStatus.RUNNING, RunEvent.CANCEL, RunStatus.CANCELLED),
        ],
    )
    def test_allowed(self, current: RunStatus, event: RunEvent, expected: RunStatus):
        assert transition(current, event) == expected

    def test_fail_is_idempotent(self):
        """Failing a failed run stays failed instead of raising."""
        assert transition(RunStatus.FAILED, RunEvent.FAIL) == RunStatus.FAILED

    def test_paused_run_records_stage_outcome(self):
        """A worker in flight when the run was paused still lands."""
        assert transition(RunStatus.PAUSED, RunEvent.ADVANCE) == RunStatus.PAUSED
        assert transition(RunStatus.PAUSED, RunEvent.HOLD) == RunStatus.PAUSED
        assert transition(RunStatus.PAUSED, RunEvent.FAIL) == RunStatus.FAILED


class TestInvalidTransitions:
    """Refused transitions raise InvalidTransitionError."""

    @pytest.mark.parametrize(
        "current,event",
        [
            (RunStatus.INITIALIZED, RunEvent.PAUSE),
            (RunStatus.INITIALIZED, RunEvent.RETRY),
            (RunStatus.RUNNING, RunEvent.START),
            (RunStatus.PAUSED, RunEvent.PAUSE),
            (RunStatus.FAILED, RunEvent.CANCEL),
            (RunStatus.FAILED, RunEvent.START),
            (RunStatus.RETRYING, RunEvent.RETRY),
        ],
    )
    def test_refused(self, current: RunStatus, event: RunEvent):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(current, event)

        assert exc_info.value.current_status == current.value
        assert exc_info.value.event == event.value

    @pytest.mark.parametrize("terminal", [RunStatus.COMPLETED, RunStatus.CANCELLED])
    def test_terminal_statuses_accept_nothing(self, terminal: RunStatus):
        """Completed and cancelled runs are immutable."""
        assert is_terminal(terminal)
        for event in RunEvent:
            assert not can_transition(terminal, event)
            with pytest.raises(InvalidTransitionError):
                transition(terminal, event)

    def test_failed_is_not_terminal(self):
        assert not is_terminal(RunStatus.FAILED)
        assert allowed_events(RunStatus.FAILED) == [RunEvent.FAIL, RunEvent.RETRY, RunEvent.SKIP]
