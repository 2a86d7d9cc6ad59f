"""
Pipeline Run State Machine.

Pure transition table for the run lifecycle. No I/O, no side effects: the
orchestrator asks ``transition`` for the next status and applies it together
with the stage bookkeeping in one transaction.

    initialized --start--> running --pause--> paused --start--> running
    running --advance/hold--> running        running --complete--> completed
    running --fail--> failed --retry--> retrying --advance--> running
    failed --skip--> running                 * --cancel--> cancelled
"""

import enum

from enliterator.core.exceptions import InvalidTransitionError
from enliterator.core.models import RunStatus


class RunEvent(str, enum.Enum):
    """Events that drive a pipeline run between statuses."""
    START = "start"
    PAUSE = "pause"
    ADVANCE = "advance"      # Stage done, more stages remain
    COMPLETE = "complete"    # Final stage done
    HOLD = "hold"            # Stage done, advance predicate false
    FAIL = "fail"
    RETRY = "retry"
    SKIP = "skip"
    CANCEL = "cancel"


S = RunStatus
E = RunEvent

TRANSITIONS: dict[tuple[RunStatus, RunEvent], RunStatus] = {
    (S.INITIALIZED, E.START): S.RUNNING,
    (S.PAUSED, E.START): S.RUNNING,

    (S.RUNNING, E.PAUSE): S.PAUSED,

    # Stage completion. A paused run still records the outcome of the
    # worker that was in flight when it was paused.
    (S.RUNNING, E.ADVANCE): S.RUNNING,
    (S.RETRYING, E.ADVANCE): S.RUNNING,
    (S.PAUSED, E.ADVANCE): S.PAUSED,
    (S.RUNNING, E.COMPLETE): S.COMPLETED,
    (S.RETRYING, E.COMPLETE): S.COMPLETED,
    (S.PAUSED, E.COMPLETE): S.COMPLETED,
    (S.RUNNING, E.HOLD): S.RUNNING,
    (S.RETRYING, E.HOLD): S.RUNNING,
    (S.PAUSED, E.HOLD): S.PAUSED,

    # Failure is idempotent: failing a failed run stays failed
    (S.RUNNING, E.FAIL): S.FAILED,
    (S.RETRYING, E.FAIL): S.FAILED,
    (S.PAUSED, E.FAIL): S.FAILED,
    (S.FAILED, E.FAIL): S.FAILED,

    # Operator recovery. From running only valid for a held stage,
    # which the orchestrator checks.
    (S.FAILED, E.RETRY): S.RETRYING,
    (S.RUNNING, E.RETRY): S.RETRYING,
    (S.FAILED, E.SKIP): S.RUNNING,
    (S.RUNNING, E.SKIP): S.RUNNING,

    (S.INITIALIZED, E.CANCEL): S.CANCELLED,
    (S.RUNNING, E.CANCEL): S.CANCELLED,
    (S.PAUSED, E.CANCEL): S.CANCELLED,
    (S.RETRYING, E.CANCEL): S.CANCELLED,
}

del S, E


def transition(current: RunStatus, event: RunEvent) -> RunStatus:
    """
    Return the status reached by applying ``event`` to ``current``.

    Raises:
        InvalidTransitionError: If the event is not allowed from ``current``
    """
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"Cannot {event.value} a pipeline run in {current.value} status",
            current_status=current.value,
            event=event.value,
        ) from None


def can_transition(current: RunStatus, event: RunEvent) -> bool:
    return (current, event) in TRANSITIONS


def allowed_events(current: RunStatus) -> list[RunEvent]:
    """Events accepted from ``current``, in declaration order."""
    return [event for event in RunEvent if (current, event) in TRANSITIONS]


def is_terminal(status: RunStatus) -> bool:
    return not allowed_events(status)
