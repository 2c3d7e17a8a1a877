"""Reservation lifecycle transition table.

Every status change goes through a named action; the table is exhaustive,
so anything not listed (including every move out of COMPLETED, CANCELLED
or NO_SHOW) is an ``InvalidTransition``.
"""

import enum
from datetime import datetime, timedelta

from matchpoint.errors import InvalidTransition
from matchpoint.models.enums import ReservationStatus as S


class Action(str, enum.Enum):
    MARK_PAID = "mark_paid"
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"
    CANCEL = "cancel"
    MARK_NO_SHOW = "mark_no_show"


TRANSITIONS: dict[Action, tuple[frozenset[S], S]] = {
    Action.MARK_PAID: (frozenset({S.PENDING}), S.PAID),
    # PENDING is accepted only for free bookings; the service enforces it
    Action.CHECK_IN: (frozenset({S.PAID, S.PENDING}), S.IN_PROGRESS),
    Action.CHECK_OUT: (frozenset({S.IN_PROGRESS}), S.COMPLETED),
    Action.CANCEL: (frozenset({S.PENDING, S.PAID}), S.CANCELLED),
    Action.MARK_NO_SHOW: (frozenset({S.PAID}), S.NO_SHOW),
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.CANCELLED, S.NO_SHOW})


def can_transition(current: S, action: Action) -> bool:
    sources, _ = TRANSITIONS[action]
    return current in sources


def next_status(current: S, action: Action) -> S:
    """Target status of ``action`` from ``current``, or raise ``InvalidTransition``."""
    sources, target = TRANSITIONS[action]
    if current not in sources:
        raise InvalidTransition(
            f"Cannot {action.value} a reservation in status {current.value}",
            status=current.value,
            action=action.value,
        )
    return target


def check_in_window(
    starts_at: datetime, ends_at: datetime, tolerance_minutes: int
) -> tuple[datetime, datetime]:
    """Check-in is allowed from ``tolerance_minutes`` before start until the end."""
    return starts_at - timedelta(minutes=tolerance_minutes), ends_at


def is_check_in_open(
    starts_at: datetime, ends_at: datetime, tolerance_minutes: int, now: datetime
) -> bool:
    opens, closes = check_in_window(starts_at, ends_at, tolerance_minutes)
    return opens <= now <= closes
