"""Transaction state machine. ``overdue`` is derived on read, never stored."""

import math
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from errors import InvalidStateTransition
from time_utils import utcnow


class TransactionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    OVERDUE = "overdue"
    RETURNED = "returned"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class TransactionEvent(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    RETURN = "return"
    EXTEND = "extend"


OPEN_STATUSES = frozenset({TransactionStatus.PENDING, TransactionStatus.ACTIVE, TransactionStatus.OVERDUE})
TERMINAL_STATUSES = frozenset({TransactionStatus.RETURNED, TransactionStatus.CANCELLED, TransactionStatus.REJECTED})

# statuses as stored; OVERDUE rows are stored as ACTIVE
STORED_OPEN_STATUSES = (TransactionStatus.PENDING.value, TransactionStatus.ACTIVE.value)

TRANSITIONS: dict[tuple[TransactionStatus, TransactionEvent], TransactionStatus] = {
    (TransactionStatus.PENDING, TransactionEvent.APPROVE): TransactionStatus.ACTIVE,
    (TransactionStatus.PENDING, TransactionEvent.REJECT): TransactionStatus.REJECTED,
    (TransactionStatus.PENDING, TransactionEvent.CANCEL): TransactionStatus.CANCELLED,
    (TransactionStatus.ACTIVE, TransactionEvent.RETURN): TransactionStatus.RETURNED,
    (TransactionStatus.OVERDUE, TransactionEvent.RETURN): TransactionStatus.RETURNED,
    # extending keeps the stored status; an overdue loan becomes active again
    (TransactionStatus.ACTIVE, TransactionEvent.EXTEND): TransactionStatus.ACTIVE,
    (TransactionStatus.OVERDUE, TransactionEvent.EXTEND): TransactionStatus.ACTIVE,
}

# transitions that give the reserved quantity back to the item
RELEASING_EVENTS = frozenset({TransactionEvent.REJECT, TransactionEvent.CANCEL, TransactionEvent.RETURN})


def initial_status(approval_required: bool) -> TransactionStatus:
    return TransactionStatus.PENDING if approval_required else TransactionStatus.ACTIVE


def transition(current: TransactionStatus | str, event: TransactionEvent | str) -> TransactionStatus:
    current = TransactionStatus(current)
    event = TransactionEvent(event)
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidStateTransition(current.value, event.value)
    return target


def is_overdue(tx: Any, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return tx.status == TransactionStatus.ACTIVE.value and tx.expected_return_date < now


def effective_status(tx: Any, now: Optional[datetime] = None) -> TransactionStatus:
    if is_overdue(tx, now):
        return TransactionStatus.OVERDUE
    return TransactionStatus(tx.status)


def days_late(expected: datetime, at: datetime) -> int:
    """Whole days between expected and at, rounded up; 0 when on time."""
    if at <= expected:
        return 0
    return math.ceil((at - expected).total_seconds() / 86400)


def days_overdue(tx: Any, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    if not is_overdue(tx, now):
        return 0
    return days_late(tx.expected_return_date, now)
