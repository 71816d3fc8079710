import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

import crud
from errors import NotFound
from models import Notification, Transaction
from orm import NotificationORM, UserORM
from time_utils import utcnow

logger = logging.getLogger("inventory.notifications")


class NotificationEvent(str, Enum):
    CHECKOUT_REQUESTED = "checkout_requested"
    CHECKOUT_ACTIVE = "checkout_active"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    OVERDUE = "overdue"
    EXTENSION_REQUESTED = "extension_requested"
    EXTENSION_APPROVED = "extension_approved"
    EXTENSION_REJECTED = "extension_rejected"


class NotificationSink(Protocol):
    def notify(self, event: NotificationEvent, transaction: Transaction) -> None: ...


def emit(sink: Optional[NotificationSink], event: NotificationEvent, transaction: Transaction) -> None:
    if sink is None:
        return
    try:
        sink.notify(event, transaction)
    except Exception:
        logger.exception("notification failed event=%s transaction_id=%s", event.value, transaction.id)


class DbNotificationSink:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def notify(self, event: NotificationEvent, transaction: Transaction) -> None:
        db = self.session_factory()
        try:
            for recipient_id, kind, title, message, priority in self._messages(db, event, transaction):
                db.add(
                    NotificationORM(
                        id=str(uuid4()),
                        recipient_id=recipient_id,
                        type=kind,
                        title=title,
                        message=message,
                        priority=priority,
                        transaction_id=transaction.id,
                        item_id=transaction.item_id,
                        is_read=False,
                        created_at=utcnow(),
                    )
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info("notified event=%s transaction_id=%s", event.value, transaction.id)

    def _messages(self, db: Session, event: NotificationEvent, t: Transaction):
        units = f"{t.quantity} unit(s) of {t.item_name}"
        owner = t.user_id

        if event is NotificationEvent.CHECKOUT_REQUESTED:
            requester = db.get(UserORM, owner)
            who = requester.name if requester else "A team member"
            for approver_id in crud.list_approver_ids(db):
                if approver_id != owner:
                    yield approver_id, "approval_request", "Checkout Approval Needed", f"{who} requested to checkout {units}", "high"
            yield owner, "checkout_confirmation", "Checkout Request Submitted", f"Your checkout request for {units} is pending approval", "medium"
        elif event is NotificationEvent.CHECKOUT_ACTIVE:
            yield owner, "checkout_confirmation", "Checkout Confirmed", f"You have successfully checked out {units}", "medium"
        elif event is NotificationEvent.APPROVED:
            yield owner, "approval_approved", "Checkout Approved", f"Your checkout request for {units} has been approved", "high"
        elif event is NotificationEvent.REJECTED:
            yield owner, "approval_rejected", "Checkout Rejected", f"Your checkout request has been rejected. Reason: {t.rejection_reason}", "high"
        elif event is NotificationEvent.CANCELLED:
            yield owner, "other", "Checkout Cancelled", f"Your checkout request for {units} was cancelled", "low"
        elif event is NotificationEvent.RETURNED:
            yield owner, "other", "Item Returned", f"You have successfully returned {units}", "low"
        elif event is NotificationEvent.OVERDUE:
            yield owner, "overdue_alert", "Item Overdue", f"{units} was due back {t.days_overdue} day(s) ago ({t.transaction_number})", "urgent"
        elif event is NotificationEvent.EXTENSION_REQUESTED:
            for approver_id in crud.list_approver_ids(db):
                if approver_id != owner:
                    yield approver_id, "extension_request", "Extension Request", f"Extension requested for transaction {t.transaction_number}", "medium"
        elif event is NotificationEvent.EXTENSION_APPROVED:
            yield owner, "extension_approved", "Extension Approved", f"New return date for {t.transaction_number}: {t.expected_return_date:%Y-%m-%d}", "medium"
        elif event is NotificationEvent.EXTENSION_REJECTED:
            yield owner, "extension_rejected", "Extension Rejected", f"Your extension request for {t.transaction_number} was rejected", "medium"


def _notification_to_schema(n: NotificationORM) -> Notification:
    return Notification(
        id=n.id,
        type=n.type,
        title=n.title,
        message=n.message,
        priority=n.priority,
        transaction_id=n.transaction_id,
        item_id=n.item_id,
        is_read=n.is_read,
        read_at=n.read_at,
        created_at=n.created_at,
    )


def list_notifications(db: Session, recipient_id: str, *, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    stmt = select(NotificationORM).where(NotificationORM.recipient_id == recipient_id)
    if unread_only:
        stmt = stmt.where(NotificationORM.is_read.is_(False))
    stmt = stmt.order_by(NotificationORM.created_at.desc()).limit(limit)
    return [_notification_to_schema(n) for n in db.execute(stmt).scalars().all()]


def mark_read(db: Session, notification_id: str, recipient_id: str, *, now: Optional[datetime] = None) -> Notification:
    n = db.get(NotificationORM, notification_id)
    if not n or n.recipient_id != recipient_id:
        raise NotFound("Notification not found")
    if not n.is_read:
        n.is_read = True
        n.read_at = now or utcnow()
        db.commit()
    return _notification_to_schema(n)


def mark_all_read(db: Session, recipient_id: str) -> int:
    result = db.execute(
        update(NotificationORM)
        .where(NotificationORM.recipient_id == recipient_id, NotificationORM.is_read.is_(False))
        .values(is_read=True, read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount
