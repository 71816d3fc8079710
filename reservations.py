"""Reservation/approval engine: checkout, approval, return and extensions."""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

import config
import crud
import ledger
from crud import persist, transaction_to_schema
from errors import CheckoutError, Forbidden, InvalidStateTransition, NotFound, ValidationError
from lifecycle import (
    TransactionEvent,
    TransactionStatus,
    days_late,
    effective_status,
    initial_status,
    transition,
)
from models import (
    BulkCheckoutIn,
    CheckoutIn,
    ExtendIn,
    Item,
    QuantityAdjustment,
    ReturnIn,
    Transaction,
)
from notifications import NotificationEvent, NotificationSink, emit
from orm import ExtensionORM, ItemORM, PenaltyORM, TransactionORM, UserORM
from permissions import has_permission, is_staff, require_permission
from time_utils import to_utc_naive, utcnow

logger = logging.getLogger("inventory.lifecycle")


def next_transaction_number(db: Session, on: datetime) -> str:
    """TXN-YYYYMMDD-NNNN, NNNN counting up within the day."""
    prefix = f"TXN-{on:%Y%m%d}-"
    rows = db.execute(
        select(TransactionORM.transaction_number).where(TransactionORM.transaction_number.like(f"{prefix}%"))
    ).all()

    max_suffix = 0
    for row in rows:
        try:
            suffix = int((row[0] or "")[len(prefix):])
        except ValueError:
            continue
        if suffix > max_suffix:
            max_suffix = suffix
    return f"{prefix}{max_suffix + 1:04d}"


def _validate_checkout(item: ItemORM, expected: datetime, now: datetime) -> None:
    if not item.is_checkoutable or item.status != "active":
        raise ValidationError(f"{item.name} is not available for checkout", item_id=item.id)
    if expected <= now:
        raise ValidationError("Expected return date must be in the future")
    if item.max_checkout_days and expected > now + timedelta(days=item.max_checkout_days):
        raise ValidationError(
            f"{item.name} can be checked out for at most {item.max_checkout_days} day(s)",
            item_id=item.id,
        )


def _get_item_for_checkout(db: Session, item_id: str) -> ItemORM:
    item = db.get(ItemORM, item_id)
    if not item:
        raise NotFound(f"Item {item_id} not found")
    return item


def _open_transaction(
    db: Session,
    user: UserORM,
    item: ItemORM,
    quantity: int,
    *,
    purpose: str,
    expected: datetime,
    destination: Optional[str],
    notes: Optional[str],
    checkout_condition: Optional[str],
    now: datetime,
    batch_id: Optional[str] = None,
) -> TransactionORM:
    approval_required = item.requires_approval or config.ALWAYS_REQUIRE_APPROVAL

    ledger.reserve(db, item.id, quantity)

    t = TransactionORM(
        id=str(uuid4()),
        transaction_number=next_transaction_number(db, now),
        item_id=item.id,
        item_name=item.name,
        user_id=user.id,
        quantity=quantity,
        type="checkout",
        status=initial_status(approval_required).value,
        checkout_date=now,
        expected_return_date=expected,
        purpose=purpose,
        destination=destination,
        notes=notes,
        checkout_condition=checkout_condition,
        approval_required=approval_required,
        batch_id=batch_id,
        created_at=now,
        updated_at=now,
    )
    db.add(t)
    # visible to next_transaction_number within the same unit of work
    db.flush()
    logger.info(
        "transaction opened number=%s item_id=%s quantity=%s status=%s",
        t.transaction_number,
        item.id,
        quantity,
        t.status,
    )
    return t


def _opened_event(t: TransactionORM) -> NotificationEvent:
    if t.status == TransactionStatus.PENDING.value:
        return NotificationEvent.CHECKOUT_REQUESTED
    return NotificationEvent.CHECKOUT_ACTIVE


def _claim(db: Session, t: TransactionORM, expected_status: str, new_status: TransactionStatus, now: datetime) -> None:
    """Move the stored status only if nobody else moved it first."""
    result = db.execute(
        update(TransactionORM)
        .where(TransactionORM.id == t.id, TransactionORM.status == expected_status)
        .values(status=new_status.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.expire(t, ["status", "updated_at"])
    if result.rowcount != 1:
        current = db.execute(select(TransactionORM.status).where(TransactionORM.id == t.id)).scalar_one()
        raise InvalidStateTransition(current, _event_for(new_status))


def _event_for(status: TransactionStatus) -> str:
    return {
        TransactionStatus.ACTIVE: TransactionEvent.APPROVE.value,
        TransactionStatus.REJECTED: TransactionEvent.REJECT.value,
        TransactionStatus.CANCELLED: TransactionEvent.CANCEL.value,
        TransactionStatus.RETURNED: TransactionEvent.RETURN.value,
    }.get(status, status.value)


def get_transaction_for(db: Session, user: UserORM, transaction_id: str) -> TransactionORM:
    t = crud.get_transaction_orm(db, transaction_id)
    if not is_staff(user) and t.user_id != user.id:
        raise Forbidden("You do not have permission to view this transaction")
    return t


# ---------- checkout ----------
def checkout(
    db: Session,
    user: UserORM,
    body: CheckoutIn,
    *,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Transaction:
    require_permission(user, "can_checkout")
    now = now or utcnow()
    expected = to_utc_naive(body.expected_return_date)

    item = _get_item_for_checkout(db, body.item)
    _validate_checkout(item, expected, now)

    t = _open_transaction(
        db,
        user,
        item,
        body.quantity,
        purpose=body.purpose,
        expected=expected,
        destination=body.destination,
        notes=body.notes,
        checkout_condition=body.checkout_condition,
        now=now,
    )
    persist(db, commit=commit)

    result = transaction_to_schema(t, now)
    if commit:
        emit(notifier, _opened_event(t), result)
    return result


def bulk_checkout(
    db: Session,
    user: UserORM,
    body: BulkCheckoutIn,
    *,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
) -> list[Transaction]:
    """
    One transaction per line, all-or-nothing: if any line fails validation or
    lacks stock, every reservation made for the request is rolled back and
    the error lists each failing line.
    """
    require_permission(user, "can_checkout")
    now = now or utcnow()
    expected = to_utc_naive(body.expected_return_date)

    errors: list[str] = []
    lines: list[tuple[ItemORM, int]] = []
    seen: set[str] = set()
    for line in body.items:
        if line.item in seen:
            errors.append(f"Duplicate selection detected for item {line.item}. Adjust the quantity instead.")
            continue
        seen.add(line.item)
        try:
            item = _get_item_for_checkout(db, line.item)
            _validate_checkout(item, expected, now)
        except CheckoutError as exc:
            errors.append(exc.message)
            continue
        lines.append((item, line.quantity))

    if errors:
        raise ValidationError("Some items could not be processed", errors=errors)

    batch_id = str(uuid4())
    created: list[TransactionORM] = []
    failures: list[CheckoutError] = []
    for item, quantity in lines:
        try:
            created.append(
                _open_transaction(
                    db,
                    user,
                    item,
                    quantity,
                    purpose=body.purpose,
                    expected=expected,
                    destination=body.destination,
                    notes=body.notes,
                    checkout_condition=None,
                    now=now,
                    batch_id=batch_id,
                )
            )
        except CheckoutError as exc:
            failures.append(exc)

    if failures:
        db.rollback()
        logger.warning("bulk checkout rolled back batch_id=%s failures=%s", batch_id, len(failures))
        first = failures[0]
        first.extra["errors"] = [f.message for f in failures]
        raise first

    db.commit()
    results = [transaction_to_schema(t, now) for t in created]
    for t, result in zip(created, results):
        emit(notifier, _opened_event(t), result)
    return results


# ---------- approval ----------
def approve(
    db: Session,
    approver: UserORM,
    transaction_id: str,
    notes: Optional[str] = None,
    *,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Transaction:
    require_permission(approver, "can_approve")
    now = now or utcnow()
    t = crud.get_transaction_orm(db, transaction_id)

    target = transition(effective_status(t, now), TransactionEvent.APPROVE)
    _claim(db, t, TransactionStatus.PENDING.value, target, now)
    # quantity was reserved when the request was made

    t.approved_by = approver.id
    t.approved_at = now
    t.approval_notes = notes
    persist(db, commit=commit)
    logger.info("transaction approved number=%s by=%s", t.transaction_number, approver.id)

    result = transaction_to_schema(t, now)
    if commit:
        emit(notifier, NotificationEvent.APPROVED, result)
    return result


def bulk_approve(
    db: Session,
    approver: UserORM,
    ids: list[str],
    *,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Each id is approved on its own; failures are reported, not fatal."""
    require_permission(approver, "can_approve")
    approved: list[Transaction] = []
    errors: list[dict] = []
    for transaction_id in dict.fromkeys(ids):
        try:
            approved.append(approve(db, approver, transaction_id, notifier=notifier, now=now))
        except CheckoutError as exc:
            db.rollback()
            errors.append({"id": transaction_id, "error": exc.code, "detail": exc.message})
    return {"approved": approved, "errors": errors}


def reject(
    db: Session,
    approver: UserORM,
    transaction_id: str,
    reason: str,
    *,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Transaction:
    require_permission(approver, "can_approve")
    if not (reason or "").strip():
        raise ValidationError("Rejection reason is required")
    now = now or utcnow()
    t = crud.get_transaction_orm(db, transaction_id)

    target = transition(effective_status(t, now), TransactionEvent.REJECT)
    _claim(db, t, TransactionStatus.PENDING.value, target, now)
    ledger.release(db, t.item_id, t.quantity)

    t.rejected_by = approver.id
    t.rejected_at = now
    t.rejection_reason = reason
    persist(db, commit=commit)
    logger.info("transaction rejected number=%s by=%s", t.transaction_number, approver.id)

    result = transaction_to_schema(t, now)
    if commit:
        emit(notifier, NotificationEvent.REJECTED, result)
    return result


def cancel(
    db: Session,
    user: UserORM,
    transaction_id: str,
    *,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Transaction:
    now = now or utcnow()
    t = crud.get_transaction_orm(db, transaction_id)
    if t.user_id != user.id:
        raise Forbidden("Only the requester can cancel this transaction")

    target = transition(effective_status(t, now), TransactionEvent.CANCEL)
    _claim(db, t, TransactionStatus.PENDING.value, target, now)
    ledger.release(db, t.item_id, t.quantity)

    t.cancelled_at = now
    persist(db, commit=commit)
    logger.info("transaction cancelled number=%s", t.transaction_number)

    result = transaction_to_schema(t, now)
    if commit:
        emit(notifier, NotificationEvent.CANCELLED, result)
    return result


# ---------- return ----------
def return_transaction(
    db: Session,
    user: UserORM,
    transaction_id: str,
    body: Optional[ReturnIn] = None,
    *,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Transaction:
    require_permission(user, "can_return")
    body = body or ReturnIn()
    now = now or utcnow()
    t = crud.get_transaction_orm(db, transaction_id)
    if not is_staff(user) and t.user_id != user.id:
        raise Forbidden("You do not have permission to return this transaction")

    target = transition(effective_status(t, now), TransactionEvent.RETURN)
    _claim(db, t, TransactionStatus.ACTIVE.value, target, now)
    ledger.release(db, t.item_id, t.quantity)

    t.actual_return_date = now
    t.return_condition = body.return_condition or "good"
    t.return_notes = body.return_notes
    t.returned_by = user.id

    late = days_late(t.expected_return_date, now)
    if late > 0:
        t.penalties.append(
            PenaltyORM(
                id=str(uuid4()),
                type="late_fee",
                amount=config.LATE_FEE_PER_DAY * late,
                currency=config.LATE_FEE_CURRENCY,
                reason=f"Item returned {late} day(s) late",
                is_paid=False,
                issued_by=user.id,
                issued_at=now,
            )
        )

    persist(db, commit=commit)
    logger.info("transaction returned number=%s days_late=%s", t.transaction_number, late)

    result = transaction_to_schema(t, now)
    if commit:
        emit(notifier, NotificationEvent.RETURNED, result)
    return result


# ---------- extensions ----------
def request_extension(
    db: Session,
    user: UserORM,
    transaction_id: str,
    body: ExtendIn,
    *,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    now = now or utcnow()
    t = crud.get_transaction_orm(db, transaction_id)
    if t.user_id != user.id and not has_permission(user, "can_approve"):
        raise Forbidden("You do not have permission to extend this transaction")

    transition(effective_status(t, now), TransactionEvent.EXTEND)

    new_date = to_utc_naive(body.new_return_date)
    if new_date <= now or new_date <= t.expected_return_date:
        raise ValidationError("New return date must be later than the current one")
    if any(e.status == "pending" for e in t.extensions):
        raise ValidationError("An extension request is already pending for this transaction")

    t.extensions.append(
        ExtensionORM(
            id=str(uuid4()),
            requested_by=user.id,
            requested_at=now,
            new_return_date=new_date,
            reason=body.reason,
            status="pending",
        )
    )
    t.updated_at = now
    db.commit()

    result = transaction_to_schema(t, now)
    emit(notifier, NotificationEvent.EXTENSION_REQUESTED, result)
    return result


def decide_extension(
    db: Session,
    approver: UserORM,
    transaction_id: str,
    extension_id: str,
    *,
    approved: bool,
    notes: Optional[str] = None,
    notifier: Optional[NotificationSink] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    require_permission(approver, "can_approve")
    now = now or utcnow()
    t = crud.get_transaction_orm(db, transaction_id)
    ext = next((e for e in t.extensions if e.id == extension_id), None)
    if ext is None:
        raise NotFound("Extension request not found")

    event = TransactionEvent.APPROVE.value if approved else TransactionEvent.REJECT.value
    if ext.status != "pending":
        raise InvalidStateTransition(ext.status, f"{event} extension")

    if approved:
        transition(effective_status(t, now), TransactionEvent.EXTEND)
        t.expected_return_date = ext.new_return_date
        t.overdue_notified_at = None

    ext.status = "approved" if approved else "rejected"
    ext.decided_by = approver.id
    ext.decided_at = now
    ext.notes = notes
    t.updated_at = now
    db.commit()
    logger.info("extension %s number=%s by=%s", ext.status, t.transaction_number, approver.id)

    result = transaction_to_schema(t, now)
    emit(
        notifier,
        NotificationEvent.EXTENSION_APPROVED if approved else NotificationEvent.EXTENSION_REJECTED,
        result,
    )
    return result


# ---------- stock adjustment ----------
def adjust_item_quantity(
    db: Session,
    user: UserORM,
    item_id: str,
    body: QuantityAdjustment,
    *,
    now: Optional[datetime] = None,
) -> Item:
    """Stock correction, recorded as a terminal ``adjustment`` transaction."""
    require_permission(user, "can_manage_items")
    if body.adjustment == 0:
        raise ValidationError("Adjustment must not be zero")
    now = now or utcnow()
    item = db.get(ItemORM, item_id)
    if not item:
        raise NotFound("Item not found")

    ledger.adjust_total(db, item_id, body.adjustment)

    direction = "increased" if body.adjustment > 0 else "decreased"
    db.add(
        TransactionORM(
            id=str(uuid4()),
            transaction_number=next_transaction_number(db, now),
            item_id=item_id,
            item_name=item.name,
            user_id=user.id,
            quantity=abs(body.adjustment),
            type="adjustment",
            status=TransactionStatus.RETURNED.value,
            checkout_date=now,
            expected_return_date=now,
            actual_return_date=now,
            purpose=body.reason,
            notes=f"Quantity {direction} by {abs(body.adjustment)} units",
            approval_required=False,
            created_at=now,
            updated_at=now,
        )
    )
    db.commit()
    db.refresh(item)
    logger.info("item quantity adjusted item_id=%s delta=%s by=%s", item_id, body.adjustment, user.id)
    return crud.get_item(db, item_id)
