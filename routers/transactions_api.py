from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import crud
import overdue
import reservations
from concurrency import run_with_retry
from crud import transaction_to_schema
from dependencies import get_current_user, get_db, get_notifier
from filter_helpers import (
    VALID_TRANSACTION_SORTS,
    blank_to_none,
    normalize_limit,
    normalize_offset,
    normalize_order,
    normalize_sort,
    normalize_transaction_status,
    normalize_transaction_type,
)
from models import (
    ApproveIn,
    BulkApproveIn,
    BulkApproveResult,
    BulkCheckoutIn,
    CheckoutIn,
    DecisionIn,
    ExtendIn,
    RejectIn,
    ReturnIn,
    SweepResult,
    Transaction,
)
from notifications import NotificationSink
from orm import UserORM
from permissions import is_staff, require_permission

router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.get("", response_model=list[Transaction])
def list_transactions_api(
    status: Optional[str] = None,
    type: Optional[str] = None,
    user_id: Optional[str] = None,
    item_id: Optional[str] = None,
    sort: str = "created_at",
    order: str = "desc",
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    # plain users only ever see their own history
    if not is_staff(user):
        user_id = user.id

    return crud.list_transactions_filtered(
        db,
        status=normalize_transaction_status(status),
        type=normalize_transaction_type(type),
        user_id=blank_to_none(user_id),
        item_id=blank_to_none(item_id),
        sort=normalize_sort(sort, VALID_TRANSACTION_SORTS, "created_at"),
        order=normalize_order(order, default="desc"),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )


@router.get("/overdue", response_model=list[Transaction])
def list_overdue_api(
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    return overdue.list_overdue(db, user_id=None if is_staff(user) else user.id)


@router.post("/overdue/sweep", response_model=SweepResult)
def sweep_overdue_api(
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
    notifier: Optional[NotificationSink] = Depends(get_notifier),
):
    require_permission(user, "can_approve")
    return SweepResult(notified=overdue.sweep(db, notifier))


@router.post("/checkout", response_model=Transaction, status_code=201)
def checkout_api(
    body: CheckoutIn,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
    notifier: Optional[NotificationSink] = Depends(get_notifier),
):
    return run_with_retry(db, lambda: reservations.checkout(db, user, body, notifier=notifier))


@router.post("/checkout/bulk", response_model=list[Transaction], status_code=201)
def bulk_checkout_api(
    body: BulkCheckoutIn,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
    notifier: Optional[NotificationSink] = Depends(get_notifier),
):
    return run_with_retry(db, lambda: reservations.bulk_checkout(db, user, body, notifier=notifier))


@router.post("/approve/bulk", response_model=BulkApproveResult)
def bulk_approve_api(
    body: BulkApproveIn,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
    notifier: Optional[NotificationSink] = Depends(get_notifier),
):
    return reservations.bulk_approve(db, user, body.ids, notifier=notifier)


@router.get("/{transaction_id}", response_model=Transaction)
def get_transaction_api(
    transaction_id: str,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    return transaction_to_schema(reservations.get_transaction_for(db, user, transaction_id))


@router.post("/{transaction_id}/approve", response_model=Transaction)
def approve_api(
    transaction_id: str,
    body: Optional[ApproveIn] = None,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
    notifier: Optional[NotificationSink] = Depends(get_notifier),
):
    notes = body.notes if body else None
    return run_with_retry(db, lambda: reservations.approve(db, user, transaction_id, notes, notifier=notifier))


@router.post("/{transaction_id}/reject", response_model=Transaction)
def reject_api(
    transaction_id: str,
    body: RejectIn,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
    notifier: Optional[NotificationSink] = Depends(get_notifier),
):
    return run_with_retry(db, lambda: reservations.reject(db, user, transaction_id, body.reason, notifier=notifier))


@router.post("/{transaction_id}/cancel", response_model=Transaction)
def cancel_api(
    transaction_id: str,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
    notifier: Optional[NotificationSink] = Depends(get_notifier),
):
    return run_with_retry(db, lambda: reservations.cancel(db, user, transaction_id, notifier=notifier))


@router.post("/{transaction_id}/return", response_model=Transaction)
def return_api(
    transaction_id: str,
    body: Optional[ReturnIn] = None,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
    notifier: Optional[NotificationSink] = Depends(get_notifier),
):
    return run_with_retry(db, lambda: reservations.return_transaction(db, user, transaction_id, body, notifier=notifier))


@router.post("/{transaction_id}/extend", response_model=Transaction)
def extend_api(
    transaction_id: str,
    body: ExtendIn,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
    notifier: Optional[NotificationSink] = Depends(get_notifier),
):
    return run_with_retry(db, lambda: reservations.request_extension(db, user, transaction_id, body, notifier=notifier))


@router.post("/{transaction_id}/extensions/{extension_id}/approve", response_model=Transaction)
def approve_extension_api(
    transaction_id: str,
    extension_id: str,
    body: Optional[DecisionIn] = None,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
    notifier: Optional[NotificationSink] = Depends(get_notifier),
):
    notes = body.notes if body else None
    return run_with_retry(
        db,
        lambda: reservations.decide_extension(
            db, user, transaction_id, extension_id, approved=True, notes=notes, notifier=notifier
        ),
    )


@router.post("/{transaction_id}/extensions/{extension_id}/reject", response_model=Transaction)
def reject_extension_api(
    transaction_id: str,
    extension_id: str,
    body: Optional[DecisionIn] = None,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
    notifier: Optional[NotificationSink] = Depends(get_notifier),
):
    notes = body.notes if body else None
    return run_with_retry(
        db,
        lambda: reservations.decide_extension(
            db, user, transaction_id, extension_id, approved=False, notes=notes, notifier=notifier
        ),
    )
