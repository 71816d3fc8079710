from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import guest_requests
from concurrency import run_with_retry
from dependencies import get_current_user, get_db
from filter_helpers import normalize_guest_request_status
from models import GuestRequest, GuestRequestIn, RejectIn
from orm import UserORM

router = APIRouter(prefix="/guest-requests", tags=["guest-requests"])


# public: guests have no account
@router.post("", response_model=GuestRequest, status_code=201)
def submit_guest_request_api(
    body: GuestRequestIn,
    db: Session = Depends(get_db),
):
    return guest_requests.create_guest_request(db, body)


@router.get("", response_model=list[GuestRequest])
def list_guest_requests_api(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    return guest_requests.list_guest_requests(db, user, status=normalize_guest_request_status(status))


@router.post("/{request_id}/approve", response_model=GuestRequest)
def approve_guest_request_api(
    request_id: str,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    return run_with_retry(db, lambda: guest_requests.approve_guest_request(db, user, request_id))


@router.post("/{request_id}/reject", response_model=GuestRequest)
def reject_guest_request_api(
    request_id: str,
    body: RejectIn,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    return run_with_retry(db, lambda: guest_requests.reject_guest_request(db, user, request_id, body.reason))
