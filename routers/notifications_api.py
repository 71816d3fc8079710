from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import notifications
from dependencies import get_current_user, get_db
from filter_helpers import normalize_limit
from models import Notification
from orm import UserORM

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[Notification])
def list_notifications_api(
    unread_only: bool = False,
    limit: int = 50,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    return notifications.list_notifications(db, user.id, unread_only=unread_only, limit=normalize_limit(limit))


@router.post("/read-all")
def mark_all_read_api(
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    return {"updated": notifications.mark_all_read(db, user.id)}


@router.post("/{notification_id}/read", response_model=Notification)
def mark_read_api(
    notification_id: str,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    return notifications.mark_read(db, notification_id, user.id)
