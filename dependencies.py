from collections.abc import Generator
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from db import SessionLocal
from errors import NotAuthenticated
from notifications import NotificationSink
from orm import UserORM


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> UserORM:
    if not x_user_id:
        raise NotAuthenticated("Not authorized, no user")
    user = db.get(UserORM, x_user_id.strip())
    if not user:
        raise NotAuthenticated("User not found")
    if user.status != "active":
        raise NotAuthenticated("User account is not active")
    return user


def get_notifier(request: Request) -> Optional[NotificationSink]:
    return getattr(request.app.state, "notifier", None)
