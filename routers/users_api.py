from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import crud
from dependencies import get_current_user, get_db
from errors import NotFound
from filter_helpers import blank_to_none
from models import User, UserIn, UserUpdate
from orm import UserORM
from permissions import require_permission

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=User)
def get_me_api(
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    return crud.get_user(db, user.id)


@router.get("", response_model=list[User])
def list_users_api(
    role: Optional[str] = None,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    require_permission(user, "can_manage_users")
    return crud.list_users(db, role=blank_to_none(role))


@router.post("", response_model=User, status_code=201)
def create_user_api(
    body: UserIn,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    require_permission(user, "can_manage_users")
    return crud.create_user(db, body)


@router.get("/{user_id}", response_model=User)
def get_user_api(
    user_id: str,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    if user_id != user.id:
        require_permission(user, "can_manage_users")
    found = crud.get_user(db, user_id)
    if not found:
        raise NotFound("User not found")
    return found


@router.patch("/{user_id}", response_model=User)
def update_user_api(
    user_id: str,
    body: UserUpdate,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    require_permission(user, "can_manage_users")
    updated = crud.update_user(db, user_id, body)
    if not updated:
        raise NotFound("User not found")
    return updated
