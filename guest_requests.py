import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from errors import InvalidStateTransition, NotFound, ValidationError
from models import GuestRequest, GuestRequestIn
from orm import GuestRequestORM, ItemORM, UserORM
from permissions import require_permission
from time_utils import utcnow

logger = logging.getLogger("inventory.guest_requests")


def _to_schema(g: GuestRequestORM) -> GuestRequest:
    return GuestRequest(
        id=g.id,
        team=g.team,
        item_id=g.item_id,
        item_name=g.item_name,
        requester_name=g.requester_name,
        requester_email=g.requester_email,
        purpose=g.purpose,
        notes=g.notes,
        status=g.status,
        reviewed_by=g.reviewed_by,
        reviewed_at=g.reviewed_at,
        rejection_reason=g.rejection_reason,
        created_at=g.created_at,
    )


def create_guest_request(db: Session, body: GuestRequestIn, *, now: Optional[datetime] = None) -> GuestRequest:
    now = now or utcnow()
    item_name = body.item_name
    if body.item_id:
        item = db.get(ItemORM, body.item_id)
        if not item:
            raise NotFound("Item not found")
        item_name = item.name

    g = GuestRequestORM(
        id=str(uuid4()),
        team=body.team,
        item_id=body.item_id,
        item_name=item_name,
        requester_name=body.name,
        requester_email=body.email.lower(),
        purpose=body.purpose,
        notes=body.notes,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    db.add(g)
    db.commit()
    logger.info("guest request submitted id=%s team=%s", g.id, g.team)
    return _to_schema(g)


def _visible_query(reviewer: UserORM):
    stmt = select(GuestRequestORM)
    # reviewers with a team only see that team's requests
    if reviewer.team:
        stmt = stmt.where(GuestRequestORM.team == reviewer.team)
    return stmt


def list_guest_requests(db: Session, reviewer: UserORM, *, status: Optional[str] = None) -> list[GuestRequest]:
    require_permission(reviewer, "can_approve")
    stmt = _visible_query(reviewer)
    if status:
        stmt = stmt.where(GuestRequestORM.status == status)
    stmt = stmt.order_by(GuestRequestORM.created_at.desc())
    return [_to_schema(g) for g in db.execute(stmt).scalars().all()]


def _get_visible(db: Session, reviewer: UserORM, request_id: str) -> GuestRequestORM:
    g = db.execute(_visible_query(reviewer).where(GuestRequestORM.id == request_id)).scalar_one_or_none()
    if not g:
        raise NotFound("Request not found")
    return g


def _decide(db: Session, g: GuestRequestORM, event: str, values: dict) -> None:
    result = db.execute(
        update(GuestRequestORM)
        .where(GuestRequestORM.id == g.id, GuestRequestORM.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = db.execute(select(GuestRequestORM.status).where(GuestRequestORM.id == g.id)).scalar_one()
        raise InvalidStateTransition(current, event, subject="guest request")
    db.commit()
    db.refresh(g)


def approve_guest_request(
    db: Session, reviewer: UserORM, request_id: str, *, now: Optional[datetime] = None
) -> GuestRequest:
    require_permission(reviewer, "can_approve")
    now = now or utcnow()
    g = _get_visible(db, reviewer, request_id)
    _decide(db, g, "approve", {"status": "approved", "reviewed_by": reviewer.id, "reviewed_at": now, "updated_at": now})
    logger.info("guest request approved id=%s by=%s", g.id, reviewer.id)
    return _to_schema(g)


def reject_guest_request(
    db: Session, reviewer: UserORM, request_id: str, reason: str, *, now: Optional[datetime] = None
) -> GuestRequest:
    require_permission(reviewer, "can_approve")
    if not (reason or "").strip():
        raise ValidationError("Rejection reason is required")
    now = now or utcnow()
    g = _get_visible(db, reviewer, request_id)
    _decide(
        db,
        g,
        "reject",
        {
            "status": "rejected",
            "rejection_reason": reason.strip(),
            "reviewed_by": reviewer.id,
            "reviewed_at": now,
            "updated_at": now,
        },
    )
    logger.info("guest request rejected id=%s by=%s", g.id, reviewer.id)
    return _to_schema(g)
