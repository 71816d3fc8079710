"""Item availability ledger; the only writer of ``available_quantity`` after an item is created."""

import logging

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from errors import InsufficientQuantity, InvariantViolation, NotFound, ValidationError
from lifecycle import STORED_OPEN_STATUSES
from orm import ItemORM, TransactionORM
from time_utils import utcnow

logger = logging.getLogger("inventory.ledger")


def _expire_cached_item(db: Session, item_id: str) -> None:
    # the UPDATE bypasses the identity map; make a loaded ItemORM re-read its counters
    obj = db.identity_map.get(Session.identity_key(ItemORM, item_id))
    if obj is not None:
        db.expire(obj, ["total_quantity", "available_quantity", "updated_at"])


def _counters(db: Session, item_id: str):
    return db.execute(
        select(ItemORM.name, ItemORM.total_quantity, ItemORM.available_quantity).where(ItemORM.id == item_id)
    ).first()


def reserve(db: Session, item_id: str, quantity: int) -> None:
    """Atomically take ``quantity`` units out of the available pool."""
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    result = db.execute(
        update(ItemORM)
        .where(ItemORM.id == item_id, ItemORM.available_quantity >= quantity)
        .values(available_quantity=ItemORM.available_quantity - quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    _expire_cached_item(db, item_id)

    if result.rowcount != 1:
        row = _counters(db, item_id)
        if row is None:
            raise NotFound("Item not found")
        logger.warning(
            "reserve rejected item_id=%s requested=%s available=%s", item_id, quantity, row.available_quantity
        )
        raise InsufficientQuantity(item_id, quantity, row.available_quantity, item_name=row.name)

    logger.info("reserved item_id=%s quantity=%s", item_id, quantity)


def release(db: Session, item_id: str, quantity: int) -> None:
    """
    Give ``quantity`` units back to the available pool.

    A release that would push available above total means a quantity was
    released twice or never reserved; that is reported, never clamped.
    """
    result = db.execute(
        update(ItemORM)
        .where(
            ItemORM.id == item_id,
            ItemORM.available_quantity + quantity <= ItemORM.total_quantity,
        )
        .values(available_quantity=ItemORM.available_quantity + quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    _expire_cached_item(db, item_id)

    if result.rowcount != 1:
        row = _counters(db, item_id)
        if row is None:
            logger.critical("release on missing item item_id=%s quantity=%s", item_id, quantity)
            raise InvariantViolation("Cannot release quantity: item no longer exists", item_id=item_id)
        logger.critical(
            "release would exceed total item_id=%s quantity=%s available=%s total=%s",
            item_id,
            quantity,
            row.available_quantity,
            row.total_quantity,
        )
        raise InvariantViolation(
            f"Releasing {quantity} unit(s) would exceed the total quantity of {row.name}",
            item_id=item_id,
            available=row.available_quantity,
            total=row.total_quantity,
        )

    logger.info("released item_id=%s quantity=%s", item_id, quantity)


def adjust_total(db: Session, item_id: str, delta: int) -> None:
    """Change stock on hand; the reserved part (total - available) is untouched."""
    if delta == 0:
        return

    result = db.execute(
        update(ItemORM)
        .where(
            ItemORM.id == item_id,
            ItemORM.total_quantity + delta >= 0,
            ItemORM.available_quantity + delta >= 0,
        )
        .values(
            total_quantity=ItemORM.total_quantity + delta,
            available_quantity=ItemORM.available_quantity + delta,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    _expire_cached_item(db, item_id)

    if result.rowcount != 1:
        row = _counters(db, item_id)
        if row is None:
            raise NotFound("Item not found")
        reserved = row.total_quantity - row.available_quantity
        raise ValidationError(
            f"Adjustment would result in negative quantity ({reserved} unit(s) currently reserved)",
            total=row.total_quantity,
            available=row.available_quantity,
        )

    logger.info("adjusted item_id=%s delta=%s", item_id, delta)


def reserved_quantity(db: Session, item_id: str) -> int:
    stmt = (
        select(func.coalesce(func.sum(TransactionORM.quantity), 0))
        .where(TransactionORM.item_id == item_id, TransactionORM.status.in_(STORED_OPEN_STATUSES))
    )
    return int(db.execute(stmt).scalar_one())


def audit(db: Session) -> list[dict]:
    """Items whose counters disagree with their open transactions."""
    reserved = (
        select(TransactionORM.item_id, func.sum(TransactionORM.quantity).label("reserved"))
        .where(TransactionORM.status.in_(STORED_OPEN_STATUSES), TransactionORM.item_id.is_not(None))
        .group_by(TransactionORM.item_id)
        .subquery()
    )
    rows = db.execute(
        select(
            ItemORM.id,
            ItemORM.name,
            ItemORM.total_quantity,
            ItemORM.available_quantity,
            func.coalesce(reserved.c.reserved, 0),
        ).outerjoin(reserved, reserved.c.item_id == ItemORM.id)
    ).all()

    out = []
    for item_id, name, total, available, held in rows:
        expected = total - int(held)
        if available != expected or not 0 <= available <= total:
            logger.critical(
                "ledger mismatch item_id=%s total=%s available=%s reserved=%s", item_id, total, available, held
            )
            out.append(
                {
                    "item_id": item_id,
                    "name": name,
                    "total_quantity": total,
                    "available_quantity": available,
                    "reserved_quantity": int(held),
                    "expected_available": expected,
                }
            )
    return out
