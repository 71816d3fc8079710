from __future__ import annotations

from datetime import datetime

from typing import Optional
from uuid import uuid4

from sqlalchemy import select, delete, exists, func, or_, update
from sqlalchemy.orm import Session

import ledger
from errors import Conflict, NotFound
from lifecycle import STORED_OPEN_STATUSES, TransactionStatus, days_overdue, effective_status
from models import Item, ItemIn, ItemUpdate, User, UserIn, UserUpdate, Transaction, Extension, Penalty
from orm import ItemORM, UserORM, TransactionORM
from permissions import PERMISSIONS, role_permissions
from time_utils import utcnow

ALLOWED_SORTS = {
    "name": ItemORM.name,
    "category": ItemORM.category,
    "status": ItemORM.status,
    "available_quantity": ItemORM.available_quantity,
    "created_at": ItemORM.created_at,
    "updated_at": ItemORM.updated_at,
}

NON_NULL_ITEM_FIELDS = ("name", "category", "is_checkoutable", "requires_approval", "status")

TRANSACTION_SORTS = {
    "created_at": TransactionORM.created_at,
    "checkout_date": TransactionORM.checkout_date,
    "expected_return_date": TransactionORM.expected_return_date,
    "transaction_number": TransactionORM.transaction_number,
}

def persist(db: Session, *, commit: bool) -> None:
    if commit:
        db.commit()
    else:
        db.flush()

def _item_to_schema(i: ItemORM) -> Item:
    return Item(
        id=i.id,
        name=i.name,
        category=i.category,
        description=i.description,
        sku=i.sku,
        qr_code=i.qr_code,
        location=i.location,
        total_quantity=i.total_quantity,
        available_quantity=i.available_quantity,
        checked_out_quantity=i.total_quantity - i.available_quantity,
        is_checkoutable=i.is_checkoutable,
        requires_approval=i.requires_approval,
        max_checkout_days=i.max_checkout_days,
        status=i.status,  # type: ignore
        notes=i.notes,
        created_at=i.created_at,
        updated_at=i.updated_at,
    )

def _user_to_schema(u: UserORM) -> User:
    return User(
        id=u.id,
        name=u.name,
        email=u.email,
        role=u.role,  # type: ignore
        team=u.team,
        status=u.status,  # type: ignore
        can_checkout=u.can_checkout,
        can_return=u.can_return,
        can_approve=u.can_approve,
        can_manage_items=u.can_manage_items,
        can_manage_users=u.can_manage_users,
        can_bulk_import=u.can_bulk_import,
        created_at=u.created_at,
    )

def transaction_to_schema(t: TransactionORM, now: Optional[datetime] = None) -> Transaction:
    now = now or utcnow()
    status = effective_status(t, now)
    return Transaction(
        id=t.id,
        transaction_number=t.transaction_number,
        item_id=t.item_id,
        item_name=t.item_name,
        user_id=t.user_id,
        quantity=t.quantity,
        type=t.type,  # type: ignore
        status=status.value,  # type: ignore
        is_overdue=status is TransactionStatus.OVERDUE,
        days_overdue=days_overdue(t, now),
        checkout_date=t.checkout_date,
        expected_return_date=t.expected_return_date,
        actual_return_date=t.actual_return_date,
        purpose=t.purpose,
        destination=t.destination,
        notes=t.notes,
        checkout_condition=t.checkout_condition,
        return_condition=t.return_condition,
        return_notes=t.return_notes,
        approval_required=t.approval_required,
        approved_by=t.approved_by,
        approved_at=t.approved_at,
        approval_notes=t.approval_notes,
        rejected_by=t.rejected_by,
        rejected_at=t.rejected_at,
        rejection_reason=t.rejection_reason,
        returned_by=t.returned_by,
        cancelled_at=t.cancelled_at,
        batch_id=t.batch_id,
        created_at=t.created_at,
        updated_at=t.updated_at,
        extensions=[
            Extension(
                id=e.id,
                transaction_id=e.transaction_id,
                requested_by=e.requested_by,
                requested_at=e.requested_at,
                new_return_date=e.new_return_date,
                reason=e.reason,
                status=e.status,  # type: ignore
                decided_by=e.decided_by,
                decided_at=e.decided_at,
                notes=e.notes,
            )
            for e in t.extensions
        ],
        penalties=[
            Penalty(
                id=p.id,
                type=p.type,
                amount=p.amount,
                currency=p.currency,
                reason=p.reason,
                is_paid=p.is_paid,
                issued_at=p.issued_at,
            )
            for p in t.penalties
        ],
    )


# ---------- Item ----------
def sku_exists(db: Session, sku: str, exclude_item_id: Optional[str] = None) -> bool:
    stmt = select(ItemORM).where(ItemORM.sku == sku)
    if exclude_item_id:
        stmt = stmt.where(ItemORM.id != exclude_item_id)
    return db.execute(stmt).first() is not None


def get_item(db: Session, item_id: str) -> Optional[Item]:
    row = db.get(ItemORM, item_id)
    return _item_to_schema(row) if row else None


def get_item_by_code(db: Session, code: str) -> Optional[Item]:
    """Lookup by QR code, falling back to SKU (barcodes carry the SKU)."""
    row = db.execute(
        select(ItemORM).where(or_(ItemORM.qr_code == code, ItemORM.sku == code.upper()))
    ).scalars().first()
    return _item_to_schema(row) if row else None


def create_item(db: Session, body: ItemIn, *, commit: bool = True) -> Item:
    sku = body.sku.upper() if body.sku else None
    if sku and sku_exists(db, sku):
        raise Conflict("sku already exists")

    now = utcnow()
    item_id = str(uuid4())
    i = ItemORM(
        id=item_id,
        name=body.name,
        category=body.category,
        description=body.description,
        sku=sku,
        qr_code=body.qr_code or f"ITEM_{item_id}",
        location=body.location,
        total_quantity=body.total_quantity,
        # the only write of available_quantity outside ledger.py
        available_quantity=body.total_quantity,
        is_checkoutable=body.is_checkoutable,
        requires_approval=body.requires_approval,
        max_checkout_days=body.max_checkout_days,
        status=body.status,
        notes=body.notes,
        created_at=now,
        updated_at=now,
    )
    db.add(i)
    persist(db, commit=commit)
    if commit:
        db.refresh(i)
    return _item_to_schema(i)


def update_item(db: Session, item_id: str, body: ItemUpdate, *, commit: bool = True) -> Optional[Item]:
    i = db.get(ItemORM, item_id)
    if not i:
        return None

    data = body.model_dump(exclude_unset=True)
    new_total = data.pop("total_quantity", None)
    for k in NON_NULL_ITEM_FIELDS:
        if k in data and data[k] is None:
            del data[k]
    if "sku" in data:
        data["sku"] = data["sku"].upper() if data["sku"] else None
        if data["sku"] and sku_exists(db, data["sku"], exclude_item_id=item_id):
            raise Conflict("sku already exists")

    for k, v in data.items():
        setattr(i, k, v)
    i.updated_at = utcnow()
    db.flush()

    if new_total is not None and new_total != i.total_quantity:
        ledger.adjust_total(db, item_id, new_total - i.total_quantity)

    persist(db, commit=commit)
    db.refresh(i)
    return _item_to_schema(i)


def open_transaction_count(db: Session, item_id: str) -> int:
    stmt = (
        select(func.count())
        .select_from(TransactionORM)
        .where(TransactionORM.item_id == item_id, TransactionORM.status.in_(STORED_OPEN_STATUSES))
    )
    return int(db.execute(stmt).scalar_one())


def delete_item(db: Session, item_id: str, *, commit: bool = True) -> bool:
    i = db.get(ItemORM, item_id)
    if not i:
        return False

    if open_transaction_count(db, item_id) > 0:
        raise Conflict("Cannot delete item with open transactions")

    # guard and delete in one statement: a checkout committed after the count still wins
    open_refs = exists().where(
        TransactionORM.item_id == item_id,
        TransactionORM.status.in_(STORED_OPEN_STATUSES),
    )
    result = db.execute(
        delete(ItemORM)
        .where(ItemORM.id == item_id, ~open_refs)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise Conflict("Cannot delete item with open transactions")

    # history survives through the item_name snapshot
    db.execute(
        update(TransactionORM)
        .where(TransactionORM.item_id == item_id)
        .values(item_id=None)
        .execution_options(synchronize_session=False)
    )
    persist(db, commit=commit)
    return True


def build_items_query(
    q: str | None,
    category: str | None,
    status: str | None,
    is_checkoutable: bool | None,
):
    stmt = select(ItemORM)

    if q:
        like = f"%{q}%"
        stmt = stmt.where(
            or_(
                ItemORM.name.ilike(like),
                ItemORM.description.ilike(like),
                ItemORM.sku.ilike(like),
                ItemORM.notes.ilike(like),
            )
        )
    if category:
        stmt = stmt.where(ItemORM.category == category)

    if status:
        stmt = stmt.where(ItemORM.status == status)

    if is_checkoutable is not None:
        stmt = stmt.where(ItemORM.is_checkoutable.is_(is_checkoutable))

    return stmt

def items_meta(
    db: Session,
    *,
    q: str | None,
    category: str | None,
    status: str | None,
    is_checkoutable: bool | None,
    limit: int,
    offset: int,
) -> dict:
    total = count_items_filtered(db, q=q, category=category, status=status, is_checkoutable=is_checkoutable)
    total_pages = max(1, (total + limit - 1) // limit)

    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "total_pages": total_pages,
    }

def count_items_filtered(
    db: Session, *, q: str | None, category: str | None, status: str | None, is_checkoutable: bool | None
) -> int:
    stmt = build_items_query(q, category, status, is_checkoutable)
    count_stmt = select(func.count()).select_from(stmt.subquery())
    return int(db.execute(count_stmt).scalar_one())

def list_items_filtered(
    db: Session,
    *,
    q: str | None,
    category: str | None,
    status: str | None,
    is_checkoutable: bool | None,
    sort: str,
    order: str,
    limit: int,
    offset: int,
) -> list[Item]:
    stmt = build_items_query(q, category, status, is_checkoutable)

    col = ALLOWED_SORTS.get(sort, ItemORM.name)
    desc = (order or "").lower() == "desc"
    stmt = stmt.order_by(col.desc() if desc else col.asc(), ItemORM.id.asc())

    stmt = stmt.limit(limit).offset(offset)
    rows = db.execute(stmt).scalars().all()
    return [_item_to_schema(i) for i in rows]

def list_categories(db: Session) -> list[str]:
    stmt = select(ItemORM.category).where(ItemORM.category.is_not(None)).distinct().order_by(ItemORM.category.asc())
    return [r[0] for r in db.execute(stmt).all() if r[0]]

def bulk_import_items(db: Session, rows: list[dict[str, str]]) -> dict:
    """
    rows: [{"name": "...", "category": "...", "total_quantity": "3", "sku": "...", ...}]

    Rows without name/category are reported, rows whose sku already exists are
    skipped, everything else is created in one commit.
    """
    created = 0
    skipped = 0
    errors: list[str] = []

    try:
        for idx, r in enumerate(rows, start=1):
            name = (r.get("name") or "").strip()
            category = (r.get("category") or "").strip()
            sku = (r.get("sku") or "").strip() or None
            raw_qty = (r.get("total_quantity") or "").strip() or "1"

            if not name or not category:
                errors.append(f"row {idx}: name/category is empty")
                continue
            try:
                qty = int(raw_qty)
            except ValueError:
                errors.append(f"row {idx}: quantity '{raw_qty}' is not a number")
                continue
            if qty < 0:
                errors.append(f"row {idx}: quantity cannot be negative")
                continue

            if sku and sku_exists(db, sku.upper()):
                skipped += 1
                continue

            body = ItemIn(
                name=name,
                category=category,
                sku=sku,
                total_quantity=qty,
                location=(r.get("location") or "").strip() or None,
                description=(r.get("description") or "").strip() or None,
                notes=(r.get("notes") or "").strip() or None,
                requires_approval=_truthy(r.get("requires_approval")),
            )
            create_item(db, body, commit=False)
            created += 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    return {"created": created, "skipped": skipped, "errors": errors}

def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


# ---------- User ----------
def email_exists(db: Session, email: str) -> bool:
    return db.execute(select(UserORM.id).where(UserORM.email == email.lower())).first() is not None


def get_user(db: Session, user_id: str) -> Optional[User]:
    row = db.get(UserORM, user_id)
    return _user_to_schema(row) if row else None


def create_user(db: Session, body: UserIn, *, commit: bool = True) -> User:
    email = body.email.lower()
    if email_exists(db, email):
        raise Conflict("email already exists")

    overrides = {perm: getattr(body, perm) for perm in PERMISSIONS}
    now = utcnow()
    u = UserORM(
        id=str(uuid4()),
        name=body.name,
        email=email,
        role=body.role,
        team=body.team,
        status="active",
        created_at=now,
        updated_at=now,
        **role_permissions(body.role, overrides),
    )
    db.add(u)
    persist(db, commit=commit)
    if commit:
        db.refresh(u)
    return _user_to_schema(u)


def update_user(db: Session, user_id: str, body: UserUpdate, *, commit: bool = True) -> Optional[User]:
    u = db.get(UserORM, user_id)
    if not u:
        return None

    data = body.model_dump(exclude_unset=True)
    overrides = {perm: data.pop(perm) for perm in PERMISSIONS if perm in data}

    role = data.pop("role", None)
    for k, v in data.items():
        if v is None and k in ("name", "status"):
            continue
        setattr(u, k, v)

    if role and role != u.role:
        # a role change resets permissions to the new role's defaults
        u.role = role
        perms = role_permissions(role, overrides)
    else:
        perms = {perm: getattr(u, perm) for perm in PERMISSIONS}
        perms.update({k: bool(v) for k, v in overrides.items() if v is not None})
    for perm, value in perms.items():
        setattr(u, perm, value)

    u.updated_at = utcnow()
    persist(db, commit=commit)
    if commit:
        db.refresh(u)
    return _user_to_schema(u)


def list_users(db: Session, *, role: str | None = None) -> list[User]:
    stmt = select(UserORM).order_by(UserORM.name.asc())
    if role:
        stmt = stmt.where(UserORM.role == role)
    return [_user_to_schema(u) for u in db.execute(stmt).scalars().all()]


def list_approver_ids(db: Session) -> list[str]:
    stmt = select(UserORM.id).where(UserORM.can_approve.is_(True), UserORM.status == "active")
    return [r[0] for r in db.execute(stmt).all()]


# ---------- Transaction (read side) ----------
def get_transaction_orm(db: Session, transaction_id: str) -> TransactionORM:
    t = db.get(TransactionORM, transaction_id)
    if not t:
        raise NotFound("Transaction not found")
    return t


def build_transactions_query(
    *,
    status: str | None,
    type: str | None,
    user_id: str | None,
    item_id: str | None,
    now: datetime,
):
    stmt = select(TransactionORM)

    # effective status: overdue/active split the stored "active" rows by due date
    if status == TransactionStatus.OVERDUE.value:
        stmt = stmt.where(
            TransactionORM.status == TransactionStatus.ACTIVE.value,
            TransactionORM.expected_return_date < now,
        )
    elif status == TransactionStatus.ACTIVE.value:
        stmt = stmt.where(
            TransactionORM.status == TransactionStatus.ACTIVE.value,
            TransactionORM.expected_return_date >= now,
        )
    elif status:
        stmt = stmt.where(TransactionORM.status == status)

    if type:
        stmt = stmt.where(TransactionORM.type == type)
    if user_id:
        stmt = stmt.where(TransactionORM.user_id == user_id)
    if item_id:
        stmt = stmt.where(TransactionORM.item_id == item_id)

    return stmt


def list_transactions_filtered(
    db: Session,
    *,
    status: str | None,
    type: str | None,
    user_id: str | None,
    item_id: str | None,
    sort: str,
    order: str,
    limit: int,
    offset: int,
    now: Optional[datetime] = None,
) -> list[Transaction]:
    now = now or utcnow()
    stmt = build_transactions_query(status=status, type=type, user_id=user_id, item_id=item_id, now=now)

    col = TRANSACTION_SORTS.get(sort, TransactionORM.created_at)
    desc = (order or "").lower() == "desc"
    stmt = stmt.order_by(col.desc() if desc else col.asc(), TransactionORM.transaction_number.asc())

    stmt = stmt.limit(limit).offset(offset)
    rows = db.execute(stmt).scalars().all()
    return [transaction_to_schema(t, now) for t in rows]
