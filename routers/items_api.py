from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy.orm import Session

import crud
import ledger
import reservations
from concurrency import run_with_retry
from csv_utils import csv_bytes_to_rows, items_to_csv_response
from dependencies import get_current_user, get_db
from errors import NotFound, ValidationError
from filter_helpers import (
    VALID_ITEM_SORTS,
    blank_to_none,
    normalize_item_status,
    normalize_limit,
    normalize_offset,
    normalize_order,
    normalize_sort,
    parse_bool,
)
from models import Item, ItemIn, ItemUpdate, ItemsMeta, LedgerDiscrepancy, QuantityAdjustment
from orm import UserORM
from permissions import require_permission

router = APIRouter(tags=["items"])

EXPORT_LIMIT = 20000


@router.get("/items", response_model=list[Item])
def list_items_api(
    q: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    is_checkoutable: Optional[str] = None,
    sort: str = "name",
    order: str = "asc",
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    return crud.list_items_filtered(
        db,
        q=blank_to_none(q),
        category=blank_to_none(category),
        status=normalize_item_status(status),
        is_checkoutable=parse_bool(is_checkoutable),
        sort=normalize_sort(sort, VALID_ITEM_SORTS, "name"),
        order=normalize_order(order),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )


@router.get("/items/meta", response_model=ItemsMeta)
def items_meta_api(
    q: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    is_checkoutable: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    meta = crud.items_meta(
        db,
        q=blank_to_none(q),
        category=blank_to_none(category),
        status=normalize_item_status(status),
        is_checkoutable=parse_bool(is_checkoutable),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )
    return ItemsMeta(**meta)


@router.get("/items/categories", response_model=list[str])
def list_categories_api(
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    return crud.list_categories(db)


@router.get("/items/audit", response_model=list[LedgerDiscrepancy])
def audit_items_api(
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    require_permission(user, "can_manage_items")
    return ledger.audit(db)


@router.get("/items/export")
def export_items_api(
    q: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    sort: str = "name",
    order: str = "asc",
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    items = crud.list_items_filtered(
        db,
        q=blank_to_none(q),
        category=blank_to_none(category),
        status=normalize_item_status(status),
        is_checkoutable=None,
        sort=normalize_sort(sort, VALID_ITEM_SORTS, "name"),
        order=normalize_order(order),
        limit=EXPORT_LIMIT,
        offset=0,
    )
    return items_to_csv_response(items, filename="items_export.csv")


@router.post("/items/import")
async def import_items_api(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    require_permission(user, "can_bulk_import")
    data = await file.read()
    rows, err = csv_bytes_to_rows(data)
    if err:
        raise ValidationError(err)
    return crud.bulk_import_items(db, rows)


@router.get("/items/qr/{code}", response_model=Item)
def get_item_by_code_api(
    code: str,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    item = crud.get_item_by_code(db, code)
    if not item:
        raise NotFound("Item not found")
    return item


@router.post("/items", response_model=Item, status_code=201)
def create_item_api(
    body: ItemIn,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    require_permission(user, "can_manage_items")
    return crud.create_item(db, body)


@router.get("/items/{item_id}", response_model=Item)
def get_item_api(
    item_id: str,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    item = crud.get_item(db, item_id)
    if not item:
        raise NotFound("Item not found")
    return item


@router.patch("/items/{item_id}", response_model=Item)
def update_item_api(
    item_id: str,
    body: ItemUpdate,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    require_permission(user, "can_manage_items")
    updated = crud.update_item(db, item_id, body)
    if not updated:
        raise NotFound("Item not found")
    return updated


@router.delete("/items/{item_id}", status_code=204)
def delete_item_api(
    item_id: str,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    require_permission(user, "can_manage_items")
    ok = crud.delete_item(db, item_id)
    if not ok:
        raise NotFound("Item not found")
    return None


@router.post("/items/{item_id}/adjust-quantity", response_model=Item)
def adjust_item_quantity_api(
    item_id: str,
    body: QuantityAdjustment,
    db: Session = Depends(get_db),
    user: UserORM = Depends(get_current_user),
):
    return run_with_retry(db, lambda: reservations.adjust_item_quantity(db, user, item_id, body))
