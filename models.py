from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, Literal
from datetime import datetime
from decimal import Decimal

ItemStatus = Literal["active", "inactive", "maintenance", "retired"]
Role = Literal["admin", "manager", "user"]
UserStatus = Literal["active", "inactive"]
TransactionType = Literal["checkout", "return", "reserve", "adjustment"]
TransactionStatus = Literal["pending", "active", "overdue", "returned", "cancelled", "rejected"]
Condition = Literal["new", "good", "fair", "poor", "damaged"]


class RequestModel(BaseModel):
    # clients send camelCase (expectedReturnDate), snake_case works too
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="forbid",
    )


# ---------- Item ----------
class ItemIn(RequestModel):
    name: str = Field(min_length=1, max_length=200)
    category: str = Field(min_length=1)
    description: Optional[str] = None
    sku: Optional[str] = None
    qr_code: Optional[str] = None
    location: Optional[str] = None
    total_quantity: int = Field(default=0, ge=0)
    is_checkoutable: bool = True
    requires_approval: bool = False
    max_checkout_days: Optional[int] = Field(default=None, ge=1)
    status: ItemStatus = "active"
    notes: Optional[str] = None

class ItemUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    sku: Optional[str] = None
    location: Optional[str] = None
    total_quantity: Optional[int] = Field(default=None, ge=0)
    is_checkoutable: Optional[bool] = None
    requires_approval: Optional[bool] = None
    max_checkout_days: Optional[int] = Field(default=None, ge=1)
    status: Optional[ItemStatus] = None
    notes: Optional[str] = None

class QuantityAdjustment(RequestModel):
    adjustment: int
    reason: str = Field(min_length=1)

class Item(BaseModel):
    id: str
    name: str
    category: str
    description: Optional[str] = None
    sku: Optional[str] = None
    qr_code: str
    location: Optional[str] = None
    total_quantity: int
    available_quantity: int
    checked_out_quantity: int
    is_checkoutable: bool
    requires_approval: bool
    max_checkout_days: Optional[int] = None
    status: ItemStatus
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

class ItemsMeta(BaseModel):
    total: int
    limit: int
    offset: int
    total_pages: int

class LedgerDiscrepancy(BaseModel):
    item_id: str
    name: str
    total_quantity: int
    available_quantity: int
    reserved_quantity: int
    expected_available: int


# ---------- User ----------
class UserIn(RequestModel):
    name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3)
    role: Role = "user"
    team: Optional[str] = None
    # None means "use the role default"
    can_checkout: Optional[bool] = None
    can_return: Optional[bool] = None
    can_approve: Optional[bool] = None
    can_manage_items: Optional[bool] = None
    can_manage_users: Optional[bool] = None
    can_bulk_import: Optional[bool] = None

class UserUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    role: Optional[Role] = None
    team: Optional[str] = None
    status: Optional[UserStatus] = None
    can_checkout: Optional[bool] = None
    can_return: Optional[bool] = None
    can_approve: Optional[bool] = None
    can_manage_items: Optional[bool] = None
    can_manage_users: Optional[bool] = None
    can_bulk_import: Optional[bool] = None

class User(BaseModel):
    id: str
    name: str
    email: str
    role: Role
    team: Optional[str] = None
    status: UserStatus
    can_checkout: bool
    can_return: bool
    can_approve: bool
    can_manage_items: bool
    can_manage_users: bool
    can_bulk_import: bool
    created_at: datetime


# ---------- Transaction requests ----------
class CheckoutIn(RequestModel):
    item: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    purpose: str = Field(min_length=1)
    expected_return_date: datetime
    destination: Optional[str] = None
    notes: Optional[str] = None
    checkout_condition: Optional[Condition] = None

class BulkCheckoutLine(RequestModel):
    item: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)

class BulkCheckoutIn(RequestModel):
    items: list[BulkCheckoutLine] = Field(min_length=1)
    purpose: str = Field(min_length=1)
    expected_return_date: datetime
    destination: Optional[str] = None
    notes: Optional[str] = None

class ApproveIn(RequestModel):
    notes: Optional[str] = None

class RejectIn(RequestModel):
    reason: str = Field(min_length=1)

class ReturnIn(RequestModel):
    return_condition: Optional[Condition] = None
    return_notes: Optional[str] = None

class ExtendIn(RequestModel):
    new_return_date: datetime
    reason: str = Field(min_length=1)

class DecisionIn(RequestModel):
    notes: Optional[str] = None

class BulkApproveIn(RequestModel):
    ids: list[str] = Field(min_length=1)


# ---------- Transaction responses ----------
class Extension(BaseModel):
    id: str
    transaction_id: str
    requested_by: str
    requested_at: datetime
    new_return_date: datetime
    reason: str
    status: Literal["pending", "approved", "rejected"]
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    notes: Optional[str] = None

class Penalty(BaseModel):
    id: str
    type: str
    amount: Decimal
    currency: str
    reason: str
    is_paid: bool
    issued_at: datetime

class Transaction(BaseModel):
    id: str
    transaction_number: str
    item_id: Optional[str] = None
    item_name: str
    user_id: str
    quantity: int
    type: TransactionType
    # effective status: "overdue" is derived from "active" + expected_return_date
    status: TransactionStatus
    is_overdue: bool = False
    days_overdue: int = 0
    checkout_date: datetime
    expected_return_date: datetime
    actual_return_date: Optional[datetime] = None
    purpose: str
    destination: Optional[str] = None
    notes: Optional[str] = None
    checkout_condition: Optional[str] = None
    return_condition: Optional[str] = None
    return_notes: Optional[str] = None
    approval_required: bool
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approval_notes: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    returned_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    batch_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    extensions: list[Extension] = []
    penalties: list[Penalty] = []

class BulkApproveError(BaseModel):
    id: str
    error: str
    detail: str

class BulkApproveResult(BaseModel):
    approved: list[Transaction]
    errors: list[BulkApproveError]

class SweepResult(BaseModel):
    notified: int


# ---------- Notification ----------
class Notification(BaseModel):
    id: str
    type: str
    title: str
    message: str
    priority: str
    transaction_id: Optional[str] = None
    item_id: Optional[str] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime


# ---------- Guest request ----------
GuestRequestStatus = Literal["pending", "approved", "rejected"]

class GuestRequestIn(RequestModel):
    team: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=100)
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    purpose: str = Field(min_length=1)
    item_id: Optional[str] = None
    item_name: Optional[str] = None
    notes: Optional[str] = None

class GuestRequest(BaseModel):
    id: str
    team: str
    item_id: Optional[str] = None
    item_name: Optional[str] = None
    requester_name: str
    requester_email: str
    purpose: str
    notes: Optional[str] = None
    status: GuestRequestStatus
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
