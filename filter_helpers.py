from typing import Optional

VALID_ITEM_STATUSES = {"active", "inactive", "maintenance", "retired"}
VALID_ITEM_SORTS = {"name", "category", "status", "available_quantity", "created_at", "updated_at"}
VALID_TRANSACTION_STATUSES = {"pending", "active", "overdue", "returned", "cancelled", "rejected"}
VALID_TRANSACTION_TYPES = {"checkout", "return", "reserve", "adjustment"}
VALID_TRANSACTION_SORTS = {"created_at", "checkout_date", "expected_return_date", "transaction_number"}
VALID_GUEST_REQUEST_STATUSES = {"pending", "approved", "rejected"}
VALID_ORDERS = {"asc", "desc"}


def blank_to_none(value: Optional[str]) -> Optional[str]:
    if value == "":
        return None
    return value


def normalize_choice(value: Optional[str], valid: set[str]) -> Optional[str]:
    if value in valid:
        return value
    return None


def normalize_item_status(status: Optional[str]) -> Optional[str]:
    return normalize_choice(status, VALID_ITEM_STATUSES)


def normalize_transaction_status(status: Optional[str]) -> Optional[str]:
    return normalize_choice(status, VALID_TRANSACTION_STATUSES)


def normalize_transaction_type(type_: Optional[str]) -> Optional[str]:
    return normalize_choice(type_, VALID_TRANSACTION_TYPES)


def normalize_guest_request_status(status: Optional[str]) -> Optional[str]:
    return normalize_choice(status, VALID_GUEST_REQUEST_STATUSES)


def normalize_sort(sort: str, valid: set[str], default: str) -> str:
    if sort in valid:
        return sort
    return default


def normalize_order(order: str, default: str = "asc") -> str:
    if order in VALID_ORDERS:
        return order
    return default


def normalize_limit(limit: int, *, min_value: int = 1, max_value: int = 500) -> int:
    if limit < min_value:
        return min_value
    if limit > max_value:
        return max_value
    return limit


def normalize_offset(offset: int) -> int:
    if offset < 0:
        return 0
    return offset


def parse_bool(value: Optional[str]) -> Optional[bool]:
    """'true'/'false' query strings; anything else means "no filter"."""
    if value is None:
        return None
    v = value.strip().lower()
    if v in ("true", "1", "yes"):
        return True
    if v in ("false", "0", "no"):
        return False
    return None
