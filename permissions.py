from typing import Any, Optional

from errors import Forbidden

PERMISSIONS = (
    "can_checkout",
    "can_return",
    "can_approve",
    "can_manage_items",
    "can_manage_users",
    "can_bulk_import",
)

ROLE_DEFAULTS: dict[str, dict[str, bool]] = {
    "admin": {perm: True for perm in PERMISSIONS},
    "manager": {
        "can_checkout": True,
        "can_return": True,
        "can_approve": True,
        "can_manage_items": True,
        "can_manage_users": False,
        "can_bulk_import": True,
    },
    "user": {
        "can_checkout": True,
        "can_return": True,
        "can_approve": False,
        "can_manage_items": False,
        "can_manage_users": False,
        "can_bulk_import": False,
    },
}


def role_permissions(role: str, overrides: Optional[dict[str, Optional[bool]]] = None) -> dict[str, bool]:
    """Role defaults with explicit (non-None) overrides applied."""
    perms = dict(ROLE_DEFAULTS.get(role, ROLE_DEFAULTS["user"]))
    for key, value in (overrides or {}).items():
        if key in PERMISSIONS and value is not None:
            perms[key] = bool(value)
    return perms


def has_permission(user: Any, permission: str) -> bool:
    if permission not in PERMISSIONS:
        raise ValueError(f"unknown permission: {permission}")
    if user is None or getattr(user, "status", "active") != "active":
        return False
    return bool(getattr(user, permission, False))


def require_permission(user: Any, permission: str) -> None:
    if not has_permission(user, permission):
        raise Forbidden(f"You don't have permission to {permission.removeprefix('can_').replace('_', ' ')}")


def is_staff(user: Any) -> bool:
    """Managers and admins act on other people's transactions."""
    return getattr(user, "role", "user") in ("admin", "manager")
