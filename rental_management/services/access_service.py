from __future__ import annotations

from enum import Enum

from services.errors import Forbidden


class Role(str, Enum):
    ADMIN = "admin"
    COMERCIAL = "comercial"
    OPERACIONAL = "operacional"


RIGHTS_BY_ROLE = {
    Role.ADMIN: {
        "manageCustomers": True,
        "manageCatalog": True,
        "manageRentals": True,
        "managePayments": True,
        "advanceStatus": True,
        "collectItems": True,
        "finalizeRentals": True,
        "viewFinancial": True,
    },
    Role.COMERCIAL: {
        "manageCustomers": True,
        "manageCatalog": False,
        "manageRentals": True,
        "managePayments": True,
        "advanceStatus": True,
        "collectItems": False,
        "finalizeRentals": True,
        "viewFinancial": True,
    },
    Role.OPERACIONAL: {
        "manageCustomers": False,
        "manageCatalog": False,
        "manageRentals": False,
        "managePayments": False,
        "advanceStatus": True,
        "collectItems": True,
        "finalizeRentals": True,
        "viewFinancial": False,
    },
}

TRANSITION_PERMISSIONS = {
    "cancelled": "manageRentals",
    "awaiting_payment": "managePayments",
    "confirmed": "managePayments",
    "finished": "finalizeRentals",
}


def parse_role(raw_role: str | Role | None) -> Role:
    if isinstance(raw_role, Role):
        return raw_role
    value = (raw_role or "").strip().lower()
    try:
        return Role(value)
    except ValueError:
        raise Forbidden("A valid role (admin, comercial, operacional) is required.") from None


def has_permission(role: str | Role | None, permission: str) -> bool:
    try:
        resolved = parse_role(role)
    except Forbidden:
        return False
    return bool(RIGHTS_BY_ROLE[resolved].get(permission))


def require_permission(role: str | Role | None, permission: str) -> Role:
    resolved = parse_role(role)
    if not RIGHTS_BY_ROLE[resolved].get(permission):
        raise Forbidden(f"Role '{resolved.value}' is not allowed to {permission}.")
    return resolved


def permission_for_transition(target_status: str) -> str:
    return TRANSITION_PERMISSIONS.get(target_status, "advanceStatus")
