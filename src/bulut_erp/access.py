"""Role-based access policy.

A static capability table: each role maps to an ordered list of views it may
enter and a set of sensitive actions it may perform. There are no per-record
permissions. Front ends call :func:`resolve_view` when navigating and
:func:`require_capability` before exposing a mutating control.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Sequence

from . import log


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    FINANCE = "FINANCE"
    SALES = "SALES"
    PURCHASING = "PURCHASING"


class ViewId(str, Enum):
    DASHBOARD = "DASHBOARD"
    INVENTORY = "INVENTORY"
    SALES = "SALES"
    INVOICES = "INVOICES"
    CUSTOMERS = "CUSTOMERS"
    REPORTS = "REPORTS"
    VIEW_PRICES = "VIEW_PRICES"
    EXPENSES = "EXPENSES"


class Capability(str, Enum):
    VIEW_COST_PRICE = "VIEW_COST_PRICE"
    EDIT_PRODUCT = "EDIT_PRODUCT"
    DELETE_PRODUCT = "DELETE_PRODUCT"


class AccessDeniedError(PermissionError):
    """Raised when a role tries to enter a view or use a capability it lacks."""


# Order matters: the first entry is where a role lands after login or redirect.
ALLOWED_VIEWS: Mapping[UserRole, Sequence[ViewId]] = {
    UserRole.ADMIN: (
        ViewId.DASHBOARD,
        ViewId.INVENTORY,
        ViewId.SALES,
        ViewId.INVOICES,
        ViewId.CUSTOMERS,
        ViewId.REPORTS,
        ViewId.VIEW_PRICES,
        ViewId.EXPENSES,
    ),
    UserRole.FINANCE: (
        ViewId.DASHBOARD,
        ViewId.INVENTORY,
        ViewId.SALES,
        ViewId.INVOICES,
        ViewId.CUSTOMERS,
        ViewId.REPORTS,
        ViewId.VIEW_PRICES,
        ViewId.EXPENSES,
    ),
    UserRole.SALES: (
        ViewId.INVENTORY,
        ViewId.SALES,
        ViewId.INVOICES,
        ViewId.CUSTOMERS,
        ViewId.VIEW_PRICES,
    ),
    UserRole.PURCHASING: (
        ViewId.INVENTORY,
        ViewId.VIEW_PRICES,
        ViewId.REPORTS,
    ),
}

ROLE_CAPABILITIES: Mapping[UserRole, frozenset[Capability]] = {
    UserRole.ADMIN: frozenset(Capability),
    UserRole.FINANCE: frozenset({Capability.VIEW_COST_PRICE, Capability.EDIT_PRODUCT}),
    UserRole.PURCHASING: frozenset({Capability.VIEW_COST_PRICE, Capability.EDIT_PRODUCT}),
    UserRole.SALES: frozenset(),
}


def allowed_views(role: UserRole) -> frozenset[ViewId]:
    return frozenset(ALLOWED_VIEWS[UserRole(role)])


def default_view(role: UserRole) -> ViewId:
    """First permitted view of ``role``; used after login and on redirects."""

    return ALLOWED_VIEWS[UserRole(role)][0]


def can_view(role: UserRole, view: ViewId) -> bool:
    return ViewId(view) in allowed_views(role)


def resolve_view(role: UserRole, requested: ViewId) -> ViewId:
    """Return ``requested`` when permitted, else redirect to :func:`default_view`."""

    if can_view(role, requested):
        return ViewId(requested)
    target = default_view(role)
    log.info("Redirecting role %s from %s to %s", UserRole(role).value, ViewId(requested).value, target.value)
    return target


def require_view(role: UserRole, view: ViewId) -> None:
    if not can_view(role, view):
        log.warning("Role %s denied access to view %s", UserRole(role).value, ViewId(view).value)
        raise AccessDeniedError(f"Role {UserRole(role).value} may not open {ViewId(view).value}")


def has_capability(role: UserRole, capability: Capability) -> bool:
    return Capability(capability) in ROLE_CAPABILITIES[UserRole(role)]


def require_capability(role: UserRole, capability: Capability) -> None:
    if not has_capability(role, capability):
        log.warning("Role %s lacks capability %s", UserRole(role).value, Capability(capability).value)
        raise AccessDeniedError(f"Role {UserRole(role).value} lacks {Capability(capability).value}")


__all__ = [
    "UserRole",
    "ViewId",
    "Capability",
    "AccessDeniedError",
    "ALLOWED_VIEWS",
    "ROLE_CAPABILITIES",
    "allowed_views",
    "default_view",
    "can_view",
    "resolve_view",
    "require_view",
    "has_capability",
    "require_capability",
]
