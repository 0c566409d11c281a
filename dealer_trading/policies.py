from __future__ import annotations

from typing import Any, Iterable, Mapping, Set

from flask import request

from dealer_trading.domain.contracts import Actor
from dealer_trading.errors import ForbiddenError


VALID_ROLES: Set[str] = {"sales", "manager", "admin", "transport"}

REQUEST_ROLES: Set[str] = {"sales", "manager", "admin"}
STATUS_UPDATE_ROLES: Set[str] = {"manager", "admin", "transport"}
# Roles that act on transfers for every location.
GLOBAL_ROLES: Set[str] = {"admin", "transport"}
CANCEL_ANY_ROLES: Set[str] = {"manager", "admin"}


def normalize_role(role: str | None, default: str = "sales") -> str:
    normalized = str(role or "").strip().lower()
    if normalized in VALID_ROLES:
        return normalized
    return default if default in VALID_ROLES else ""


def has_any_role(role: str | None, allowed_roles: Iterable[str]) -> bool:
    return normalize_role(role, default="") in set(allowed_roles)


def can_request_transfer(actor: Actor) -> bool:
    return has_any_role(actor.role, REQUEST_ROLES)


def can_approve_for_location(actor: Actor, from_location_id: str | None) -> bool:
    if has_any_role(actor.role, GLOBAL_ROLES):
        return True
    if normalize_role(actor.role, default="") != "manager":
        return False
    return bool(actor.location_id) and actor.location_id == from_location_id


def can_run_import(actor: Actor, location_id: str | None) -> bool:
    if normalize_role(actor.role, default="") == "admin":
        return True
    if normalize_role(actor.role, default="") != "manager":
        return False
    return bool(actor.location_id) and actor.location_id == location_id


def can_update_transfer_status(actor: Actor) -> bool:
    return has_any_role(actor.role, STATUS_UPDATE_ROLES)


def can_mark_delivered(actor: Actor, to_location_id: str | None) -> bool:
    if has_any_role(actor.role, GLOBAL_ROLES):
        return True
    if normalize_role(actor.role, default="") != "manager":
        return False
    return bool(actor.location_id) and actor.location_id == to_location_id


def can_cancel(actor: Actor, transfer: Mapping[str, Any]) -> bool:
    if str(transfer.get("requested_by_id") or "") == actor.user_id:
        return True
    return has_any_role(actor.role, CANCEL_ANY_ROLES)


def require(allowed: bool, *, details: str | None = None) -> None:
    if allowed:
        return
    raise ForbiddenError(details=details)


def current_actor() -> Actor:
    """Build the acting identity from the headers set by the upstream identity provider."""
    user_id = str(request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        raise ForbiddenError(code="actor_required", details="X-User-Id header is missing")
    role = normalize_role(request.headers.get("X-User-Role"), default="")
    if not role:
        raise ForbiddenError(details=f"unknown role for user {user_id}")
    location_id = str(request.headers.get("X-Location-Id") or "").strip() or None
    return Actor(user_id=user_id, role=role, location_id=location_id)
