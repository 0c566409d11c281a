from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Mapping

from dealer_trading.db import parse_db_timestamp


AVAILABLE = "available"
CLAIMED = "claimed"
IN_TRANSIT = "in-transit"
DELIVERED = "delivered"
REMOVED = "removed"

VEHICLE_STATUSES = (AVAILABLE, CLAIMED, IN_TRANSIT, DELIVERED, REMOVED)

# Transfer statuses that keep a vehicle under protection.
ACTIVE_TRANSFER_STATUSES = ("requested", "approved", "in-transit")
TERMINAL_TRANSFER_STATUSES = ("delivered", "cancelled", "rejected")

TRANSFERABLE_STATUSES = (AVAILABLE, CLAIMED)

DEFAULT_REMOVED_RETENTION_DAYS = 30


def normalize_vin(value: Any) -> str:
    return str(value or "").strip().upper()


def retention_window(days: int | None = None) -> timedelta:
    resolved = DEFAULT_REMOVED_RETENTION_DAYS if days is None else max(0, int(days))
    return timedelta(days=resolved)


def is_protected(vehicle: Mapping[str, Any], active_transfer_count: int = 0) -> bool:
    """True when reconciliation must leave the vehicle's status, stamp and link alone."""
    if vehicle.get("current_transfer_id") is not None:
        return True
    return int(active_transfer_count or 0) > 0


def is_removed(vehicle: Mapping[str, Any]) -> bool:
    return str(vehicle.get("status") or "") == REMOVED


def removal_expired(removed_at: Any, now: datetime, retention: timedelta | None = None) -> bool:
    stamp = parse_db_timestamp(removed_at)
    if stamp is None:
        return False
    window = retention if retention is not None else retention_window()
    return parse_db_timestamp(now) - stamp > window


def can_soft_delete(vehicle: Mapping[str, Any], protected: bool) -> bool:
    if protected:
        return False
    return not is_removed(vehicle) or parse_db_timestamp(vehicle.get("removed_from_feed_at")) is None


def can_restore(vehicle: Mapping[str, Any], protected: bool) -> bool:
    return is_removed(vehicle) and not protected


def can_permanently_delete(
    vehicle: Mapping[str, Any],
    protected: bool,
    now: datetime,
    retention: timedelta | None = None,
) -> bool:
    if protected or not is_removed(vehicle):
        return False
    return removal_expired(vehicle.get("removed_from_feed_at"), now, retention)


def is_transferable(vehicle: Mapping[str, Any]) -> bool:
    return str(vehicle.get("status") or "") in TRANSFERABLE_STATUSES
