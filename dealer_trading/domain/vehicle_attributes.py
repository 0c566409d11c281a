from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping


# Attributes reconciliation compares and copies from the feed. Status and the
# transfer link are deliberately absent.
TRACKED_ATTRIBUTES = (
    "stock_number",
    "year",
    "make",
    "model",
    "trim",
    "title",
    "price",
    "msrp",
    "mileage",
    "condition",
    "exterior_color",
    "body_style",
    "feed_status",
)

_INT_ATTRIBUTES = {"year", "mileage"}
_MONEY_ATTRIBUTES = {"price", "msrp"}
_LOWER_ATTRIBUTES = {"condition"}


def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(Decimal(str(value).strip()))
    except (InvalidOperation, ValueError):
        return None


def _to_money(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(round(Decimal(str(value).strip()), 2))
    except (InvalidOperation, ValueError):
        return None


def normalize_attribute(name: str, value: Any) -> Any:
    if name in _INT_ATTRIBUTES:
        return _to_int(value)
    if name in _MONEY_ATTRIBUTES:
        return _to_money(value)
    text = str(value).strip() if value is not None else ""
    if not text:
        return None
    if name in _LOWER_ATTRIBUTES:
        return text.lower()
    return text


def normalize_attributes(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {name: normalize_attribute(name, values.get(name)) for name in TRACKED_ATTRIBUTES}


def diff_attributes(stored: Mapping[str, Any], incoming: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Return ``{attribute: {"from": old, "to": new}}`` for every tracked attribute that differs."""
    changes: Dict[str, Dict[str, Any]] = {}
    for name in TRACKED_ATTRIBUTES:
        old = normalize_attribute(name, stored.get(name))
        new = normalize_attribute(name, incoming.get(name))
        if old != new:
            changes[name] = {"from": old, "to": new}
    return changes
