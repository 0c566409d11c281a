from __future__ import annotations

from typing import Dict, List

from dealer_trading.errors import InvalidStateTransitionError


REQUESTED = "requested"
APPROVED = "approved"
IN_TRANSIT = "in-transit"
DELIVERED = "delivered"
CANCELLED = "cancelled"
REJECTED = "rejected"

TRANSFER_STATUSES = (REQUESTED, APPROVED, IN_TRANSIT, DELIVERED, CANCELLED, REJECTED)
OPEN_STATUSES = (REQUESTED, APPROVED, IN_TRANSIT)
# At most one transfer per vehicle may hold one of these.
ACTIVE_STATUSES = (APPROVED, IN_TRANSIT)


ACTION_LABELS: Dict[str, str] = {
    "approve": "Approve",
    "reject": "Reject",
    "cancel": "Cancel",
    "mark_in_transit": "Mark in transit",
    "mark_delivered": "Mark delivered",
}


TRANSFER_FLOW: Dict[str, Dict[str, object]] = {
    REQUESTED: {
        "allowed_actions": ["approve", "reject", "cancel"],
        "transitions": {APPROVED, REJECTED, CANCELLED},
        "primary_action": "approve",
    },
    APPROVED: {
        "allowed_actions": ["mark_in_transit", "cancel"],
        "transitions": {IN_TRANSIT, CANCELLED},
        "primary_action": "mark_in_transit",
    },
    IN_TRANSIT: {
        "allowed_actions": ["mark_delivered", "cancel"],
        "transitions": {DELIVERED, CANCELLED},
        "primary_action": "mark_delivered",
    },
    DELIVERED: {"allowed_actions": [], "transitions": set(), "primary_action": None},
    CANCELLED: {"allowed_actions": [], "transitions": set(), "primary_action": None},
    REJECTED: {"allowed_actions": [], "transitions": set(), "primary_action": None},
}


# Vehicle status that follows a transfer into each status.
VEHICLE_STATUS_FOR_TRANSFER: Dict[str, str] = {
    APPROVED: "claimed",
    IN_TRANSIT: "in-transit",
    DELIVERED: "delivered",
}

ADVANCE_TARGETS: Dict[str, str] = {
    APPROVED: IN_TRANSIT,
    IN_TRANSIT: DELIVERED,
}


def _fallback_policy() -> Dict[str, object]:
    return {"allowed_actions": [], "transitions": set(), "primary_action": None}


def status_policy(status: str | None) -> Dict[str, object]:
    if not status:
        return _fallback_policy()
    return TRANSFER_FLOW.get(str(status), _fallback_policy())


def allowed_actions(status: str | None) -> List[str]:
    return [str(action) for action in status_policy(status).get("allowed_actions") or []]


def is_terminal(status: str | None) -> bool:
    return not status_policy(status).get("transitions")


def can_transition(current_status: str | None, target_status: str | None) -> bool:
    if not target_status:
        return False
    return str(target_status) in status_policy(current_status).get("transitions", set())


def require_transition(current_status: str | None, target_status: str, code: str | None = None) -> None:
    if can_transition(current_status, target_status):
        return
    raise InvalidStateTransitionError(
        code=code,
        current_status=current_status,
        target_status=target_status,
    )


def advance_target(current_status: str | None) -> str | None:
    return ADVANCE_TARGETS.get(str(current_status or ""))


def flow_meta(status: str | None) -> Dict[str, object]:
    return {
        "status": status,
        "allowed_actions": allowed_actions(status),
        "primary_action": status_policy(status).get("primary_action"),
        "terminal": is_terminal(status),
    }
