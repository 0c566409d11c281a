from __future__ import annotations

from typing import Dict


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "Dealer Trading",
    "vehicle": "Vehicle",
    "transfer": "Transfer",
    "location": "Dealership",
    "import_run": "Inventory import",
}


TRANSFER_STATUS_LABELS: Dict[str, str] = {
    "requested": "Requested",
    "approved": "Approved",
    "in-transit": "In transit",
    "delivered": "Delivered",
    "rejected": "Rejected",
    "cancelled": "Cancelled",
}


VEHICLE_STATUS_LABELS: Dict[str, str] = {
    "available": "Available",
    "claimed": "Claimed",
    "in-transit": "In transit",
    "delivered": "Delivered",
    "removed": "Removed from feed",
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "error": {
        "unexpected_error": "The operation could not be completed.",
        "action_invalid": "This action is not valid.",
        "validation_error": "The submitted data is invalid.",
        "permission_denied": "You do not have permission to perform this action.",
        "vehicle_not_found": "Vehicle not found.",
        "transfer_not_found": "Transfer not found.",
        "location_not_found": "Dealership not found.",
        "invalid_state_transition": "This transfer cannot move to the requested status.",
        "transfer_already_requested": "Your dealership already has an open request for this vehicle.",
        "vehicle_not_available": "Vehicle is not available for transfer.",
        "cannot_cancel_delivered": "A delivered transfer cannot be cancelled.",
        "own_vehicle_transfer": "You cannot request a transfer of a vehicle from your own dealership.",
        "location_required": "A dealership is required to request a transfer.",
        "reason_required": "A reason is required.",
        "status_invalid": "Invalid status.",
        "feed_unavailable": "The inventory feed is unavailable. The import was not run.",
        "store_unavailable": "The vehicle database is unavailable. The import was not run.",
        "not_found": "Resource not found.",
    },
    "success": {
        "transfer_requested": "Transfer requested.",
        "transfer_approved": "Transfer approved.",
        "transfer_rejected": "Transfer rejected.",
        "transfer_cancelled": "Transfer cancelled.",
        "transfer_status_updated": "Transfer status updated.",
        "import_completed": "Import completed.",
        "import_preview_ready": "Import preview ready.",
    },
}


AUTO_REJECTION_REASON = "Another transfer request was approved for this vehicle"


def get_message(group: str, key: str, default: str | None = None) -> str:
    value = MESSAGES.get(group, {}).get(key)
    if value:
        return value
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)


def transfer_status_label(status: str | None) -> str:
    return TRANSFER_STATUS_LABELS.get(str(status or ""), str(status or ""))


def vehicle_status_label(status: str | None) -> str:
    return VEHICLE_STATUS_LABELS.get(str(status or ""), str(status or ""))
