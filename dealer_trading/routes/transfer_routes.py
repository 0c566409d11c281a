from __future__ import annotations

from flask import Blueprint, jsonify, request

from dealer_trading.application.services import transfer_workflow_for
from dealer_trading.db import get_db
from dealer_trading.domain.contracts import TransferRequestInput
from dealer_trading.errors import ValidationError
from dealer_trading.policies import current_actor
from dealer_trading.ui_strings import success_message


transfers_bp = Blueprint("transfers", __name__)


def _payload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@transfers_bp.route("/api/vehicles/<int:vehicle_id>/transfers", methods=["POST"])
def transfer_request_api(vehicle_id: int):
    actor = current_actor()
    payload = _payload()
    details = TransferRequestInput(
        reason=(payload.get("reason") or None),
        customer_waiting=_as_bool(payload.get("customer_waiting")),
        priority=_as_bool(payload.get("priority")),
        expected_pickup_date=(payload.get("expected_pickup_date") or None),
        to_location_id=(payload.get("to_location_id") or None),
    )
    transfer = transfer_workflow_for().request_transfer(get_db(), vehicle_id, actor, details)
    return jsonify({"transfer": transfer, "message": success_message("transfer_requested")}), 201


@transfers_bp.route("/api/vehicles/<int:vehicle_id>/transfers", methods=["GET"])
def vehicle_transfers_api(vehicle_id: int):
    current_actor()
    transfers = transfer_workflow_for().list_vehicle_transfers(get_db(), vehicle_id)
    return jsonify({"vehicle_id": vehicle_id, "transfers": transfers}), 200


@transfers_bp.route("/api/vehicles/<int:vehicle_id>/activity", methods=["GET"])
def vehicle_activity_api(vehicle_id: int):
    current_actor()
    activity = transfer_workflow_for().list_activity(get_db(), vehicle_id)
    return jsonify({"vehicle_id": vehicle_id, "activity": activity}), 200


@transfers_bp.route("/api/transfers/<int:transfer_id>", methods=["GET"])
def transfer_detail_api(transfer_id: int):
    current_actor()
    transfer = transfer_workflow_for().get_transfer(get_db(), transfer_id)
    return jsonify({"transfer": transfer}), 200


@transfers_bp.route("/api/transfers/<int:transfer_id>/approve", methods=["PUT"])
def transfer_approve_api(transfer_id: int):
    transfer = transfer_workflow_for().approve(get_db(), transfer_id, current_actor())
    return jsonify({"transfer": transfer, "message": success_message("transfer_approved")}), 200


@transfers_bp.route("/api/transfers/<int:transfer_id>/reject", methods=["PUT"])
def transfer_reject_api(transfer_id: int):
    actor = current_actor()
    reason = _payload().get("reason")
    transfer = transfer_workflow_for().reject(get_db(), transfer_id, actor, reason)
    return jsonify({"transfer": transfer, "message": success_message("transfer_rejected")}), 200


@transfers_bp.route("/api/transfers/<int:transfer_id>/cancel", methods=["PUT"])
def transfer_cancel_api(transfer_id: int):
    actor = current_actor()
    reason = _payload().get("reason")
    transfer = transfer_workflow_for().cancel(get_db(), transfer_id, actor, reason)
    return jsonify({"transfer": transfer, "message": success_message("transfer_cancelled")}), 200


@transfers_bp.route("/api/transfers/<int:transfer_id>/status", methods=["PUT"])
def transfer_status_api(transfer_id: int):
    actor = current_actor()
    status = str(_payload().get("status") or "").strip()
    if not status:
        raise ValidationError(code="status_invalid", message_key="status_invalid")
    transfer = transfer_workflow_for().advance(get_db(), transfer_id, actor, status)
    return jsonify({"transfer": transfer, "message": success_message("transfer_status_updated")}), 200
