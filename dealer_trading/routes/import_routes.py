from __future__ import annotations

from flask import Blueprint, jsonify, request

from dealer_trading.application.services import reconciler_for
from dealer_trading.db import get_db
from dealer_trading.domain.contracts import MODE_APPLY, MODE_DRY_RUN
from dealer_trading.infrastructure.repositories import ImportRunRepository
from dealer_trading.policies import can_run_import, current_actor, require
from dealer_trading.ui_strings import success_message


imports_bp = Blueprint("imports", __name__)


def _require_import_actor(location_id: str) -> None:
    actor = current_actor()
    require(
        can_run_import(actor, location_id),
        details=f"{actor.user_id} ({actor.role}) cannot run imports for {location_id}",
    )


@imports_bp.route("/api/imports/<string:location_id>/dry-run", methods=["POST"])
def import_dry_run_api(location_id: str):
    _require_import_actor(location_id)
    plan = reconciler_for().reconcile_location(get_db(), location_id, MODE_DRY_RUN)
    payload = plan.to_dict()
    payload["message"] = success_message("import_preview_ready")
    return jsonify(payload), 200


@imports_bp.route("/api/imports/<string:location_id>/run", methods=["POST"])
def import_run_api(location_id: str):
    _require_import_actor(location_id)
    plan = reconciler_for().reconcile_location(get_db(), location_id, MODE_APPLY)
    payload = plan.to_dict()
    payload["message"] = success_message("import_completed")
    # 207 tells the caller that some vehicles failed while the rest committed.
    return jsonify(payload), 207 if plan.errors else 200


@imports_bp.route("/api/imports/<string:location_id>/runs", methods=["GET"])
def import_runs_api(location_id: str):
    _require_import_actor(location_id)
    try:
        limit = max(1, min(int(request.args.get("limit", 20)), 200))
    except (TypeError, ValueError):
        limit = 20
    runs = ImportRunRepository().list_for_location(get_db(), location_id, limit=limit)
    return jsonify({"location_id": location_id, "runs": runs}), 200
