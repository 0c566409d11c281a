from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping

from dealer_trading.core.event_bus import EventBus, ReconciliationCompleted, get_event_bus
from dealer_trading.db import DB_ERRORS, utc_now
from dealer_trading.domain.contracts import (
    ACTION_CREATE,
    ACTION_PERMANENT_DELETE,
    ACTION_RESTORE,
    ACTION_SKIP_PROTECTED,
    ACTION_SOFT_DELETE,
    ACTION_UPDATE,
    MODE_APPLY,
    MODE_DRY_RUN,
    PLAN_ACTIONS,
    RECONCILE_MODES,
    SYSTEM_ACTOR,
    PlanEntry,
    PlanError,
    ReconciliationPlan,
)
from dealer_trading.domain.vehicle_attributes import diff_attributes
from dealer_trading.domain.vehicle_status import (
    can_permanently_delete,
    can_restore,
    can_soft_delete,
    is_protected,
    is_removed,
    normalize_vin,
    retention_window,
)
from dealer_trading.errors import DataSourceUnavailableError, NotFoundError, ValidationError
from dealer_trading.feeds.base import FeedSnapshot, FeedSnapshotSource
from dealer_trading.infrastructure.repositories import (
    ActivityRepository,
    ImportRunRepository,
    LocationRepository,
    TransferRepository,
    VehicleRepository,
)
from dealer_trading.observability import observe_reconciliation_action, observe_reconciliation_run


logger = logging.getLogger("dealer_trading.reconciliation")

REASON_ACTIVE_TRANSFER = "active_transfer"

_ACTIVITY_ACTIONS = {
    ACTION_CREATE: "vehicle_imported",
    ACTION_UPDATE: "vehicle_updated",
    ACTION_SOFT_DELETE: "vehicle_removed_from_feed",
    ACTION_RESTORE: "vehicle_restored",
    ACTION_PERMANENT_DELETE: "vehicle_permanently_deleted",
}


def _entry(action: str, vin: str, source: Mapping[str, Any], **extra: Any) -> PlanEntry:
    return PlanEntry(
        action=action,
        vin=vin,
        stock_number=source.get("stock_number"),
        year=source.get("year"),
        make=source.get("make"),
        model=source.get("model"),
        **extra,
    )


def build_plan(
    location_id: str,
    stored: Iterable[Mapping[str, Any]],
    snapshot: FeedSnapshot,
    *,
    protected_ids: Iterable[int] = (),
    foreign: Iterable[Mapping[str, Any]] = (),
    now: datetime,
    retention: timedelta | None = None,
    mode: str = MODE_APPLY,
) -> ReconciliationPlan:
    """Compute the actions that bring the location's stored vehicles in line with ``snapshot``.

    ``stored`` holds every vehicle at the location, removed ones included.
    ``foreign`` holds vehicles at other locations whose VIN appears in the feed.
    Pure: reads nothing and writes nothing.
    """
    protected = {int(value) for value in protected_ids}
    stored_by_vin = {normalize_vin(row["vin"]): row for row in stored}
    foreign_by_vin = {normalize_vin(row["vin"]): row for row in foreign}
    window = retention if retention is not None else retention_window()

    plan = ReconciliationPlan(
        location_id=location_id,
        mode=mode,
        generated_at=now,
        records_in=len(snapshot.records),
    )

    for vin in sorted(set(snapshot.records) | set(stored_by_vin)):
        record = snapshot.records.get(vin)
        vehicle = stored_by_vin.get(vin)

        if vehicle is None:
            attributes = record.attributes()
            other = foreign_by_vin.get(vin)
            if other is None:
                plan.creates.append(_entry(ACTION_CREATE, vin, attributes, attributes=attributes))
            elif is_protected(other, int(int(other["id"]) in protected)):
                plan.skipped_protected.append(
                    _entry(
                        ACTION_SKIP_PROTECTED,
                        vin,
                        other,
                        vehicle_id=int(other["id"]),
                        previous_location_id=other["location_id"],
                        reason=REASON_ACTIVE_TRANSFER,
                    )
                )
            else:
                plan.creates.append(
                    _entry(
                        ACTION_CREATE,
                        vin,
                        attributes,
                        vehicle_id=int(other["id"]),
                        changes=diff_attributes(other, attributes),
                        attributes=attributes,
                        previous_location_id=other["location_id"],
                    )
                )
            continue

        vehicle_id = int(vehicle["id"])
        guarded = is_protected(vehicle, int(vehicle_id in protected))

        if record is not None:
            attributes = record.attributes()
            changes = diff_attributes(vehicle, attributes)
            if is_removed(vehicle):
                if can_restore(vehicle, guarded):
                    plan.restores.append(
                        _entry(
                            ACTION_RESTORE,
                            vin,
                            vehicle,
                            vehicle_id=vehicle_id,
                            changes=changes,
                            attributes=attributes,
                        )
                    )
                else:
                    plan.skipped_protected.append(
                        _entry(ACTION_SKIP_PROTECTED, vin, vehicle, vehicle_id=vehicle_id, reason=REASON_ACTIVE_TRANSFER)
                    )
            elif changes:
                # Attribute refresh is allowed on protected vehicles; status is never touched here.
                plan.updates.append(
                    _entry(
                        ACTION_UPDATE,
                        vin,
                        vehicle,
                        vehicle_id=vehicle_id,
                        changes=changes,
                        attributes={name: change["to"] for name, change in changes.items()},
                    )
                )
            continue

        if guarded:
            plan.skipped_protected.append(
                _entry(ACTION_SKIP_PROTECTED, vin, vehicle, vehicle_id=vehicle_id, reason=REASON_ACTIVE_TRANSFER)
            )
        elif can_soft_delete(vehicle, guarded):
            plan.soft_deletes.append(_entry(ACTION_SOFT_DELETE, vin, vehicle, vehicle_id=vehicle_id))
        elif can_permanently_delete(vehicle, guarded, now, window):
            plan.permanent_deletes.append(_entry(ACTION_PERMANENT_DELETE, vin, vehicle, vehicle_id=vehicle_id))

    return plan


class Reconciler:
    """Reconciles a location's stored vehicles against a feed snapshot.

    ``apply`` runs inside one transaction per location with a savepoint per
    vehicle; a driver error on one vehicle is collected into ``plan.errors``
    and the rest of the plan still commits. ``dry_run`` computes the same plan
    and writes nothing.
    """

    def __init__(
        self,
        feed_source: FeedSnapshotSource | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        retention_days: int | None = None,
        event_bus: EventBus | None = None,
        vehicles: VehicleRepository | None = None,
        transfers: TransferRepository | None = None,
        activities: ActivityRepository | None = None,
        locations: LocationRepository | None = None,
        import_runs: ImportRunRepository | None = None,
    ) -> None:
        self.feed_source = feed_source
        self.clock = clock
        self.retention = retention_window(retention_days)
        self.event_bus = event_bus or get_event_bus()
        self.vehicles = vehicles or VehicleRepository()
        self.transfers = transfers or TransferRepository()
        self.activities = activities or ActivityRepository()
        self.locations = locations or LocationRepository()
        self.import_runs = import_runs or ImportRunRepository()

    def reconcile_location(self, db, location_id: str, mode: str = MODE_APPLY) -> ReconciliationPlan:
        self._check_mode(mode)
        location = self._location_or_404(db, location_id)
        if self.feed_source is None:
            raise DataSourceUnavailableError(details="no feed source configured")
        try:
            snapshot = self.feed_source.fetch_snapshot(location)
        except DataSourceUnavailableError as exc:
            logger.error(
                "reconciliation_feed_unavailable",
                extra={"location_id": location_id, "mode": mode, "details": exc.details},
            )
            observe_reconciliation_run(mode, "failed", 0.0)
            if mode == MODE_APPLY:
                self._record_failed_run(db, location_id, mode, 0, exc.details or exc.code)
            raise
        return self.reconcile(db, location_id, snapshot, mode)

    def reconcile(self, db, location_id: str, snapshot: FeedSnapshot, mode: str = MODE_APPLY) -> ReconciliationPlan:
        self._check_mode(mode)
        self._location_or_404(db, location_id)
        started = time.perf_counter()
        if mode == MODE_DRY_RUN:
            plan = self._dry_run(db, location_id, snapshot)
        else:
            plan = self._apply(db, location_id, snapshot)
        duration = time.perf_counter() - started

        result = "partial" if plan.errors else "succeeded"
        observe_reconciliation_run(mode, result, duration)
        for action in (*PLAN_ACTIONS, ACTION_SKIP_PROTECTED):
            observe_reconciliation_action(mode, action, len(plan.entries_for(action)))
        logger.info(
            "reconciliation_completed",
            extra={
                "location_id": location_id,
                "mode": mode,
                "result": result,
                "records_in": plan.records_in,
                "counts": plan.counts(),
                "import_run_id": plan.import_run_id,
                "duration_ms": round(duration * 1000.0, 2),
            },
        )
        return plan

    # -- modes ---------------------------------------------------------

    def _dry_run(self, db, location_id: str, snapshot: FeedSnapshot) -> ReconciliationPlan:
        try:
            plan = self._plan(db, location_id, snapshot, mode=MODE_DRY_RUN, lock=False)
        except DB_ERRORS as exc:
            raise DataSourceUnavailableError(
                code="store_unavailable",
                message_key="store_unavailable",
                details=str(exc),
            ) from exc
        self._log_skipped(plan)
        return plan

    def _apply(self, db, location_id: str, snapshot: FeedSnapshot) -> ReconciliationPlan:
        try:
            with db.transaction():
                run_id = self.import_runs.start(
                    db,
                    location_id=location_id,
                    mode=MODE_APPLY,
                    records_in=len(snapshot.records),
                    now=self.clock(),
                )
        except DB_ERRORS as exc:
            raise DataSourceUnavailableError(
                code="store_unavailable",
                message_key="store_unavailable",
                details=str(exc),
            ) from exc

        try:
            with db.transaction():
                plan = self._plan(db, location_id, snapshot, mode=MODE_APPLY, lock=True)
                plan.import_run_id = run_id
                for entry in list(plan.actions()):
                    self._apply_entry(db, plan, entry)
        except DB_ERRORS as exc:
            self._finish_failed_run(db, run_id, str(exc))
            raise DataSourceUnavailableError(
                code="store_unavailable",
                message_key="store_unavailable",
                details=str(exc),
            ) from exc

        self._log_skipped(plan)
        for error in plan.errors:
            logger.error(
                "reconciliation_vehicle_failed",
                extra={
                    "location_id": location_id,
                    "action": error.action,
                    "vin": error.vin,
                    "vehicle_id": error.vehicle_id,
                    "error_message": error.message,
                },
            )
        status = "partial" if plan.errors else "succeeded"
        counts = plan.applied_counts()
        counts[ACTION_SKIP_PROTECTED] = len(plan.skipped_protected)
        try:
            with db.transaction():
                self.import_runs.finish(
                    db,
                    run_id,
                    status=status,
                    now=self.clock(),
                    counts=counts,
                    errors=[error.to_dict() for error in plan.errors],
                    error_summary=self._error_summary(plan.errors),
                )
        except DB_ERRORS:
            logger.exception("import_run_finish_failed", extra={"location_id": location_id, "import_run_id": run_id})

        self.event_bus.publish(
            ReconciliationCompleted(
                location_id=location_id,
                mode=MODE_APPLY,
                import_run_id=run_id,
                status=status,
                counts=counts,
                error_count=len(plan.errors),
            )
        )
        return plan

    # -- internals -----------------------------------------------------

    def _plan(self, db, location_id: str, snapshot: FeedSnapshot, *, mode: str, lock: bool) -> ReconciliationPlan:
        stored = self.vehicles.list_for_location(db, location_id, for_update=lock)
        stored_vins = {normalize_vin(row["vin"]) for row in stored}
        new_vins = [vin for vin in snapshot.records if vin not in stored_vins]
        foreign = self.vehicles.list_by_vins(db, new_vins, exclude_location_id=location_id, for_update=lock)
        protected_ids = self.transfers.protected_vehicle_ids(db, [row["id"] for row in (*stored, *foreign)])
        return build_plan(
            location_id,
            stored,
            snapshot,
            protected_ids=protected_ids,
            foreign=foreign,
            now=self.clock(),
            retention=self.retention,
            mode=mode,
        )

    def _apply_entry(self, db, plan: ReconciliationPlan, entry: PlanEntry) -> None:
        try:
            with db.savepoint():
                now = self.clock()
                vehicle_id = self._execute(db, plan.location_id, entry, now)
                metadata: Dict[str, Any] = {"import_run_id": plan.import_run_id}
                if entry.changes:
                    metadata["changes"] = entry.changes
                if entry.previous_location_id:
                    metadata["previous_location_id"] = entry.previous_location_id
                self.activities.record(
                    db,
                    action=self._activity_action(entry),
                    user_id=SYSTEM_ACTOR.user_id,
                    now=now,
                    vehicle_id=vehicle_id,
                    location_id=plan.location_id,
                    details=self._activity_details(entry),
                    metadata=metadata,
                )
        except (*DB_ERRORS, _VehicleChanged) as exc:
            plan.errors.append(
                PlanError(action=entry.action, vin=entry.vin, vehicle_id=entry.vehicle_id, message=str(exc))
            )

    def _execute(self, db, location_id: str, entry: PlanEntry, now: datetime) -> int:
        if entry.action == ACTION_CREATE and entry.vehicle_id is None:
            return self.vehicles.insert(db, location_id=location_id, vin=entry.vin, attributes=entry.attributes, now=now)

        if entry.action == ACTION_CREATE:
            affected = self.vehicles.relocate(db, entry.vehicle_id, location_id, entry.attributes, now)
        elif entry.action == ACTION_UPDATE:
            affected = self.vehicles.update_attributes(db, entry.vehicle_id, entry.attributes, now)
        elif entry.action == ACTION_RESTORE:
            affected = self.vehicles.restore(db, entry.vehicle_id, entry.attributes, now)
        elif entry.action == ACTION_SOFT_DELETE:
            affected = self.vehicles.soft_delete(db, entry.vehicle_id, now)
        elif entry.action == ACTION_PERMANENT_DELETE:
            affected = self.vehicles.delete_removed(db, entry.vehicle_id)
        else:
            raise ValueError(f"unknown reconciliation action: {entry.action}")

        if affected != 1:
            raise _VehicleChanged(f"vehicle {entry.vehicle_id} changed before {entry.action} could be applied")
        return int(entry.vehicle_id)

    @staticmethod
    def _activity_action(entry: PlanEntry) -> str:
        if entry.action == ACTION_CREATE and entry.vehicle_id is not None:
            return "vehicle_relocated"
        return _ACTIVITY_ACTIONS[entry.action]

    @staticmethod
    def _activity_details(entry: PlanEntry) -> str:
        label = " ".join(str(part) for part in (entry.year, entry.make, entry.model) if part) or entry.vin
        if entry.action == ACTION_CREATE and entry.previous_location_id:
            return f"{label} moved from {entry.previous_location_id} by inventory import"
        return {
            ACTION_CREATE: f"{label} added by inventory import",
            ACTION_UPDATE: f"{label} updated: {', '.join(sorted(entry.changes))}",
            ACTION_RESTORE: f"{label} back in feed",
            ACTION_SOFT_DELETE: f"{label} no longer in feed",
            ACTION_PERMANENT_DELETE: f"{label} deleted after retention period",
        }[entry.action]

    def _log_skipped(self, plan: ReconciliationPlan) -> None:
        for entry in plan.skipped_protected:
            logger.info(
                "reconciliation_skipped_protected",
                extra={
                    "location_id": plan.location_id,
                    "mode": plan.mode,
                    "vin": entry.vin,
                    "vehicle_id": entry.vehicle_id,
                },
            )

    @staticmethod
    def _error_summary(errors: List[PlanError]) -> str | None:
        if not errors:
            return None
        head = "; ".join(f"{error.vin}: {error.message}" for error in errors[:5])
        more = len(errors) - 5
        return f"{head} (+{more} more)" if more > 0 else head

    def _record_failed_run(self, db, location_id: str, mode: str, records_in: int, summary: str) -> None:
        try:
            with db.transaction():
                now = self.clock()
                run_id = self.import_runs.start(db, location_id=location_id, mode=mode, records_in=records_in, now=now)
                self.import_runs.finish(db, run_id, status="failed", now=now, error_summary=summary)
        except DB_ERRORS:
            logger.exception("import_run_record_failed", extra={"location_id": location_id})

    def _finish_failed_run(self, db, run_id: int, summary: str) -> None:
        try:
            with db.transaction():
                self.import_runs.finish(db, run_id, status="failed", now=self.clock(), error_summary=summary)
        except DB_ERRORS:
            logger.exception("import_run_finish_failed", extra={"import_run_id": run_id})

    def _location_or_404(self, db, location_id: str) -> dict:
        try:
            location = self.locations.get(db, location_id)
        except DB_ERRORS as exc:
            raise DataSourceUnavailableError(
                code="store_unavailable",
                message_key="store_unavailable",
                details=str(exc),
            ) from exc
        if location is None:
            raise NotFoundError(code="location_not_found", message_key="location_not_found")
        return location

    @staticmethod
    def _check_mode(mode: str) -> None:
        if mode not in RECONCILE_MODES:
            raise ValidationError(details=f"unknown reconciliation mode: {mode}")


class _VehicleChanged(Exception):
    """A conditional vehicle write matched no row."""
