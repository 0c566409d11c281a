import sqlite3
import unittest
from datetime import timedelta

from dealer_trading.application.reconciliation_service import Reconciler
from dealer_trading.core import EventBus, ReconciliationCompleted
from dealer_trading.domain.contracts import MODE_APPLY, MODE_DRY_RUN
from dealer_trading.errors import DataSourceUnavailableError, NotFoundError, ValidationError
from dealer_trading.feeds.base import StaticFeedSource
from dealer_trading.infrastructure.repositories import ActivityRepository, ImportRunRepository, VehicleRepository
from tests.helpers.temp_db import TempDbSandbox
from tests.inventory_utils import (
    NOW,
    FixedClock,
    count_rows,
    fetch_vehicle,
    record,
    seed_locations,
    seed_transfer,
    seed_vehicle,
    snapshot,
    table_fingerprint,
    vin,
)


class _FailingSoftDeleteRepository(VehicleRepository):
    def __init__(self, failing_vehicle_id: int) -> None:
        self.failing_vehicle_id = failing_vehicle_id

    def soft_delete(self, db, vehicle_id, now):
        if int(vehicle_id) == self.failing_vehicle_id:
            raise sqlite3.OperationalError("database disk image is malformed")
        return super().soft_delete(db, vehicle_id, now)


class ReconcilerTestBase(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="reconcile")
        self.db = self._temp_db.open_database()
        seed_locations(self.db, "loc-a", "loc-b")
        self.clock = FixedClock()
        self.bus = EventBus()
        self.completed = []
        self.bus.subscribe(ReconciliationCompleted, self.completed.append)
        self.feeds = StaticFeedSource()

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def _reconciler(self, **overrides) -> Reconciler:
        return Reconciler(
            self.feeds,
            clock=self.clock,
            retention_days=30,
            event_bus=self.bus,
            **overrides,
        )

    def _run(self, *records, mode=MODE_APPLY, location_id="loc-a", **overrides):
        self.feeds.put(snapshot(location_id, *records))
        return self._reconciler(**overrides).reconcile_location(self.db, location_id, mode)


class ReconcilerApplyTest(ReconcilerTestBase):
    def test_first_import_creates_vehicles_with_audit_trail(self) -> None:
        plan = self._run(record(vin(1)), record(vin(2)))

        self.assertEqual(len(plan.creates), 2)
        self.assertEqual(plan.errors, [])
        vehicle = VehicleRepository().get_by_vin(self.db, vin(1))
        self.assertEqual(vehicle["status"], "available")
        self.assertEqual(vehicle["location_id"], "loc-a")
        self.assertEqual(vehicle["original_location_id"], "loc-a")

        activity = ActivityRepository().list_for_vehicle(self.db, vehicle["id"])
        self.assertEqual([row["action"] for row in activity], ["vehicle_imported"])
        self.assertEqual(activity[0]["metadata"]["import_run_id"], plan.import_run_id)

        run = ImportRunRepository().get(self.db, plan.import_run_id)
        self.assertEqual(run["status"], "succeeded")
        self.assertEqual(run["created_count"], 2)
        self.assertIsNotNone(run["finished_at"])

        self.assertEqual(len(self.completed), 1)
        self.assertEqual(self.completed[0].counts["create"], 2)

    def test_second_apply_with_same_feed_is_a_no_op(self) -> None:
        transferred = seed_vehicle(self.db, vin(3), "loc-a", status="claimed")
        seed_transfer(self.db, transferred, "loc-a", "loc-b", status="approved")
        feed = (record(vin(1)), record(vin(2), price=15000.0))
        self._run(*feed)

        second = self._run(*feed)

        self.assertTrue(second.is_empty())
        self.assertEqual(second.creates + second.updates + second.soft_deletes, [])
        self.assertEqual([entry.vehicle_id for entry in second.skipped_protected], [transferred])

    def test_protected_vehicles_are_untouched_when_dropped(self) -> None:
        claimed_id = seed_vehicle(self.db, vin(1), "loc-a", status="claimed")
        transfer_id = seed_transfer(self.db, claimed_id, "loc-a", "loc-b", status="approved")
        self.db.execute("UPDATE vehicles SET current_transfer_id = ? WHERE id = ?", (transfer_id, claimed_id))
        requested_id = seed_vehicle(self.db, vin(2), "loc-a")
        seed_transfer(self.db, requested_id, "loc-a", "loc-b")
        free_id = seed_vehicle(self.db, vin(3), "loc-a")
        before_claimed = fetch_vehicle(self.db, claimed_id)
        before_requested = fetch_vehicle(self.db, requested_id)

        plan = self._run()

        self.assertEqual(sorted(entry.vehicle_id for entry in plan.skipped_protected), [claimed_id, requested_id])
        self.assertEqual([entry.vehicle_id for entry in plan.soft_deletes], [free_id])
        self.assertEqual(fetch_vehicle(self.db, claimed_id), before_claimed)
        self.assertEqual(fetch_vehicle(self.db, requested_id), before_requested)
        self.assertEqual(fetch_vehicle(self.db, free_id)["status"], "removed")
        self.assertIsNotNone(fetch_vehicle(self.db, free_id)["removed_from_feed_at"])

    def test_update_on_in_transit_vehicle_keeps_status_and_link(self) -> None:
        vehicle_id = seed_vehicle(self.db, vin(1), "loc-a", status="in-transit")
        transfer_id = seed_transfer(self.db, vehicle_id, "loc-a", "loc-b", status="in-transit")
        self.db.execute("UPDATE vehicles SET current_transfer_id = ? WHERE id = ?", (transfer_id, vehicle_id))

        plan = self._run(record(vin(1), price=17777.0, raw_status="sold"))

        self.assertEqual(len(plan.updates), 1)
        vehicle = fetch_vehicle(self.db, vehicle_id)
        self.assertEqual(vehicle["status"], "in-transit")
        self.assertEqual(vehicle["current_transfer_id"], transfer_id)
        self.assertEqual(float(vehicle["price"]), 17777.0)

    def test_retention_boundary_on_apply(self) -> None:
        keep_id = seed_vehicle(
            self.db,
            vin(1),
            "loc-a",
            status="removed",
            removed_at=NOW - timedelta(days=30) + timedelta(seconds=1),
        )
        purge_id = seed_vehicle(
            self.db,
            vin(2),
            "loc-a",
            status="removed",
            removed_at=NOW - timedelta(days=30) - timedelta(seconds=1),
        )

        plan = self._run()

        self.assertEqual([entry.vehicle_id for entry in plan.permanent_deletes], [purge_id])
        self.assertIsNone(fetch_vehicle(self.db, purge_id))
        self.assertEqual(fetch_vehicle(self.db, keep_id)["status"], "removed")

    def test_restore_applies_changed_attributes(self) -> None:
        vehicle_id = seed_vehicle(
            self.db,
            vin(1),
            "loc-a",
            status="removed",
            removed_at=NOW - timedelta(days=45),
        )

        plan = self._run(record(vin(1), mileage=41000))

        self.assertEqual([entry.vehicle_id for entry in plan.restores], [vehicle_id])
        self.assertEqual(plan.permanent_deletes, [])
        vehicle = fetch_vehicle(self.db, vehicle_id)
        self.assertEqual(vehicle["status"], "available")
        self.assertIsNone(vehicle["removed_from_feed_at"])
        self.assertEqual(vehicle["mileage"], 41000)

    def test_vin_listed_by_another_location_is_relocated(self) -> None:
        vehicle_id = seed_vehicle(self.db, vin(1), "loc-b")

        plan = self._run(record(vin(1)))

        self.assertEqual([entry.vehicle_id for entry in plan.creates], [vehicle_id])
        vehicle = fetch_vehicle(self.db, vehicle_id)
        self.assertEqual(vehicle["location_id"], "loc-a")
        self.assertEqual(vehicle["original_location_id"], "loc-b")
        self.assertEqual(count_rows(self.db, "vehicles"), 1)
        actions = [row["action"] for row in ActivityRepository().list_for_vehicle(self.db, vehicle_id)]
        self.assertEqual(actions, ["vehicle_relocated"])

    def test_database_error_on_one_vehicle_is_collected(self) -> None:
        failing_id = seed_vehicle(self.db, vin(1), "loc-a")
        other_id = seed_vehicle(self.db, vin(2), "loc-a")

        with self.assertLogs("dealer_trading.reconciliation", level="ERROR") as logs:
            plan = self._run(record(vin(3)), vehicles=_FailingSoftDeleteRepository(failing_id))

        failed_records = [item for item in logs.records if item.getMessage() == "reconciliation_vehicle_failed"]
        self.assertEqual(len(failed_records), 1)
        self.assertEqual(failed_records[0].vin, vin(1))
        self.assertIn("malformed", failed_records[0].error_message)
        self.assertEqual(len(plan.errors), 1)
        self.assertEqual(plan.errors[0].vehicle_id, failing_id)
        self.assertEqual(plan.errors[0].action, "soft_delete")
        self.assertEqual(fetch_vehicle(self.db, failing_id)["status"], "available")
        self.assertEqual(fetch_vehicle(self.db, other_id)["status"], "removed")
        self.assertIsNotNone(VehicleRepository().get_by_vin(self.db, vin(3)))

        run = ImportRunRepository().get(self.db, plan.import_run_id)
        self.assertEqual(run["status"], "partial")
        self.assertEqual(run["error_count"], 1)
        self.assertEqual(run["soft_deleted_count"], 1)
        self.assertEqual(run["errors"][0]["vin"], vin(1))
        self.assertEqual(plan.partial_failure.succeeded, 2)
        self.assertEqual(self.completed[0].status, "partial")


class ReconcilerDryRunTest(ReconcilerTestBase):
    def test_dry_run_writes_nothing_and_matches_apply(self) -> None:
        seed_vehicle(self.db, vin(1), "loc-a")
        seed_vehicle(self.db, vin(2), "loc-a", status="removed", removed_at=NOW - timedelta(days=31))
        seed_vehicle(self.db, vin(4), "loc-a", status="removed", removed_at=NOW - timedelta(days=2))
        feed = (record(vin(3)), record(vin(4), price=9999.0))
        before = table_fingerprint(self.db)

        preview = self._run(*feed, mode=MODE_DRY_RUN)

        self.assertEqual(table_fingerprint(self.db), before)
        self.assertIsNone(preview.import_run_id)
        self.assertEqual(self.completed, [])

        applied = self._run(*feed, mode=MODE_APPLY)
        self.assertEqual(preview, applied)
        self.assertEqual(len(preview.soft_deletes), 1)
        self.assertEqual(len(preview.permanent_deletes), 1)
        self.assertEqual(len(preview.restores), 1)
        self.assertEqual(len(preview.creates), 1)


class ReconcilerFailureTest(ReconcilerTestBase):
    def test_unreadable_feed_aborts_location_and_records_failed_run(self) -> None:
        vehicle_id = seed_vehicle(self.db, vin(1), "loc-a")

        with self.assertRaises(DataSourceUnavailableError) as ctx:
            self._reconciler().reconcile_location(self.db, "loc-a", MODE_APPLY)

        self.assertEqual(ctx.exception.http_status, 503)
        self.assertEqual(fetch_vehicle(self.db, vehicle_id)["status"], "available")
        runs = ImportRunRepository().list_for_location(self.db, "loc-a")
        self.assertEqual([run["status"] for run in runs], ["failed"])

    def test_unreadable_feed_in_dry_run_records_nothing(self) -> None:
        with self.assertRaises(DataSourceUnavailableError):
            self._reconciler().reconcile_location(self.db, "loc-a", MODE_DRY_RUN)
        self.assertEqual(count_rows(self.db, "import_runs"), 0)

    def test_unknown_location(self) -> None:
        with self.assertRaises(NotFoundError):
            self._run(record(vin(1)), location_id="loc-zz")

    def test_unknown_mode(self) -> None:
        with self.assertRaises(ValidationError):
            self._run(record(vin(1)), mode="preview")


if __name__ == "__main__":
    unittest.main()
