import unittest
from datetime import datetime, timedelta, timezone

from dealer_trading import create_app
from dealer_trading.config import Config
from dealer_trading.core import reset_event_bus_for_tests
from dealer_trading.db import close_db
from dealer_trading.feeds.base import StaticFeedSource
from dealer_trading.scheduler import ImportScheduler, _should_start_scheduler
from tests.helpers.temp_db import TempDbSandbox
from tests.inventory_utils import fetch_vehicle, record, seed_locations, seed_transfer, seed_vehicle, snapshot, vin


class _FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class _ExplodingFeedSource(StaticFeedSource):
    def __init__(self, broken_location_id: str) -> None:
        super().__init__()
        self.broken_location_id = broken_location_id

    def fetch_snapshot(self, location):
        if location["id"] == self.broken_location_id:
            raise RuntimeError("feed parser crashed")
        return super().fetch_snapshot(location)


class ImportSchedulerTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="import_scheduler")
        config = self._temp_db.make_config(Config, TESTING=True)
        self.app = create_app(config)
        self.feeds = StaticFeedSource()
        self.app.extensions["feed_source"] = self.feeds
        self.db = self._temp_db.open_database()
        seed_locations(self.db, "loc-a", "loc-b")
        self.clock = _FakeMonotonic()
        self.scheduler = ImportScheduler(self.app, monotonic=self.clock)

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_event_bus_for_tests()

    def test_failed_location_backs_off_exponentially(self) -> None:
        self.feeds.put(snapshot("loc-a", record(vin(1))))

        first = self.scheduler.run_once()
        self.assertEqual(first, {"loc-a": "succeeded", "loc-b": "failed"})
        self.assertEqual(self.scheduler.backoff_seconds_remaining("loc-b"), 60.0)
        self.assertEqual(self.scheduler.backoff_seconds_remaining("loc-a"), 0.0)

        second = self.scheduler.run_once()
        self.assertEqual(second["loc-b"], "backoff")

        self.clock.value += 61
        third = self.scheduler.run_once()
        self.assertEqual(third["loc-b"], "failed")
        self.assertEqual(self.scheduler.backoff_seconds_remaining("loc-b"), 120.0)

        self.feeds.put(snapshot("loc-b", record(vin(2))))
        self.clock.value += 121
        fourth = self.scheduler.run_once()
        self.assertEqual(fourth["loc-b"], "succeeded")
        self.assertEqual(self.scheduler.backoff_seconds_remaining("loc-b"), 0.0)

    def test_unexpected_error_in_one_location_does_not_stop_the_cycle(self) -> None:
        vehicle_id = seed_vehicle(self.db, vin(7), "loc-b", status="delivered", original_location_id="loc-a")
        transfer_id = seed_transfer(
            self.db,
            vehicle_id,
            "loc-a",
            "loc-b",
            status="delivered",
            delivered_at=datetime.now(timezone.utc) - timedelta(days=5),
        )
        self.db.execute("UPDATE vehicles SET current_transfer_id = ? WHERE id = ?", (transfer_id, vehicle_id))
        feeds = _ExplodingFeedSource("loc-a")
        feeds.put(snapshot("loc-b", record(vin(7))))
        self.app.extensions["feed_source"] = feeds

        with self.assertLogs("dealer_trading.scheduler", level="ERROR") as logs:
            outcomes = self.scheduler.run_once()

        self.assertEqual(outcomes, {"loc-a": "failed", "loc-b": "succeeded"})
        self.assertTrue(any("import_location_crashed" in line for line in logs.output))
        self.assertEqual(self.scheduler.backoff_seconds_remaining("loc-a"), 60.0)
        vehicle = fetch_vehicle(self.db, vehicle_id)
        self.assertEqual(vehicle["status"], "available")
        self.assertIsNone(vehicle["current_transfer_id"])

    def test_inactive_locations_are_skipped(self) -> None:
        self.db.execute("UPDATE locations SET active = 0 WHERE id = 'loc-b'")
        self.feeds.put(snapshot("loc-a"))
        self.assertEqual(self.scheduler.run_once(), {"loc-a": "succeeded"})

    def test_scheduler_never_starts_under_tests(self) -> None:
        self.app.config["IMPORT_SCHEDULER_ENABLED"] = True
        self.assertFalse(_should_start_scheduler(self.app))
        self.app.config["TESTING"] = False
        self.assertTrue(_should_start_scheduler(self.app))
        self.app.config["IMPORT_SCHEDULER_ENABLED"] = False
        self.assertFalse(_should_start_scheduler(self.app))


if __name__ == "__main__":
    unittest.main()
