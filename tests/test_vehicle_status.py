import unittest
from datetime import timedelta

from dealer_trading.db import to_db_timestamp
from dealer_trading.domain.vehicle_attributes import diff_attributes, normalize_attribute
from dealer_trading.domain.vehicle_status import (
    can_permanently_delete,
    can_restore,
    can_soft_delete,
    is_protected,
    is_transferable,
    normalize_vin,
    removal_expired,
    retention_window,
)
from tests.inventory_utils import NOW


class VehicleStatusTest(unittest.TestCase):
    def test_protection_from_transfer_link_or_open_transfer(self) -> None:
        self.assertTrue(is_protected({"current_transfer_id": 7}))
        self.assertTrue(is_protected({"current_transfer_id": None}, active_transfer_count=1))
        self.assertFalse(is_protected({"current_transfer_id": None}, active_transfer_count=0))

    def test_protected_vehicle_is_never_eligible_for_removal_paths(self) -> None:
        removed = {
            "status": "removed",
            "current_transfer_id": 3,
            "removed_from_feed_at": to_db_timestamp(NOW - timedelta(days=90)),
        }
        self.assertFalse(can_soft_delete(removed, protected=True))
        self.assertFalse(can_restore(removed, protected=True))
        self.assertFalse(can_permanently_delete(removed, True, NOW))

    def test_retention_boundary_is_strict(self) -> None:
        window = retention_window(30)
        inside = NOW - timedelta(days=30) + timedelta(seconds=1)
        outside = NOW - timedelta(days=30) - timedelta(seconds=1)
        self.assertFalse(removal_expired(to_db_timestamp(inside), NOW, window))
        self.assertFalse(removal_expired(to_db_timestamp(NOW - timedelta(days=30)), NOW, window))
        self.assertTrue(removal_expired(to_db_timestamp(outside), NOW, window))

    def test_removed_vehicle_without_stamp_can_be_soft_deleted_again(self) -> None:
        self.assertTrue(can_soft_delete({"status": "removed", "removed_from_feed_at": None}, protected=False))
        self.assertFalse(
            can_soft_delete({"status": "removed", "removed_from_feed_at": to_db_timestamp(NOW)}, protected=False)
        )
        self.assertTrue(can_soft_delete({"status": "delivered"}, protected=False))

    def test_transferable_statuses(self) -> None:
        self.assertTrue(is_transferable({"status": "available"}))
        self.assertTrue(is_transferable({"status": "claimed"}))
        for status in ("in-transit", "delivered", "removed"):
            self.assertFalse(is_transferable({"status": status}), status)

    def test_vin_normalization(self) -> None:
        self.assertEqual(normalize_vin("  1hgcm82633a004352 "), "1HGCM82633A004352")
        self.assertEqual(normalize_vin(None), "")


class VehicleAttributesTest(unittest.TestCase):
    def test_numeric_and_text_normalization(self) -> None:
        self.assertEqual(normalize_attribute("price", "21500.50"), 21500.5)
        self.assertEqual(normalize_attribute("mileage", "30000"), 30000)
        self.assertEqual(normalize_attribute("condition", " USED "), "used")
        self.assertIsNone(normalize_attribute("trim", "   "))

    def test_diff_ignores_representation_and_untracked_fields(self) -> None:
        stored = {"price": 21500, "mileage": "30000", "make": "Honda", "status": "claimed"}
        incoming = {"price": "21500.00", "mileage": 30000, "make": "Honda", "status": "available"}
        self.assertEqual(diff_attributes(stored, incoming), {})

    def test_diff_reports_old_and_new_values(self) -> None:
        changes = diff_attributes({"price": 21500, "make": "Honda"}, {"price": 19900, "make": "Honda"})
        self.assertEqual(changes, {"price": {"from": 21500.0, "to": 19900.0}})


if __name__ == "__main__":
    unittest.main()
