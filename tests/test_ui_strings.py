import unittest

from dealer_trading.domain.transfer_flow import TRANSFER_STATUSES
from dealer_trading.domain.vehicle_status import VEHICLE_STATUSES
from dealer_trading.errors import (
    DataSourceUnavailableError,
    ForbiddenError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from dealer_trading.ui_strings import (
    MESSAGES,
    error_message,
    transfer_status_label,
    vehicle_status_label,
)


class UiStringsTest(unittest.TestCase):
    def test_every_transfer_status_has_a_label(self) -> None:
        for status in TRANSFER_STATUSES:
            self.assertNotEqual(transfer_status_label(status), status, f"missing label: {status}")

    def test_every_vehicle_status_has_a_label(self) -> None:
        for status in VEHICLE_STATUSES:
            self.assertNotEqual(vehicle_status_label(status), status, f"missing label: {status}")

    def test_error_classes_have_messages(self) -> None:
        for error_class in (
            ValidationError,
            NotFoundError,
            ForbiddenError,
            InvalidStateTransitionError,
            DataSourceUnavailableError,
        ):
            key = error_class.default_message_key
            self.assertIn(key, MESSAGES["error"], key)

    def test_messages_are_not_empty(self) -> None:
        for group, messages in MESSAGES.items():
            for key, text in messages.items():
                self.assertTrue((text or "").strip(), f"empty message {group}:{key}")

    def test_unknown_key_falls_back(self) -> None:
        self.assertEqual(error_message("nope"), "nope")
        self.assertEqual(error_message("nope", "fallback"), "fallback")
        self.assertEqual(transfer_status_label(None), "")


if __name__ == "__main__":
    unittest.main()
