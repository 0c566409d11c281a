import json
import logging
import unittest
from unittest.mock import patch

from dealer_trading import create_app
from dealer_trading.config import Config
from dealer_trading.core import reset_event_bus_for_tests
from dealer_trading.db import close_db
from dealer_trading.errors import InvalidStateTransitionError, NotFoundError
from dealer_trading.observability import JsonLogFormatter, bind_request_id, reset_metrics_for_tests
from dealer_trading.ui_strings import error_message
from tests.helpers.temp_db import TempDbSandbox


class ErrorHandlingApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="error_api")
        config = self._temp_db.make_config(Config, TESTING=True, PROPAGATE_EXCEPTIONS=False)
        self.app = create_app(config)
        self.client = self.app.test_client()
        self.headers = {"X-User-Id": "admin-1", "X-User-Role": "admin"}

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_event_bus_for_tests()
        reset_metrics_for_tests()

    def test_unexpected_exception_is_mapped_without_traceback(self) -> None:
        with patch(
            "dealer_trading.routes.transfer_routes.transfer_workflow_for",
            side_effect=RuntimeError("boom"),
        ):
            response = self.client.get("/api/transfers/1", headers=self.headers)

        self.assertEqual(response.status_code, 500)
        payload = response.get_json()
        self.assertEqual(payload["error"], "unexpected_error")
        self.assertEqual(payload["message"], error_message("unexpected_error"))
        body = response.get_data(as_text=True)
        self.assertNotIn("Traceback", body)
        self.assertNotIn("boom", body)

    def test_request_id_is_echoed(self) -> None:
        response = self.client.get(
            "/api/transfers/404",
            headers={**self.headers, "X-Request-Id": "req-123"},
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.headers.get("X-Request-Id"), "req-123")
        self.assertEqual(response.get_json()["request_id"], "req-123")

    def test_unknown_route_stays_a_plain_404(self) -> None:
        response = self.client.get("/api/unknown")
        self.assertEqual(response.status_code, 404)
        self.assertTrue(response.headers.get("X-Request-Id"))


class ErrorPayloadTest(unittest.TestCase):
    def test_invalid_transition_payload_carries_statuses(self) -> None:
        error = InvalidStateTransitionError(current_status="delivered", target_status="approved")
        payload = error.to_response_payload("req-1")

        self.assertEqual(error.http_status, 409)
        self.assertEqual(payload["error"], "invalid_state_transition")
        self.assertEqual(payload["current_status"], "delivered")
        self.assertEqual(payload["target_status"], "approved")
        self.assertEqual(str(error), "delivered -> approved")

    def test_custom_code_uses_matching_message(self) -> None:
        error = NotFoundError(code="vehicle_not_found", message_key="vehicle_not_found")
        self.assertEqual(error.user_message(), error_message("vehicle_not_found"))
        self.assertFalse(error.critical)


class JsonLogFormatterTest(unittest.TestCase):
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("dealer_trading.test", logging.INFO, __file__, 1, "reconciliation_applied", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_extra_fields_and_bound_request_id(self) -> None:
        formatter = JsonLogFormatter()
        with bind_request_id("job-7"):
            line = formatter.format(self._record(location_id="loc-a", created_count=2))

        payload = json.loads(line)
        self.assertEqual(payload["message"], "reconciliation_applied")
        self.assertEqual(payload["level"], "info")
        self.assertEqual(payload["request_id"], "job-7")
        self.assertEqual(payload["location_id"], "loc-a")
        self.assertEqual(payload["created_count"], 2)

    def test_missing_request_id_defaults(self) -> None:
        with bind_request_id(None):
            payload = json.loads(JsonLogFormatter().format(self._record()))
        self.assertEqual(payload["request_id"], "n/a")


if __name__ == "__main__":
    unittest.main()
