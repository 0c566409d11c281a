from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from typing import Callable, Dict

from flask import Flask

from dealer_trading.application.services import reconciler_for, transfer_workflow_for
from dealer_trading.db import DB_ERRORS, close_db, get_db
from dealer_trading.domain.contracts import MODE_APPLY
from dealer_trading.errors import DataSourceUnavailableError
from dealer_trading.infrastructure.repositories import LocationRepository
from dealer_trading.observability import bind_request_id


logger = logging.getLogger("dealer_trading.scheduler")


class ImportScheduler:
    def __init__(self, app: Flask, *, monotonic: Callable[[], float] = time.monotonic) -> None:
        self.app = app
        self.interval_seconds = _int_config(app, "IMPORT_SCHEDULER_INTERVAL_SECONDS", 3600, 10, 86_400)
        self.min_backoff_seconds = _int_config(app, "IMPORT_SCHEDULER_MIN_BACKOFF_SECONDS", 60, 5, 3600)
        self.max_backoff_seconds = _int_config(
            app,
            "IMPORT_SCHEDULER_MAX_BACKOFF_SECONDS",
            3600,
            self.min_backoff_seconds,
            86_400,
        )
        self.delivered_reset_days = _int_config(app, "DELIVERED_RESET_DAYS", 3, 0, 365)
        self._monotonic = monotonic

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._failure_counts: Dict[str, int] = {}
        self._next_run_at: Dict[str, float] = {}

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run_loop, name="import-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("import_scheduler_cycle_failed")
            self._stop_event.wait(self.interval_seconds)

    def run_once(self) -> Dict[str, str]:
        """Run one import cycle; returns the outcome per location id."""
        outcomes: Dict[str, str] = {}
        with self.app.app_context(), bind_request_id(f"import-cycle-{uuid.uuid4().hex[:12]}"):
            db = get_db()
            try:
                reconciler = reconciler_for(self.app)
                for location in LocationRepository().list_active(db):
                    location_id = str(location["id"])
                    outcomes[location_id] = self._run_location(db, reconciler, location_id)
                reset_ids = transfer_workflow_for(self.app).reset_stale_delivered(db, self.delivered_reset_days)
                if reset_ids:
                    logger.info("import_cycle_delivered_reset", extra={"vehicle_count": len(reset_ids)})
            finally:
                close_db()
        return outcomes

    def _run_location(self, db, reconciler, location_id: str) -> str:
        if not self._is_due(location_id):
            return "backoff"
        try:
            plan = reconciler.reconcile_location(db, location_id, MODE_APPLY)
        except (DataSourceUnavailableError, *DB_ERRORS) as exc:
            self._register_failure(location_id)
            logger.warning(
                "import_location_failed",
                extra={
                    "location_id": location_id,
                    "failure_count": self._failure_counts.get(location_id, 0),
                    "details": str(exc),
                },
            )
            return "failed"
        except Exception:  # noqa: BLE001
            self._register_failure(location_id)
            logger.exception(
                "import_location_crashed",
                extra={
                    "location_id": location_id,
                    "failure_count": self._failure_counts.get(location_id, 0),
                },
            )
            return "failed"
        self._clear_backoff(location_id)
        return "partial" if plan.errors else "succeeded"

    def _is_due(self, key: str) -> bool:
        next_run_at = self._next_run_at.get(key)
        if next_run_at is None:
            return True
        return self._monotonic() >= next_run_at

    def _clear_backoff(self, key: str) -> None:
        self._failure_counts.pop(key, None)
        self._next_run_at.pop(key, None)

    def _register_failure(self, key: str) -> None:
        failure_count = self._failure_counts.get(key, 0) + 1
        self._failure_counts[key] = failure_count
        backoff_seconds = min(
            self.max_backoff_seconds,
            self.min_backoff_seconds * (2 ** (failure_count - 1)),
        )
        self._next_run_at[key] = self._monotonic() + backoff_seconds

    def backoff_seconds_remaining(self, key: str) -> float:
        next_run_at = self._next_run_at.get(key)
        if next_run_at is None:
            return 0.0
        return max(0.0, next_run_at - self._monotonic())


def start_import_scheduler(app: Flask) -> ImportScheduler | None:
    if not _should_start_scheduler(app):
        return None
    scheduler = ImportScheduler(app)
    scheduler.start()
    app.extensions["import_scheduler"] = scheduler
    app.logger.info("Import scheduler started: interval=%ss", scheduler.interval_seconds)
    return scheduler


def _should_start_scheduler(app: Flask) -> bool:
    if not app.config.get("IMPORT_SCHEDULER_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))
