from __future__ import annotations

from flask import Flask, current_app

from dealer_trading.application.reconciliation_service import Reconciler
from dealer_trading.application.transfer_service import TransferWorkflow
from dealer_trading.core.event_bus import EventBus, get_event_bus
from dealer_trading.feeds.base import FeedSnapshotSource
from dealer_trading.feeds.csv_feed import CsvDirectoryFeedSource


def _app(app: Flask | None) -> Flask:
    return app if app is not None else current_app._get_current_object()


def event_bus_for(app: Flask | None = None) -> EventBus:
    return _app(app).extensions.get("event_bus") or get_event_bus()


def feed_source_for(app: Flask | None = None) -> FeedSnapshotSource:
    resolved = _app(app)
    configured = resolved.extensions.get("feed_source")
    if configured is not None:
        return configured
    return CsvDirectoryFeedSource(resolved.config["FEED_DIRECTORY"])


def reconciler_for(app: Flask | None = None) -> Reconciler:
    resolved = _app(app)
    return Reconciler(
        feed_source_for(resolved),
        retention_days=resolved.config.get("REMOVED_RETENTION_DAYS", 30),
        event_bus=event_bus_for(resolved),
    )


def transfer_workflow_for(app: Flask | None = None) -> TransferWorkflow:
    return TransferWorkflow(event_bus=event_bus_for(app))
