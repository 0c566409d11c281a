from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from dealer_trading.db import to_db_timestamp
from dealer_trading.feeds.base import FeedSnapshot, FeedVehicleRecord
from dealer_trading.infrastructure.repositories import LocationRepository, TransferRepository, VehicleRepository


NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


def vin(suffix: int | str) -> str:
    text = str(suffix).upper()
    return ("1HGCM82633A" + "0" * 17)[: 17 - len(text)] + text


def record(vin_value: str, **overrides: Any) -> FeedVehicleRecord:
    values = {
        "vin": vin_value,
        "stock_number": f"S-{vin_value[-4:]}",
        "year": 2021,
        "make": "Honda",
        "model": "Accord",
        "price": 21500.0,
        "mileage": 30000,
        "condition": "used",
    }
    values.update(overrides)
    return FeedVehicleRecord(**values)


def snapshot(location_id: str, *records: FeedVehicleRecord) -> FeedSnapshot:
    return FeedSnapshot.from_records(location_id, records)


def seed_locations(db, *location_ids: str) -> None:
    locations = LocationRepository()
    with db.transaction():
        for location_id in location_ids:
            locations.upsert(
                db,
                location_id=location_id,
                name=f"Dealer {location_id}",
                code=location_id.upper(),
                csv_file_name=f"{location_id}.csv",
            )


def seed_vehicle(
    db,
    vin_value: str,
    location_id: str,
    *,
    status: str = "available",
    current_transfer_id: int | None = None,
    removed_at: datetime | None = None,
    original_location_id: str | None = None,
    now: datetime = NOW,
    **attributes: Any,
) -> int:
    """Insert a vehicle row directly, bypassing reconciliation."""
    base = record(vin_value).attributes()
    base.update(attributes)
    with db.transaction():
        vehicle_id = VehicleRepository().insert(db, location_id=location_id, vin=vin_value, attributes=base, now=now)
        db.execute(
            """
            UPDATE vehicles
            SET status = ?, current_transfer_id = ?, removed_from_feed_at = ?, original_location_id = ?
            WHERE id = ?
            """,
            (
                status,
                current_transfer_id,
                to_db_timestamp(removed_at),
                original_location_id or location_id,
                vehicle_id,
            ),
        )
    return vehicle_id


def seed_transfer(
    db,
    vehicle_id: int,
    from_location_id: str,
    to_location_id: str,
    *,
    status: str = "requested",
    requested_by_id: str = "seed-user",
    now: datetime = NOW,
    delivered_at: datetime | None = None,
) -> int:
    with db.transaction():
        transfer_id = TransferRepository().insert(
            db,
            vehicle_id=vehicle_id,
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            requested_by_id=requested_by_id,
            reason=None,
            customer_waiting=False,
            priority=False,
            expected_pickup_date=None,
            competing_requests_count=0,
            now=now,
        )
        if status != "requested" or delivered_at is not None:
            db.execute(
                "UPDATE transfers SET status = ?, delivered_at = ? WHERE id = ?",
                (status, to_db_timestamp(delivered_at), transfer_id),
            )
    return transfer_id


def fetch_vehicle(db, vehicle_id: int) -> dict | None:
    return VehicleRepository().get(db, vehicle_id)


def fetch_transfer(db, transfer_id: int) -> dict | None:
    return TransferRepository().get(db, transfer_id)


def count_rows(db, table: str) -> int:
    row = db.execute(f"SELECT COUNT(*) AS total FROM {table}").fetchone()
    return int(row["total"])


def table_fingerprint(db) -> dict:
    """Every row of every mutable table; equal fingerprints mean nothing was written."""
    fingerprint = {}
    for table in ("vehicles", "transfers", "activities", "import_runs"):
        rows = db.execute(f"SELECT * FROM {table} ORDER BY id").fetchall()
        fingerprint[table] = [tuple(dict(row).items()) for row in rows]
    return fingerprint
