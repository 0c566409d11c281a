from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List

from dealer_trading.db import to_db_timestamp
from dealer_trading.domain.transfer_flow import OPEN_STATUSES
from dealer_trading.infrastructure.repositories.base import BaseRepository


# Timestamp column stamped when a transfer enters each status.
_STATUS_TIMESTAMP_COLUMNS = {
    "approved": "approved_at",
    "in-transit": "in_transit_at",
    "delivered": "delivered_at",
    "rejected": "rejected_at",
    "cancelled": "cancelled_at",
}


class TransferRepository(BaseRepository):
    def get(self, db, transfer_id: int, *, for_update: bool = False) -> dict | None:
        row = db.execute(
            f"SELECT * FROM transfers WHERE id = ?{db.for_update() if for_update else ''}",
            (int(transfer_id),),
        ).fetchone()
        return self.row_to_dict(row)

    def list_for_vehicle(self, db, vehicle_id: int) -> List[dict]:
        rows = db.execute(
            "SELECT * FROM transfers WHERE vehicle_id = ? ORDER BY requested_at DESC, id DESC",
            (int(vehicle_id),),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def count_requested(self, db, vehicle_id: int) -> int:
        row = db.execute(
            "SELECT COUNT(*) AS total FROM transfers WHERE vehicle_id = ? AND status = 'requested'",
            (int(vehicle_id),),
        ).fetchone()
        return int(row["total"] if row else 0)

    def find_open_request(self, db, vehicle_id: int, to_location_id: str) -> dict | None:
        row = db.execute(
            """
            SELECT * FROM transfers
            WHERE vehicle_id = ? AND to_location_id = ? AND status = 'requested'
            LIMIT 1
            """,
            (int(vehicle_id), to_location_id),
        ).fetchone()
        return self.row_to_dict(row)

    def protected_vehicle_ids(self, db, vehicle_ids: Iterable[int]) -> set[int]:
        protected: set[int] = set()
        status_marks = self.placeholders(len(OPEN_STATUSES))
        for chunk in self.chunked(sorted({int(value) for value in vehicle_ids})):
            rows = db.execute(
                f"""
                SELECT DISTINCT vehicle_id FROM transfers
                WHERE status IN ({status_marks}) AND vehicle_id IN ({self.placeholders(len(chunk))})
                """,
                (*OPEN_STATUSES, *chunk),
            ).fetchall()
            protected.update(int(row["vehicle_id"]) for row in rows)
        return protected

    def insert(
        self,
        db,
        *,
        vehicle_id: int,
        from_location_id: str,
        to_location_id: str,
        requested_by_id: str,
        reason: str | None,
        customer_waiting: bool,
        priority: bool,
        expected_pickup_date: str | None,
        competing_requests_count: int,
        now: datetime,
    ) -> int:
        stamp = to_db_timestamp(now)
        cursor = db.execute(
            """
            INSERT INTO transfers (
                vehicle_id, from_location_id, to_location_id, requested_by_id, status,
                reason, customer_waiting, priority, expected_pickup_date,
                competing_requests_count, requested_at, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, 'requested', ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                int(vehicle_id),
                from_location_id,
                to_location_id,
                requested_by_id,
                reason,
                bool(customer_waiting),
                bool(priority),
                expected_pickup_date,
                int(competing_requests_count),
                stamp,
                stamp,
                stamp,
            ),
        )
        return self.inserted_id(cursor)

    def approve(self, db, transfer_id: int, actor_id: str, now: datetime) -> int:
        stamp = to_db_timestamp(now)
        cursor = db.execute(
            """
            UPDATE transfers
            SET status = 'approved', approved_by_id = ?, approved_at = ?, updated_at = ?
            WHERE id = ? AND status = 'requested'
            """,
            (actor_id, stamp, stamp, int(transfer_id)),
        )
        return int(cursor.rowcount or 0)

    def requested_sibling_ids(self, db, vehicle_id: int, exclude_transfer_id: int) -> List[int]:
        rows = db.execute(
            """
            SELECT id FROM transfers
            WHERE vehicle_id = ? AND id <> ? AND status = 'requested'
            ORDER BY id
            """,
            (int(vehicle_id), int(exclude_transfer_id)),
        ).fetchall()
        return [int(row["id"]) for row in rows]

    def auto_reject(
        self,
        db,
        transfer_ids: List[int],
        *,
        winner_transfer_id: int,
        actor_id: str,
        reason: str,
        now: datetime,
    ) -> int:
        if not transfer_ids:
            return 0
        stamp = to_db_timestamp(now)
        affected = 0
        for chunk in self.chunked(transfer_ids):
            cursor = db.execute(
                f"""
                UPDATE transfers
                SET status = 'rejected', rejected_by_id = ?, rejected_at = ?, rejection_reason = ?,
                    superseded_by_transfer_id = ?, updated_at = ?
                WHERE status = 'requested' AND id IN ({self.placeholders(len(chunk))})
                """,
                (actor_id, stamp, reason, int(winner_transfer_id), stamp, *chunk),
            )
            affected += int(cursor.rowcount or 0)
        return affected

    def reject(self, db, transfer_id: int, actor_id: str, reason: str, now: datetime) -> int:
        stamp = to_db_timestamp(now)
        cursor = db.execute(
            """
            UPDATE transfers
            SET status = 'rejected', rejected_by_id = ?, rejected_at = ?, rejection_reason = ?, updated_at = ?
            WHERE id = ? AND status = 'requested'
            """,
            (actor_id, stamp, reason, stamp, int(transfer_id)),
        )
        return int(cursor.rowcount or 0)

    def cancel(
        self,
        db,
        transfer_id: int,
        *,
        from_status: str,
        actor_id: str,
        reason: str | None,
        now: datetime,
    ) -> int:
        stamp = to_db_timestamp(now)
        cursor = db.execute(
            """
            UPDATE transfers
            SET status = 'cancelled', cancelled_by_id = ?, cancelled_at = ?, cancellation_reason = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (actor_id, stamp, reason, stamp, int(transfer_id), from_status),
        )
        return int(cursor.rowcount or 0)

    def advance(self, db, transfer_id: int, *, from_status: str, to_status: str, now: datetime) -> int:
        column = _STATUS_TIMESTAMP_COLUMNS[to_status]
        stamp = to_db_timestamp(now)
        cursor = db.execute(
            f"UPDATE transfers SET status = ?, {column} = ?, updated_at = ? WHERE id = ? AND status = ?",
            (to_status, stamp, stamp, int(transfer_id), from_status),
        )
        return int(cursor.rowcount or 0)

    @classmethod
    def serialize(cls, row: dict | None) -> dict[str, Any] | None:
        payload = cls.serialize_row(row)
        if payload is None:
            return None
        for key in ("customer_waiting", "priority"):
            payload[key] = bool(payload.get(key))
        return payload
