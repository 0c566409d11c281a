from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from dealer_trading.db import to_db_timestamp
from dealer_trading.infrastructure.repositories.base import BaseRepository


class ActivityRepository(BaseRepository):
    """Append-only audit trail; rows are written inside the caller's transaction."""

    def record(
        self,
        db,
        *,
        action: str,
        user_id: str,
        now: datetime,
        vehicle_id: int | None = None,
        transfer_id: int | None = None,
        location_id: str | None = None,
        details: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO activities (vehicle_id, transfer_id, location_id, user_id, action, details, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                vehicle_id,
                transfer_id,
                location_id,
                user_id,
                action,
                details,
                self.dump_json(metadata or {}),
                to_db_timestamp(now),
            ),
        )
        return self.inserted_id(cursor)

    def list_for_vehicle(self, db, vehicle_id: int, *, limit: int = 200) -> List[dict]:
        rows = db.execute(
            """
            SELECT * FROM activities
            WHERE vehicle_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (int(vehicle_id), int(limit)),
        ).fetchall()
        return [self._decode(row) for row in self.rows_to_dicts(rows)]

    def list_for_transfer(self, db, transfer_id: int) -> List[dict]:
        rows = db.execute(
            "SELECT * FROM activities WHERE transfer_id = ? ORDER BY id",
            (int(transfer_id),),
        ).fetchall()
        return [self._decode(row) for row in self.rows_to_dicts(rows)]

    def _decode(self, row: dict) -> dict:
        row["metadata"] = self.load_json(row.get("metadata"), default={})
        created_at = row.get("created_at")
        if isinstance(created_at, datetime):
            row["created_at"] = to_db_timestamp(created_at)
        return row
