from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping

from dealer_trading.db import to_db_timestamp
from dealer_trading.domain.vehicle_attributes import TRACKED_ATTRIBUTES
from dealer_trading.infrastructure.repositories.base import BaseRepository


class VehicleRepository(BaseRepository):
    """Vehicle rows. Conditional updates return the affected row count."""

    def get(self, db, vehicle_id: int, *, for_update: bool = False) -> dict | None:
        row = db.execute(
            f"SELECT * FROM vehicles WHERE id = ?{db.for_update() if for_update else ''}",
            (int(vehicle_id),),
        ).fetchone()
        return self.row_to_dict(row)

    def get_by_vin(self, db, vin: str) -> dict | None:
        row = db.execute("SELECT * FROM vehicles WHERE vin = ?", (vin,)).fetchone()
        return self.row_to_dict(row)

    def list_for_location(self, db, location_id: str, *, for_update: bool = False) -> List[dict]:
        rows = db.execute(
            f"SELECT * FROM vehicles WHERE location_id = ? ORDER BY vin{db.for_update() if for_update else ''}",
            (location_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def list_by_vins(
        self,
        db,
        vins: Iterable[str],
        *,
        exclude_location_id: str | None = None,
        for_update: bool = False,
    ) -> List[dict]:
        found: List[dict] = []
        for chunk in self.chunked(sorted(set(vins))):
            query = f"SELECT * FROM vehicles WHERE vin IN ({self.placeholders(len(chunk))})"
            params: List[Any] = list(chunk)
            if exclude_location_id is not None:
                query += " AND location_id <> ?"
                params.append(exclude_location_id)
            query += " ORDER BY vin"
            if for_update:
                query += db.for_update()
            found.extend(self.rows_to_dicts(db.execute(query, params).fetchall()))
        return found

    def insert(self, db, *, location_id: str, vin: str, attributes: Mapping[str, Any], now: datetime) -> int:
        columns = ["vin", *TRACKED_ATTRIBUTES, "status", "location_id", "original_location_id", "created_at", "updated_at"]
        stamp = to_db_timestamp(now)
        values = [
            vin,
            *(attributes.get(name) for name in TRACKED_ATTRIBUTES),
            "available",
            location_id,
            location_id,
            stamp,
            stamp,
        ]
        cursor = db.execute(
            f"""
            INSERT INTO vehicles ({", ".join(columns)})
            VALUES ({self.placeholders(len(columns))})
            RETURNING id
            """,
            values,
        )
        return self.inserted_id(cursor)

    @staticmethod
    def _attribute_assignments(attributes: Mapping[str, Any]) -> tuple[List[str], List[Any]]:
        names = [name for name in TRACKED_ATTRIBUTES if name in attributes]
        return [f"{name} = ?" for name in names], [attributes[name] for name in names]

    def update_attributes(self, db, vehicle_id: int, attributes: Mapping[str, Any], now: datetime) -> int:
        assignments, params = self._attribute_assignments(attributes)
        if not assignments:
            return 0
        cursor = db.execute(
            f"UPDATE vehicles SET {', '.join(assignments)}, updated_at = ? WHERE id = ?",
            (*params, to_db_timestamp(now), int(vehicle_id)),
        )
        return int(cursor.rowcount or 0)

    def relocate(
        self,
        db,
        vehicle_id: int,
        location_id: str,
        attributes: Mapping[str, Any],
        now: datetime,
    ) -> int:
        assignments, params = self._attribute_assignments(attributes)
        assignments = [*assignments, "location_id = ?", "status = 'available'", "removed_from_feed_at = NULL"]
        cursor = db.execute(
            f"""
            UPDATE vehicles SET {', '.join(assignments)}, updated_at = ?
            WHERE id = ? AND current_transfer_id IS NULL
            """,
            (*params, location_id, to_db_timestamp(now), int(vehicle_id)),
        )
        return int(cursor.rowcount or 0)

    def soft_delete(self, db, vehicle_id: int, now: datetime) -> int:
        stamp = to_db_timestamp(now)
        cursor = db.execute(
            """
            UPDATE vehicles
            SET status = 'removed', removed_from_feed_at = ?, updated_at = ?
            WHERE id = ? AND current_transfer_id IS NULL
            """,
            (stamp, stamp, int(vehicle_id)),
        )
        return int(cursor.rowcount or 0)

    def restore(self, db, vehicle_id: int, attributes: Mapping[str, Any], now: datetime) -> int:
        assignments, params = self._attribute_assignments(attributes)
        assignments = [*assignments, "status = 'available'", "removed_from_feed_at = NULL"]
        cursor = db.execute(
            f"""
            UPDATE vehicles SET {', '.join(assignments)}, updated_at = ?
            WHERE id = ? AND status = 'removed' AND current_transfer_id IS NULL
            """,
            (*params, to_db_timestamp(now), int(vehicle_id)),
        )
        return int(cursor.rowcount or 0)

    def delete_removed(self, db, vehicle_id: int) -> int:
        cursor = db.execute(
            "DELETE FROM vehicles WHERE id = ? AND status = 'removed' AND current_transfer_id IS NULL",
            (int(vehicle_id),),
        )
        return int(cursor.rowcount or 0)

    def claim(self, db, vehicle_id: int, transfer_id: int, now: datetime) -> int:
        cursor = db.execute(
            """
            UPDATE vehicles
            SET status = 'claimed', current_transfer_id = ?, updated_at = ?
            WHERE id = ? AND status = 'available' AND current_transfer_id IS NULL
            """,
            (int(transfer_id), to_db_timestamp(now), int(vehicle_id)),
        )
        return int(cursor.rowcount or 0)

    def follow_transfer(
        self,
        db,
        vehicle_id: int,
        transfer_id: int,
        status: str,
        now: datetime,
        *,
        location_id: str | None = None,
    ) -> int:
        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [status, to_db_timestamp(now)]
        if location_id is not None:
            assignments.append("location_id = ?")
            params.append(location_id)
        cursor = db.execute(
            f"UPDATE vehicles SET {', '.join(assignments)} WHERE id = ? AND current_transfer_id = ?",
            (*params, int(vehicle_id), int(transfer_id)),
        )
        return int(cursor.rowcount or 0)

    def release(self, db, vehicle_id: int, transfer_id: int, now: datetime) -> int:
        cursor = db.execute(
            """
            UPDATE vehicles
            SET status = 'available', current_transfer_id = NULL, updated_at = ?
            WHERE id = ? AND current_transfer_id = ?
            """,
            (to_db_timestamp(now), int(vehicle_id), int(transfer_id)),
        )
        return int(cursor.rowcount or 0)

    def list_delivered_with_transfer(self, db, *, for_update: bool = False) -> List[Dict[str, Any]]:
        # FOR UPDATE on a join would also lock transfer rows; lock vehicles only.
        lock = " FOR UPDATE OF v" if for_update and db.backend == "postgres" else ""
        rows = db.execute(
            f"""
            SELECT v.*, t.delivered_at AS transfer_delivered_at
            FROM vehicles v
            JOIN transfers t ON t.id = v.current_transfer_id
            WHERE v.status = 'delivered' AND t.status = 'delivered'
            ORDER BY v.id{lock}
            """
        ).fetchall()
        return self.rows_to_dicts(rows)
