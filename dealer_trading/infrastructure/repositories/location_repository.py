from __future__ import annotations

from typing import List

from dealer_trading.infrastructure.repositories.base import BaseRepository


class LocationRepository(BaseRepository):
    def get(self, db, location_id: str) -> dict | None:
        row = db.execute("SELECT * FROM locations WHERE id = ?", (location_id,)).fetchone()
        return self.row_to_dict(row)

    def list_active(self, db) -> List[dict]:
        rows = db.execute("SELECT * FROM locations WHERE active = ? ORDER BY id", (True,)).fetchall()
        return self.rows_to_dicts(rows)

    def upsert(
        self,
        db,
        *,
        location_id: str,
        name: str,
        code: str | None = None,
        csv_file_name: str | None = None,
        active: bool = True,
    ) -> None:
        db.execute(
            """
            INSERT INTO locations (id, name, code, csv_file_name, active)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                code = excluded.code,
                csv_file_name = excluded.csv_file_name,
                active = excluded.active,
                updated_at = CURRENT_TIMESTAMP
            """,
            (location_id, name, code, csv_file_name, bool(active)),
        )
