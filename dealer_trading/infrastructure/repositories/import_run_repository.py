from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from dealer_trading.db import to_db_timestamp
from dealer_trading.infrastructure.repositories.base import BaseRepository


class ImportRunRepository(BaseRepository):
    def start(self, db, *, location_id: str, mode: str, records_in: int, now: datetime) -> int:
        cursor = db.execute(
            """
            INSERT INTO import_runs (location_id, mode, status, records_in, started_at)
            VALUES (?, ?, 'running', ?, ?)
            RETURNING id
            """,
            (location_id, mode, int(records_in), to_db_timestamp(now)),
        )
        return self.inserted_id(cursor)

    def finish(
        self,
        db,
        run_id: int,
        *,
        status: str,
        now: datetime,
        counts: Dict[str, int] | None = None,
        errors: List[Dict[str, Any]] | None = None,
        error_summary: str | None = None,
    ) -> None:
        counts = counts or {}
        db.execute(
            """
            UPDATE import_runs
            SET status = ?, created_count = ?, updated_count = ?, soft_deleted_count = ?,
                restored_count = ?, permanently_deleted_count = ?, skipped_protected_count = ?,
                error_count = ?, errors = ?, error_summary = ?, finished_at = ?
            WHERE id = ?
            """,
            (
                status,
                int(counts.get("create", 0)),
                int(counts.get("update", 0)),
                int(counts.get("soft_delete", 0)),
                int(counts.get("restore", 0)),
                int(counts.get("permanent_delete", 0)),
                int(counts.get("skip_protected", 0)),
                len(errors or []),
                self.dump_json(errors or []),
                error_summary,
                to_db_timestamp(now),
                int(run_id),
            ),
        )

    def get(self, db, run_id: int) -> dict | None:
        row = db.execute("SELECT * FROM import_runs WHERE id = ?", (int(run_id),)).fetchone()
        return self._decode(self.row_to_dict(row)) if row else None

    def list_for_location(self, db, location_id: str, *, limit: int = 20) -> List[dict]:
        rows = db.execute(
            """
            SELECT * FROM import_runs
            WHERE location_id = ?
            ORDER BY started_at DESC, id DESC
            LIMIT ?
            """,
            (location_id, int(limit)),
        ).fetchall()
        return [self._decode(row) for row in self.rows_to_dicts(rows)]

    def _decode(self, row: dict) -> dict:
        row["errors"] = self.load_json(row.get("errors"), default=[])
        for key in ("started_at", "finished_at"):
            if isinstance(row.get(key), datetime):
                row[key] = to_db_timestamp(row[key])
        return row
