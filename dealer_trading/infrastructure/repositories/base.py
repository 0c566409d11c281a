from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Iterator, List, Sequence

from dealer_trading.db import to_db_timestamp


class BaseRepository:
    # Keeps IN (...) lists under the sqlite bound-parameter limit.
    max_in_params = 500

    @staticmethod
    def rows_to_dicts(rows: Iterable[Any]) -> list[dict]:
        return [dict(row) for row in rows]

    @staticmethod
    def row_to_dict(row: Any) -> dict | None:
        if row is None:
            return None
        return dict(row)

    @staticmethod
    def inserted_id(cursor) -> int:
        row = cursor.fetchone()
        return int(row["id"] if isinstance(row, dict) else row[0])

    @staticmethod
    def placeholders(count: int) -> str:
        return ", ".join("?" for _ in range(max(0, int(count))))

    @classmethod
    def chunked(cls, values: Sequence[Any]) -> Iterator[List[Any]]:
        items = list(values)
        for start in range(0, len(items), cls.max_in_params):
            yield items[start : start + cls.max_in_params]

    @staticmethod
    def dump_json(value: Any) -> str:
        return json.dumps(value if value is not None else {}, ensure_ascii=True, default=str, sort_keys=True)

    @staticmethod
    def load_json(value: Any, default: Any = None) -> Any:
        if value is None or value == "":
            return default
        if isinstance(value, (dict, list)):
            return value
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return default

    @staticmethod
    def serialize_row(row: dict | None) -> dict | None:
        if row is None:
            return None
        payload = dict(row)
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = to_db_timestamp(value)
            elif isinstance(value, Decimal):
                payload[key] = float(value)
        return payload
