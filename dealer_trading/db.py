import contextlib
import sqlite3
from datetime import datetime, timezone
from typing import Iterable, Iterator, List

import psycopg2
import psycopg2.extras
from flask import current_app, g


# Driver errors that a single statement may raise; callers collect these per vehicle.
DB_ERRORS = (sqlite3.Error, psycopg2.Error)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_db_timestamp(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value).strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection
        self._tx_depth = 0
        self._savepoint_seq = 0

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def executescript(self, sql: str):
        if self.backend != "postgres":
            return self._conn.executescript(sql)
        for statement in _split_sql_statements(sql):
            if statement.strip():
                self.execute(statement)

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    def for_update(self) -> str:
        """Row lock suffix for SELECT statements; sqlite already holds the write lock."""
        return " FOR UPDATE" if self.backend == "postgres" else ""

    @contextlib.contextmanager
    def transaction(self) -> Iterator["Database"]:
        if self._tx_depth:
            with self.savepoint():
                yield self
            return

        # BEGIN IMMEDIATE takes the sqlite write lock up front so that
        # concurrent writers serialize before their first read.
        self.execute("BEGIN IMMEDIATE" if self.backend == "sqlite" else "BEGIN")
        self._tx_depth = 1
        try:
            yield self
        except BaseException:
            self._tx_depth = 0
            self.execute("ROLLBACK")
            raise
        self._tx_depth = 0
        self.execute("COMMIT")

    @contextlib.contextmanager
    def savepoint(self) -> Iterator["Database"]:
        self._savepoint_seq += 1
        name = f"sp_{self._savepoint_seq}"
        self.execute(f"SAVEPOINT {name}")
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            self.execute(f"ROLLBACK TO SAVEPOINT {name}")
            self.execute(f"RELEASE SAVEPOINT {name}")
            raise
        self._tx_depth -= 1
        self.execute(f"RELEASE SAVEPOINT {name}")

    def commit(self):
        self._conn.commit()

    def close(self):
        self._conn.close()


def _split_sql_statements(sql: str) -> List[str]:
    statements = []
    current = []
    in_single = False
    for ch in sql:
        if ch == "'":
            in_single = not in_single
        if ch == ";" and not in_single:
            statements.append("".join(current))
            current = []
            continue
        current.append(ch)
    if current:
        statements.append("".join(current))
    return statements


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        conn = psycopg2.connect(db_path)
        # Transactions are opened explicitly through Database.transaction().
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db(db: Database | None = None):
    db = db or get_db()
    if db.backend == "postgres":
        _init_db_postgres(db)
        return

    _init_db_sqlite(db)


def _init_db_sqlite(db: Database):
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS locations (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            code TEXT UNIQUE,
            csv_file_name TEXT,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS vehicles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            vin TEXT NOT NULL UNIQUE,
            stock_number TEXT,
            year INTEGER,
            make TEXT,
            model TEXT,
            trim TEXT,
            title TEXT,
            price REAL,
            msrp REAL,
            mileage INTEGER,
            condition TEXT,
            exterior_color TEXT,
            body_style TEXT,
            feed_status TEXT,
            status TEXT NOT NULL DEFAULT 'available' CHECK (
                status IN ('available','claimed','in-transit','delivered','removed')
            ),
            location_id TEXT NOT NULL,
            original_location_id TEXT NOT NULL,
            current_transfer_id INTEGER,
            removed_from_feed_at TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    db.execute("CREATE INDEX IF NOT EXISTS ix_vehicles_location_status ON vehicles (location_id, status)")
    db.execute("CREATE INDEX IF NOT EXISTS ix_vehicles_location_stock ON vehicles (location_id, stock_number)")

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS transfers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            vehicle_id INTEGER NOT NULL,
            from_location_id TEXT NOT NULL,
            to_location_id TEXT NOT NULL,
            requested_by_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'requested' CHECK (
                status IN ('requested','approved','in-transit','delivered','cancelled','rejected')
            ),
            reason TEXT,
            customer_waiting INTEGER NOT NULL DEFAULT 0,
            priority INTEGER NOT NULL DEFAULT 0,
            expected_pickup_date TEXT,
            competing_requests_count INTEGER NOT NULL DEFAULT 0,
            requested_at TEXT NOT NULL,
            approved_by_id TEXT,
            approved_at TEXT,
            in_transit_at TEXT,
            delivered_at TEXT,
            rejected_by_id TEXT,
            rejected_at TEXT,
            rejection_reason TEXT,
            superseded_by_transfer_id INTEGER,
            cancelled_by_id TEXT,
            cancelled_at TEXT,
            cancellation_reason TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    db.execute("CREATE INDEX IF NOT EXISTS ix_transfers_vehicle_status ON transfers (vehicle_id, status)")
    db.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_transfers_vehicle_active
        ON transfers (vehicle_id) WHERE status IN ('approved','in-transit')
        """
    )
    db.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_transfers_open_request
        ON transfers (vehicle_id, to_location_id) WHERE status = 'requested'
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS activities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            vehicle_id INTEGER,
            transfer_id INTEGER,
            location_id TEXT,
            user_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details TEXT,
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        )
        """
    )
    db.execute("CREATE INDEX IF NOT EXISTS ix_activities_vehicle ON activities (vehicle_id, created_at)")

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS import_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            location_id TEXT NOT NULL,
            mode TEXT NOT NULL DEFAULT 'apply',
            status TEXT NOT NULL DEFAULT 'running' CHECK (
                status IN ('running','succeeded','partial','failed')
            ),
            records_in INTEGER NOT NULL DEFAULT 0,
            created_count INTEGER NOT NULL DEFAULT 0,
            updated_count INTEGER NOT NULL DEFAULT 0,
            soft_deleted_count INTEGER NOT NULL DEFAULT 0,
            restored_count INTEGER NOT NULL DEFAULT 0,
            permanently_deleted_count INTEGER NOT NULL DEFAULT 0,
            skipped_protected_count INTEGER NOT NULL DEFAULT 0,
            error_count INTEGER NOT NULL DEFAULT 0,
            errors TEXT NOT NULL DEFAULT '[]',
            error_summary TEXT,
            started_at TEXT NOT NULL,
            finished_at TEXT
        )
        """
    )
    db.execute("CREATE INDEX IF NOT EXISTS ix_import_runs_location ON import_runs (location_id, started_at)")


def _init_db_postgres(db: Database) -> None:
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS locations (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            code TEXT UNIQUE,
            csv_file_name TEXT,
            active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS vehicles (
            id BIGSERIAL PRIMARY KEY,
            vin TEXT NOT NULL UNIQUE,
            stock_number TEXT,
            year INTEGER,
            make TEXT,
            model TEXT,
            trim TEXT,
            title TEXT,
            price NUMERIC(12, 2),
            msrp NUMERIC(12, 2),
            mileage INTEGER,
            condition TEXT,
            exterior_color TEXT,
            body_style TEXT,
            feed_status TEXT,
            status TEXT NOT NULL DEFAULT 'available' CHECK (
                status IN ('available','claimed','in-transit','delivered','removed')
            ),
            location_id TEXT NOT NULL,
            original_location_id TEXT NOT NULL,
            current_transfer_id BIGINT,
            removed_from_feed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    db.execute("CREATE INDEX IF NOT EXISTS ix_vehicles_location_status ON vehicles (location_id, status)")
    db.execute("CREATE INDEX IF NOT EXISTS ix_vehicles_location_stock ON vehicles (location_id, stock_number)")

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS transfers (
            id BIGSERIAL PRIMARY KEY,
            vehicle_id BIGINT NOT NULL,
            from_location_id TEXT NOT NULL,
            to_location_id TEXT NOT NULL,
            requested_by_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'requested' CHECK (
                status IN ('requested','approved','in-transit','delivered','cancelled','rejected')
            ),
            reason TEXT,
            customer_waiting BOOLEAN NOT NULL DEFAULT FALSE,
            priority BOOLEAN NOT NULL DEFAULT FALSE,
            expected_pickup_date TEXT,
            competing_requests_count INTEGER NOT NULL DEFAULT 0,
            requested_at TIMESTAMPTZ NOT NULL,
            approved_by_id TEXT,
            approved_at TIMESTAMPTZ,
            in_transit_at TIMESTAMPTZ,
            delivered_at TIMESTAMPTZ,
            rejected_by_id TEXT,
            rejected_at TIMESTAMPTZ,
            rejection_reason TEXT,
            superseded_by_transfer_id BIGINT,
            cancelled_by_id TEXT,
            cancelled_at TIMESTAMPTZ,
            cancellation_reason TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    db.execute("CREATE INDEX IF NOT EXISTS ix_transfers_vehicle_status ON transfers (vehicle_id, status)")
    db.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_transfers_vehicle_active
        ON transfers (vehicle_id) WHERE status IN ('approved','in-transit')
        """
    )
    db.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_transfers_open_request
        ON transfers (vehicle_id, to_location_id) WHERE status = 'requested'
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS activities (
            id BIGSERIAL PRIMARY KEY,
            vehicle_id BIGINT,
            transfer_id BIGINT,
            location_id TEXT,
            user_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details TEXT,
            metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL
        )
        """
    )
    db.execute("CREATE INDEX IF NOT EXISTS ix_activities_vehicle ON activities (vehicle_id, created_at)")

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS import_runs (
            id BIGSERIAL PRIMARY KEY,
            location_id TEXT NOT NULL,
            mode TEXT NOT NULL DEFAULT 'apply',
            status TEXT NOT NULL DEFAULT 'running' CHECK (
                status IN ('running','succeeded','partial','failed')
            ),
            records_in INTEGER NOT NULL DEFAULT 0,
            created_count INTEGER NOT NULL DEFAULT 0,
            updated_count INTEGER NOT NULL DEFAULT 0,
            soft_deleted_count INTEGER NOT NULL DEFAULT 0,
            restored_count INTEGER NOT NULL DEFAULT 0,
            permanently_deleted_count INTEGER NOT NULL DEFAULT 0,
            skipped_protected_count INTEGER NOT NULL DEFAULT 0,
            error_count INTEGER NOT NULL DEFAULT 0,
            errors JSONB NOT NULL DEFAULT '[]'::jsonb,
            error_summary TEXT,
            started_at TIMESTAMPTZ NOT NULL,
            finished_at TIMESTAMPTZ
        )
        """
    )
    db.execute("CREATE INDEX IF NOT EXISTS ix_import_runs_location ON import_runs (location_id, started_at)")
