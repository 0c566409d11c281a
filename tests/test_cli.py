import json
import os
import sqlite3
import unittest

from dealer_trading import create_app
from dealer_trading.cli import to_sqlalchemy_url
from dealer_trading.config import Config
from dealer_trading.core import reset_event_bus_for_tests
from dealer_trading.db import close_db
from dealer_trading.feeds.base import StaticFeedSource
from tests.helpers.temp_db import TempDbSandbox
from tests.inventory_utils import record, seed_locations, snapshot, vin


def _json_payload(output: str) -> dict:
    return json.loads(output[output.index("{") : output.rindex("}") + 1])


def _table_exists(db_path: str, table_name: str) -> bool:
    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name = ?",
            (table_name,),
        ).fetchone()
        return row is not None
    finally:
        conn.close()


class DbMigrationsCliTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="db_migrations")
        self._prev_env = os.environ.get("FLASK_ENV")
        os.environ["FLASK_ENV"] = "development"

    def tearDown(self) -> None:
        if self._prev_env is None:
            os.environ.pop("FLASK_ENV", None)
        else:
            os.environ["FLASK_ENV"] = self._prev_env
        self._temp_db.cleanup()
        reset_event_bus_for_tests()

    def _build_app(self, *, db_auto_init: bool):
        config = self._temp_db.make_config(Config, TESTING=False, DB_AUTO_INIT=db_auto_init)
        return create_app(config)

    def test_schema_not_created_by_default(self) -> None:
        app = self._build_app(db_auto_init=False)
        with app.app_context():
            close_db()
        self.assertFalse(_table_exists(self._temp_db.db_path, "vehicles"))

    def test_schema_created_with_explicit_dev_flag(self) -> None:
        app = self._build_app(db_auto_init=True)
        with app.app_context():
            close_db()
        self.assertTrue(_table_exists(self._temp_db.db_path, "vehicles"))

    def test_flask_db_upgrade_and_downgrade(self) -> None:
        app = self._build_app(db_auto_init=False)
        runner = app.test_cli_runner()

        upgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(upgrade_result.exit_code, 0, msg=upgrade_result.output)
        for table in ("locations", "vehicles", "transfers", "activities", "import_runs"):
            self.assertTrue(_table_exists(self._temp_db.db_path, table), table)

        downgrade_result = runner.invoke(args=["db", "downgrade", "base"])
        self.assertEqual(downgrade_result.exit_code, 0, msg=downgrade_result.output)
        self.assertFalse(_table_exists(self._temp_db.db_path, "vehicles"))

        reupgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(reupgrade_result.exit_code, 0, msg=reupgrade_result.output)
        self.assertTrue(_table_exists(self._temp_db.db_path, "transfers"))

    def test_sqlalchemy_url_normalization(self) -> None:
        self.assertEqual(to_sqlalchemy_url("postgres://u@h/db"), "postgresql://u@h/db")
        self.assertTrue(to_sqlalchemy_url("/tmp/dealer.db").startswith("sqlite:///"))
        with self.assertRaises(RuntimeError):
            to_sqlalchemy_url("  ")


class InventoryCliTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="inventory_cli")
        self.app = create_app(self._temp_db.make_config(Config, TESTING=True))
        self.feeds = StaticFeedSource()
        self.app.extensions["feed_source"] = self.feeds
        self.db = self._temp_db.open_database()
        seed_locations(self.db, "loc-a")
        self.runner = self.app.test_cli_runner()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_event_bus_for_tests()

    def test_imports_run_prints_plan(self) -> None:
        self.feeds.put(snapshot("loc-a", record(vin(1))))

        preview = self.runner.invoke(args=["imports", "run", "loc-a", "--dry-run"])
        self.assertEqual(preview.exit_code, 0, msg=preview.output)
        self.assertEqual(_json_payload(preview.output)["counts"]["create"], 1)
        self.assertEqual(self.db.execute("SELECT COUNT(*) AS total FROM vehicles").fetchone()["total"], 0)

        applied = self.runner.invoke(args=["imports", "run", "loc-a"])
        self.assertEqual(applied.exit_code, 0, msg=applied.output)
        self.assertEqual(self.db.execute("SELECT COUNT(*) AS total FROM vehicles").fetchone()["total"], 1)

    def test_imports_run_reports_unavailable_feed(self) -> None:
        result = self.runner.invoke(args=["imports", "run", "loc-a"])
        self.assertNotEqual(result.exit_code, 0)
        self.assertIn("feed_unavailable", result.output)

    def test_reset_delivered(self) -> None:
        result = self.runner.invoke(args=["transfers", "reset-delivered", "--days", "3"])
        self.assertEqual(result.exit_code, 0, msg=result.output)
        self.assertIn("Reset 0 delivered vehicle(s).", result.output)


if __name__ == "__main__":
    unittest.main()
