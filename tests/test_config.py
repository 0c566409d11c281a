import os
import unittest
from unittest.mock import patch

from dealer_trading.config import Config, _bool_env, _int_env


class ConfigTest(unittest.TestCase):
    def test_env_helpers(self) -> None:
        with patch.dict(os.environ, {"DT_FLAG": "Yes", "DT_COUNT": "12", "DT_BAD": "twelve"}):
            self.assertTrue(_bool_env("DT_FLAG", False))
            self.assertEqual(_int_env("DT_COUNT", 3), 12)
            self.assertEqual(_int_env("DT_BAD", 3), 3)
        self.assertFalse(_bool_env("DT_MISSING_FLAG", False))

    def test_inventory_defaults(self) -> None:
        self.assertEqual(Config.REMOVED_RETENTION_DAYS, 30)
        self.assertEqual(Config.DELIVERED_RESET_DAYS, 3)
        self.assertFalse(Config.IMPORT_SCHEDULER_ENABLED)

    def test_production_requires_database_url(self) -> None:
        class _NoDatabase(Config):
            DATABASE_URL = None

        with patch.dict(os.environ, {"FLASK_ENV": "production"}):
            with self.assertRaises(RuntimeError):
                _NoDatabase()

    def test_production_requires_real_secret(self) -> None:
        class _DefaultSecret(Config):
            DATABASE_URL = "postgresql://dealer@db/dealer"
            SECRET_KEY = "dev-secret-dealer-trading"

        class _Hardened(_DefaultSecret):
            SECRET_KEY = "rotated-secret"

        with patch.dict(os.environ, {"FLASK_ENV": "production"}):
            with self.assertRaises(RuntimeError):
                _DefaultSecret()
            _Hardened()

    def test_development_allows_defaults(self) -> None:
        with patch.dict(os.environ, {"FLASK_ENV": "development"}):
            Config()


if __name__ == "__main__":
    unittest.main()
