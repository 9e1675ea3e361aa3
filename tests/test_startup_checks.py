from pathlib import Path

import pytest
from sqlalchemy import create_engine

from voucher_market.core import startup_checks


def test_sqlite_is_rejected_in_production(monkeypatch):
    monkeypatch.setattr("voucher_market.core.config.IS_PROD", True)

    with pytest.raises(RuntimeError, match="SQLite is forbidden"):
        startup_checks.validate_database_environment("sqlite:///./voucher_market.db")


def test_postgres_is_accepted_in_production(monkeypatch):
    monkeypatch.setattr("voucher_market.core.config.IS_PROD", True)

    startup_checks.validate_database_environment("postgresql://market:secret@db/market")


def test_migration_check_is_skipped_in_tests():
    engine = create_engine("sqlite+pysqlite:///:memory:")

    startup_checks.ensure_migrations_applied(engine=engine, alembic_config_path=Path("/nonexistent/alembic.ini"))


def test_missing_migration_state_fails(monkeypatch):
    monkeypatch.setattr("voucher_market.core.config.IS_TEST", False)
    engine = create_engine("sqlite+pysqlite:///:memory:")
    repo_root = Path(__file__).resolve().parents[1]

    with pytest.raises(RuntimeError, match="no migration state"):
        startup_checks.ensure_migrations_applied(engine=engine, alembic_config_path=repo_root / "alembic.ini")
