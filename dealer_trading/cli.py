from __future__ import annotations

import json
from pathlib import Path

import click
from alembic import command
from alembic.config import Config as AlembicConfig
from flask import Flask

from dealer_trading.db import close_db, get_db, init_db


def _project_root() -> Path:
    return Path(__file__).resolve().parents[1]


def to_sqlalchemy_url(raw_db_path: str) -> str:
    raw = (raw_db_path or "").strip()
    if not raw:
        raise RuntimeError("DB_PATH is not set; cannot run migrations.")
    if raw.startswith("postgres://"):
        raw = "postgresql://" + raw[len("postgres://") :]
    if raw.startswith(("postgresql://", "postgresql+", "sqlite://", "sqlite+pysqlite://")):
        return raw
    return f"sqlite:///{Path(raw).expanduser().resolve().as_posix()}"


def build_alembic_config(app: Flask) -> AlembicConfig:
    root = _project_root()
    alembic_ini = root / "alembic.ini"
    if not alembic_ini.exists():
        raise RuntimeError("alembic.ini not found at the project root.")

    alembic_cfg = AlembicConfig(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str((root / "migrations").as_posix()))
    alembic_cfg.set_main_option("sqlalchemy.url", to_sqlalchemy_url(app.config["DB_PATH"]))
    return alembic_cfg


def register_db_cli(app: Flask) -> None:
    @app.cli.group("db")
    def db_group() -> None:
        """Schema migrations (Alembic)."""

    @db_group.command("upgrade")
    @click.argument("revision", required=False, default="head")
    def db_upgrade(revision: str) -> None:
        command.upgrade(build_alembic_config(app), revision)
        click.echo(f"Upgraded to {revision}.")

    @db_group.command("downgrade")
    @click.argument("revision", required=False, default="-1")
    def db_downgrade(revision: str) -> None:
        command.downgrade(build_alembic_config(app), revision)
        click.echo(f"Downgraded to {revision}.")

    @db_group.command("current")
    def db_current() -> None:
        command.current(build_alembic_config(app), verbose=True)

    @db_group.command("init-schema")
    def db_init_schema() -> None:
        """Create tables directly, without Alembic (local development)."""
        try:
            init_db(get_db())
        finally:
            close_db()
        click.echo("Schema created.")


def register_inventory_cli(app: Flask) -> None:
    from dealer_trading.application.services import reconciler_for, transfer_workflow_for
    from dealer_trading.domain.contracts import MODE_APPLY, MODE_DRY_RUN
    from dealer_trading.errors import AppError

    @app.cli.group("imports")
    def imports_group() -> None:
        """Inventory feed reconciliation."""

    @imports_group.command("run")
    @click.argument("location_id")
    @click.option("--dry-run", is_flag=True, default=False, help="Compute the plan without writing.")
    def imports_run(location_id: str, dry_run: bool) -> None:
        mode = MODE_DRY_RUN if dry_run else MODE_APPLY
        try:
            plan = reconciler_for(app).reconcile_location(get_db(), location_id, mode)
        except AppError as exc:
            raise click.ClickException(f"{exc.code}: {exc.details or exc.user_message()}") from exc
        finally:
            close_db()
        click.echo(json.dumps(plan.to_dict(), indent=2, default=str))
        if plan.errors:
            raise SystemExit(2)

    @app.cli.group("transfers")
    def transfers_group() -> None:
        """Transfer maintenance."""

    @transfers_group.command("reset-delivered")
    @click.option("--days", type=int, default=None, help="Age in days of the delivery to reset.")
    def transfers_reset_delivered(days: int | None) -> None:
        resolved_days = days if days is not None else int(app.config.get("DELIVERED_RESET_DAYS", 3))
        try:
            reset_ids = transfer_workflow_for(app).reset_stale_delivered(get_db(), resolved_days)
        finally:
            close_db()
        click.echo(f"Reset {len(reset_ids)} delivered vehicle(s).")
