import os

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from dealer_trading.config import Config
from dealer_trading.db import close_db, init_db
from dealer_trading.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_event_bus(app)
    _register_error_handlers(app)
    _register_blueprints(app)
    _register_health(app)
    _register_cli(app)
    _maybe_init_schema(app)

    _register_scheduler(app)
    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        # Tests build their own temporary schema without running migrations.
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignored outside development.")
        return

    with app.app_context():
        init_db()


def _register_event_bus(app: Flask) -> None:
    from dealer_trading.core.event_bus import get_event_bus
    from dealer_trading.notifications import default_dispatcher, register_notification_dispatcher

    bus = app.extensions.setdefault("event_bus", get_event_bus())
    dispatcher = app.extensions.setdefault("notification_dispatcher", default_dispatcher)
    register_notification_dispatcher(bus, dispatcher)


def _register_blueprints(app: Flask) -> None:
    from dealer_trading.routes.import_routes import imports_bp
    from dealer_trading.routes.transfer_routes import transfers_bp

    app.register_blueprint(imports_bp)
    app.register_blueprint(transfers_bp)


def _register_cli(app: Flask) -> None:
    from dealer_trading.cli import register_db_cli, register_inventory_cli

    register_db_cli(app)
    register_inventory_cli(app)


def _register_scheduler(app: Flask) -> None:
    from dealer_trading.scheduler import start_import_scheduler

    start_import_scheduler(app)


def _register_error_handlers(app: Flask) -> None:
    from dealer_trading.errors import AppError, SystemError

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _register_health(app: Flask) -> None:
    @app.route("/health")
    def health():
        from dealer_trading.db import get_db

        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        payload = {
            "status": "ok",
            "db": backend,
            "env": os.environ.get("FLASK_ENV", "development"),
            "metrics": metrics_snapshot(),
        }
        try:
            get_db().execute("SELECT 1").fetchone()
        except Exception:  # noqa: BLE001
            app.logger.warning("health_db_unreachable", exc_info=True)
            payload["status"] = "degraded"
        scheduler = app.extensions.get("import_scheduler")
        payload["import_scheduler"] = "running" if scheduler is not None else "disabled"
        return payload, 200

    @app.route("/metrics")
    def metrics():
        return Response(prometheus_metrics_text(), mimetype="text/plain; version=0.0.4")

