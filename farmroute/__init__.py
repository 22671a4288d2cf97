import json
import os
import subprocess
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from farmroute.errors import EngineError
from farmroute.extensions import cors, db, migrate
from farmroute.integrations.payments.factory import payment_health
from farmroute.models import User, UserRole
from farmroute.segments.segment_admin import admin_bp
from farmroute.segments.segment_batches import batches_bp
from farmroute.segments.segment_disputes import disputes_bp
from farmroute.segments.segment_orders import orders_bp
from farmroute.segments.segment_scans import scans_bp
from farmroute.utils.observability import get_request_id, init_otel, init_sentry, install_request_observers


def _resolve_alembic_head() -> str:
    from alembic.config import Config
    from alembic.script import ScriptDirectory

    migrations_dir = Path(__file__).resolve().parents[1] / "migrations"
    if not (migrations_dir / "alembic.ini").exists():
        return "unknown"
    cfg = Config(str(migrations_dir / "alembic.ini"))
    cfg.set_main_option("script_location", str(migrations_dir))
    heads = ScriptDirectory.from_config(cfg).get_heads()
    return heads[0] if heads else "unknown"


def _resolve_git_sha() -> str:
    val = (os.getenv("GIT_SHA") or "").strip()
    if val:
        return val
    try:
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(Path(__file__).resolve().parents[1]),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(minimum, min(value, maximum))


def _error_payload(code: str, message: str, status: int) -> dict:
    payload = {
        "ok": False,
        "error": code,
        "message": message,
        "status": int(status),
    }
    rid = get_request_id()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("FARMROUTE_ENV", "dev") or "dev").strip().lower()
    is_prod = env in ("prod", "production")

    # Production safety checks
    if is_prod:
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        if (os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower() == "mock":
            raise RuntimeError("PAYMENTS_PROVIDER must not be mock in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["FARMROUTE_ENV"] = env
    app.config["PAYMENTS_PROVIDER"] = (os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower()
    app.config["STRIPE_SECRET_KEY"] = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    app.config["PAYOUT_MAX_ATTEMPTS"] = _env_int("PAYOUT_MAX_ATTEMPTS", 3, minimum=1, maximum=20)

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'farmroute.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
            engine_options["pool_size"],
            engine_options["max_overflow"],
            engine_options["pool_timeout"],
            engine_options["pool_recycle"],
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if is_prod:
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)
    with app.app_context():
        if database_url.startswith("sqlite://") and not is_prod:
            # dev and test databases are created on boot; production goes through migrations
            db.create_all()
        init_otel(app, enabled=(os.getenv("OTEL_ENABLED") or "").strip() == "1")

    @app.errorhandler(EngineError)
    def _engine_error(error: EngineError):
        db.session.rollback()
        payload = _error_payload(error.code, error.message, error.http_status)
        if error.details:
            payload["details"] = error.details
        if error.http_status >= 500:
            app.logger.warning("engine_error code=%s path=%s msg=%s", error.code, request.path, error.message)
        return jsonify(payload), error.http_status

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        status = int(error.code or 500)
        return jsonify(_error_payload(error.name, error.description or error.name, status)), status

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        db.session.rollback()
        app.logger.exception("unhandled_exception path=%s", request.path)
        return jsonify(_error_payload("InternalServerError", "Internal server error", 500)), 500

    app.register_blueprint(orders_bp)
    app.register_blueprint(batches_bp)
    app.register_blueprint(scans_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(admin_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "farmroute-engine",
            "env": env,
            "db": db_state,
            "payments": payment_health(app.config),
            "git_sha": _resolve_git_sha(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.get("/api/version")
    def version():
        return jsonify({
            "ok": True,
            "alembic_head": _resolve_alembic_head(),
            "git_sha": _resolve_git_sha(),
        })

    @app.before_request
    def _reset_auth_context():
        g.auth_user_id = None
        g.auth_role = None

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("process-payouts")
    @click.option("--limit", default=100, show_default=True, help="Maximum payouts to process")
    def process_payouts_command(limit: int):
        """Push pending payouts through the configured transfer provider."""
        from farmroute.jobs.payout_runner import process_pending_payouts

        result = process_pending_payouts(limit=limit, max_attempts=app.config["PAYOUT_MAX_ATTEMPTS"])
        click.echo(json.dumps(result))

    @app.cli.command("retry-refunds")
    @click.option("--limit", default=100, show_default=True)
    def retry_refunds_command(limit: int):
        from farmroute.jobs.payout_runner import retry_refund_instructions

        click.echo(json.dumps(retry_refund_instructions(limit=limit)))

    @app.cli.command("reconcile-ledger")
    @click.option("--limit", default=None, type=int, help="Only check the first N delivered orders")
    def reconcile_ledger_command(limit: int | None):
        from farmroute.services.payout_service import reconcile_ledger

        report = reconcile_ledger(limit=limit)
        click.echo(json.dumps(report, indent=2))
        if not report["ok"]:
            raise click.ClickException(f"{len(report['mismatches'])} ledger mismatches")

    @app.cli.command("bootstrap-admin")
    def bootstrap_admin():
        allow = (os.getenv("ALLOW_ADMIN_BOOTSTRAP") or "").strip() == "1"
        if env not in ("dev", "development", "local", "test") and not allow:
            raise click.ClickException("Admin bootstrap disabled. Set ALLOW_ADMIN_BOOTSTRAP=1 or FARMROUTE_ENV=dev.")

        email = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
        password = (os.getenv("ADMIN_PASSWORD") or "").strip()
        if not email or not password:
            raise click.ClickException("ADMIN_EMAIL and ADMIN_PASSWORD must be set.")

        u = User.query.filter_by(email=email).first()
        if u:
            u.role = UserRole.ADMIN
        else:
            u = User(name=email.split("@")[0], email=email, role=UserRole.ADMIN)
            db.session.add(u)
        u.set_password(password)
        db.session.commit()
        click.echo(f"admin_bootstrap_ok {u.email}")

    return app
