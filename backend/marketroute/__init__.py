import os
import subprocess
from datetime import date
from pathlib import Path

import click
from flask import Flask, jsonify, request, g
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from marketroute.errors import FulfillmentError
from marketroute.extensions import db, migrate, cors
from marketroute.integrations.common import IntegrationMisconfiguredError
from marketroute.integrations.dispatch.factory import dispatch_health
from marketroute.integrations.payments.factory import payment_health
from marketroute.segments.segment_disputes import disputes_bp
from marketroute.segments.segment_orders_api import orders_bp
from marketroute.segments.segment_reconciliation_admin import recon_bp
from marketroute.segments.segment_routes import routes_bp
from marketroute.segments.segment_wallet import wallet_bp
from marketroute.utils import settings
from marketroute.utils.actor import capture_actor
from marketroute.utils.observability import init_sentry, install_request_observers


def _resolve_alembic_head() -> str:
    try:
        from alembic.config import Config
        from alembic.script import ScriptDirectory

        migrations_dir = Path(__file__).resolve().parents[1] / "migrations"
        cfg = Config(str(migrations_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(migrations_dir))
        script = ScriptDirectory.from_config(cfg)
        heads = script.get_heads()
        return heads[0] if heads else "unknown"
    except Exception:
        return "unknown"


def _resolve_git_sha() -> str:
    for env_key in ("RENDER_GIT_COMMIT", "GIT_SHA", "SOURCE_VERSION"):
        val = (os.getenv(env_key) or "").strip()
        if val:
            return val
    try:
        repo_root = Path(__file__).resolve().parents[1]
        out = subprocess.check_output(
            ["git", "rev-parse", "HEAD"],
            cwd=str(repo_root),
            stderr=subprocess.DEVNULL,
        )
        return out.decode().strip()
    except Exception:
        return "unknown"


def _with_trace_id(payload: dict) -> dict:
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def _check_production_config() -> None:
    secret = (os.getenv("SECRET_KEY") or "").strip()
    if not secret or len(secret) < 16:
        raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
    if not settings.database_url():
        raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")


def _resolve_database_url(instance_dir: str) -> str:
    url = settings.database_url()
    # File-backed sqlite always lives in instance/ so the CLI and workers share one file.
    if not url or (url.startswith("sqlite://") and url != "sqlite:///:memory:"):
        path = os.path.join(instance_dir, "marketroute.db")
        url = f"sqlite:///{path.replace(os.sep, '/')}"
    return url


def _engine_options(app: Flask, url: str) -> dict:
    options = {
        "pool_pre_ping": True,
        "pool_reset_on_return": "rollback",
        "pool_recycle": settings.db_pool_recycle_seconds(),
    }
    if url.startswith("sqlite://"):
        return options
    options.update(
        pool_size=settings.db_pool_size(),
        max_overflow=settings.db_max_overflow(),
        pool_timeout=settings.db_pool_timeout_seconds(),
    )
    app.logger.info(
        "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s pool_recycle=%s",
        options["pool_size"],
        options["max_overflow"],
        options["pool_timeout"],
        options["pool_recycle"],
    )
    return options


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = settings.app_env()
    if settings.is_production():
        _check_production_config()

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    database_url = _resolve_database_url(instance_dir)
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = _engine_options(app, database_url)

    cors.init_app(app, resources={r"/api/*": {"origins": settings.cors_origins()}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    @app.errorhandler(FulfillmentError)
    def _api_fulfillment_error(error: FulfillmentError):
        status = int(error.http_status or 400)
        if status >= 500:
            app.logger.error("fulfillment_error code=%s path=%s msg=%s", error.code, request.path, error.message)
        else:
            app.logger.info("fulfillment_error code=%s path=%s", error.code, request.path)
        return jsonify(_with_trace_id(error.to_dict())), status

    @app.errorhandler(IntegrationMisconfiguredError)
    def _api_integration_misconfigured(error: IntegrationMisconfiguredError):
        app.logger.error("integration_misconfigured path=%s err=%s", request.path, error)
        payload = {
            "ok": False,
            "error": "IntegrationMisconfigured",
            "message": str(error) or "Integration misconfigured",
            "status": 503,
        }
        return jsonify(_with_trace_id(payload)), 503

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable client handling.
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        return jsonify(_with_trace_id(payload)), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        if not request.path.startswith("/api/"):
            return jsonify(
                {
                    "ok": False,
                    "error": "InternalServerError",
                    "message": "Internal server error",
                }
            ), 500
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        return jsonify(_with_trace_id(payload)), 500

    # Register API routes
    app.register_blueprint(orders_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(routes_bp)
    app.register_blueprint(wallet_bp)
    app.register_blueprint(recon_bp)

    # Health check
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
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "marketroute-backend",
            "env": env,
            "db": db_state,
            "payments": payment_health(),
            "dispatch": dispatch_health(),
            "git_sha": _resolve_git_sha(),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.get("/")
    def root():
        return jsonify({
            "ok": True,
            "service": "marketroute-backend",
            "env": env,
        })

    @app.get("/api/version")
    def version():
        return jsonify({
            "ok": True,
            "alembic_head": _resolve_alembic_head(),
            "git_sha": _resolve_git_sha(),
        })

    @app.before_request
    def _capture_actor_context():
        capture_actor()
        actor_id = getattr(g, "actor_id", None)
        if not actor_id:
            return
        try:
            import sentry_sdk

            sentry_sdk.set_user({"id": actor_id})
            sentry_sdk.set_tag("actor_role", getattr(g, "actor_role", None) or "unknown")
        except Exception:
            pass

    @app.before_request
    def _reset_db_session():
        try:
            db.session.rollback()
        except Exception:
            pass

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("run-dispute-sweep")
    @click.option("--limit", "limit", type=int, required=False, help="Max orders to release in one pass")
    def run_dispute_sweep_command(limit: int | None):
        from marketroute.jobs.dispute_sweep import run_dispute_sweep

        result = run_dispute_sweep(limit=limit)
        click.echo(f"dispute_sweep_ok {result}")

    @app.cli.command("run-route-checkpoint")
    @click.option("--date", "batch_date", required=False, help="Batch date (YYYY-MM-DD)")
    @click.option("--slot", "slot", required=False, help="MORNING or AFTERNOON")
    def run_route_checkpoint_command(batch_date: str | None, slot: str | None):
        from marketroute.jobs.route_runner import run_route_checkpoint

        if bool(batch_date) != bool(slot):
            raise click.ClickException("Provide both --date and --slot, or neither.")
        parsed = None
        if batch_date:
            try:
                parsed = date.fromisoformat(batch_date.strip())
            except ValueError:
                raise click.ClickException("--date must be YYYY-MM-DD")
        try:
            result = run_route_checkpoint(batch_date=parsed, slot=slot)
        except FulfillmentError as e:
            raise click.ClickException(f"{e.code}: {e.message}")
        click.echo(f"route_checkpoint_ok {result}")

    return app
