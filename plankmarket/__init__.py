import os
import subprocess
import json
import click
from pathlib import Path
from flask import Flask, jsonify, request, g
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from plankmarket.extensions import db, migrate, cors
from plankmarket.models import User
from plankmarket.integrations.common import ProviderError
from plankmarket.integrations.payments.factory import payment_health
from plankmarket.segments.segment_offers import offers_bp
from plankmarket.segments.segment_orders_api import orders_bp
from plankmarket.segments.segment_disputes import disputes_bp
from plankmarket.segments.segment_cron import cron_bp
from plankmarket.segments.segment_payment_webhooks import webhooks_bp
from plankmarket.segments.segment_reconciliation_admin import recon_bp
from plankmarket.segments.segment_moderation_admin import moderation_bp
from plankmarket.services.errors import DomainError
from plankmarket.utils.jwt_utils import decode_token, get_bearer_token
from plankmarket.utils.observability import init_sentry, init_otel, install_request_observers


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
    for env_key in ("GIT_SHA", "SOURCE_VERSION"):
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


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _with_trace_id(payload: dict) -> dict:
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("PLANKMARKET_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        if not (os.getenv("CRON_SECRET") or "").strip():
            app.logger.warning("cron_secret_missing env=%s", env)

    # Basic config
    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # Ensure instance dir exists for SQLite paths
    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    # Database config
    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{os.path.join(instance_dir, 'plankmarket.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
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
            int(engine_options.get("pool_size", 0) or 0),
            int(engine_options.get("max_overflow", 0) or 0),
            int(engine_options.get("pool_timeout", 0) or 0),
            int(engine_options.get("pool_recycle", 0) or 0),
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    # CORS configuration
    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)
    with app.app_context():
        init_otel(app, enabled=(os.getenv("OTEL_ENABLED") or "").strip() == "1")

    @app.errorhandler(DomainError)
    def _api_domain_error(error: DomainError):
        app.logger.info(
            "domain_error path=%s error=%s status=%s message=%s",
            request.path,
            error.error,
            error.status,
            error.message,
        )
        return jsonify(_with_trace_id(error.to_payload())), int(error.status)

    @app.errorhandler(ProviderError)
    def _api_provider_error(error: ProviderError):
        app.logger.warning("provider_error path=%s code=%s", request.path, error.code)
        payload = {
            "ok": False,
            "error": "PAYMENT_PROVIDER_ERROR",
            "message": "Payment processor request failed",
            "status": 502,
        }
        return jsonify(_with_trace_id(payload)), 502

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable frontend handling.
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
        try:
            db.session.rollback()
        except Exception:
            pass
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
    app.register_blueprint(offers_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(cron_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(recon_bp)
    app.register_blueprint(moderation_bp)

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
            "service": "plankmarket-api",
            "env": env,
            "db": db_state,
            "payments": payment_health(),
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
            "service": "plankmarket-api",
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
    def _reset_db_session():
        try:
            db.session.rollback()
        except Exception:
            pass

    @app.before_request
    def _capture_auth_context():
        g.auth_user_id = None
        g.auth_role = None
        try:
            import sentry_sdk

            sentry_sdk.set_user(None)
        except Exception:
            pass
        token = get_bearer_token(request.headers.get("Authorization", ""))
        if not token:
            return
        payload = decode_token(token)
        if not payload:
            return
        try:
            uid = int(payload.get("sub"))
        except (TypeError, ValueError):
            return
        user = db.session.get(User, uid)
        if user is None:
            return
        g.auth_user_id = uid
        g.auth_role = (user.role or "buyer").strip().lower()
        try:
            import sentry_sdk

            sentry_sdk.set_user({"id": str(uid)})
            sentry_sdk.set_tag("auth_role", g.auth_role)
        except Exception:
            pass

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("run-sweeps")
    @click.option("--limit", default=500, show_default=True, help="Max rows per sweep")
    def run_sweeps(limit: int):
        """Run every expiry sweep once."""
        from plankmarket.jobs.expiry_sweeper import run_once

        click.echo(json.dumps(run_once(limit=int(limit)), default=str))

    @app.cli.command("reconcile-ledger")
    @click.option("--persist/--no-persist", default=True, show_default=True)
    def reconcile_ledger(persist: bool):
        """Compare escrow state against money movement; exits 2 on drift."""
        from plankmarket.services.reconciliation_service import persist_report, reconcile_escrow_ledger

        summary = reconcile_escrow_ledger()
        if persist:
            persist_report(summary)
        click.echo(json.dumps(summary, default=str))
        if summary.get("drift_count"):
            raise SystemExit(2)

    @app.cli.command("bootstrap-admin")
    def bootstrap_admin():
        allow = (os.getenv("ALLOW_ADMIN_BOOTSTRAP") or "").strip() == "1"
        if env not in ("dev", "development", "local", "test") and not allow:
            raise click.ClickException("Admin bootstrap disabled. Set ALLOW_ADMIN_BOOTSTRAP=1 or PLANKMARKET_ENV=dev.")

        email = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
        if not email:
            raise click.ClickException("ADMIN_EMAIL must be set.")

        u = User.query.filter_by(email=email).first()
        try:
            if u:
                u.role = "admin"
            else:
                u = User(name=email.split("@")[0], email=email, role="admin")
                db.session.add(u)
            db.session.commit()
            click.echo(f"admin_bootstrap_ok {u.email} id={u.id}")
        except Exception:
            db.session.rollback()
            raise click.ClickException("Failed to bootstrap admin.")

    return app
