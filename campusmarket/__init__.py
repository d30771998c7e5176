import os
from pathlib import Path

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from campusmarket.extensions import cors, db, migrate
from campusmarket.integrations.payments.factory import payment_health
from campusmarket.models import User
from campusmarket.segments.segment_admin import admin_bp
from campusmarket.segments.segment_disputes import disputes_bp
from campusmarket.segments.segment_notifications import notifications_bp
from campusmarket.segments.segment_orders_api import orders_bp
from campusmarket.segments.segment_payments import payments_bp
from campusmarket.segments.segment_riders import riders_bp
from campusmarket.segments.segment_wallets import wallets_bp
from campusmarket.services.errors import MarketError
from campusmarket.utils.jwt_utils import decode_token, get_bearer_token
from campusmarket.utils.observability import init_otel, init_sentry, install_request_observers, note_error_code


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


def _env_float(name: str, default: float, *, minimum: float = 0.0, maximum: float = 1e9) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        value = float(raw) if raw else float(default)
    except Exception:
        value = float(default)
    return min(max(value, minimum), maximum)


def _env_flag(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in ("1", "true", "yes", "on")


def _load_business_config(app: Flask) -> None:
    app.config["RIDER_FEE"] = _env_float("RIDER_FEE", 560)
    app.config["PLATFORM_COMMISSION_RATE"] = _env_float("PLATFORM_COMMISSION_RATE", 0.05, maximum=1.0)
    app.config["PLATFORM_DELIVERY_CUT"] = _env_float("PLATFORM_DELIVERY_CUT", 240)
    app.config["DEFAULT_DELIVERY_FEE"] = _env_float("DEFAULT_DELIVERY_FEE", 800)
    app.config["DISPUTE_FEE_RATE"] = _env_float("DISPUTE_FEE_RATE", 0.10, maximum=1.0)
    app.config["DISPUTE_WINDOW_DAYS"] = _env_int("DISPUTE_WINDOW_DAYS", 7, minimum=1, maximum=365)
    app.config["CONFIRM_DELIVERY_COOLDOWN_SECONDS"] = _env_int("CONFIRM_DELIVERY_COOLDOWN_SECONDS", 5, maximum=3600)
    app.config["MIN_WITHDRAWAL"] = _env_float("MIN_WITHDRAWAL", 1000)
    app.config["TXN_STATEMENT_TIMEOUT_MS"] = _env_int("TXN_STATEMENT_TIMEOUT_MS", 15000, minimum=100, maximum=600000)
    app.config["TXN_LOCK_TIMEOUT_MS"] = _env_int("TXN_LOCK_TIMEOUT_MS", 20000, minimum=100, maximum=600000)
    app.config["PAYMENTS_PROVIDER"] = (os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower()
    app.config["PAYSTACK_SECRET_KEY"] = (os.getenv("PAYSTACK_SECRET_KEY") or "").strip()
    app.config["PUBLIC_APP_URL"] = (os.getenv("PUBLIC_APP_URL") or "").strip().rstrip("/")
    app.config["NOTIFICATIONS_ASYNC"] = _env_flag("NOTIFICATIONS_ASYNC")


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("CAMPUSMARKET_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    _load_business_config(app)

    # Ensure instance dir exists for SQLite paths
    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{os.path.join(instance_dir, 'campusmarket.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {
        "pool_pre_ping": True,
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 20, minimum=1, maximum=300),
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
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)
    with app.app_context():
        init_otel(app, enabled=(os.getenv("OTEL_ENABLED") or "").strip() == "1")

    def _trace_id() -> str:
        return (getattr(g, "request_id", "") or "").strip()

    @app.errorhandler(MarketError)
    def _market_error(error: MarketError):
        payload = error.to_payload()
        note_error_code(error.code)
        rid = _trace_id()
        if rid:
            payload["trace_id"] = rid
        if error.status >= 500:
            app.logger.warning("market_error path=%s code=%s", request.path, error.code)
        return jsonify(payload), error.status

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only for predictable frontend handling.
        if not request.path.startswith("/api/"):
            return error
        note_error_code(error.name)
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        rid = _trace_id()
        if rid:
            payload["trace_id"] = rid
        return jsonify(payload), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        rid = _trace_id()
        if rid:
            payload["trace_id"] = rid
        return jsonify(payload), 500

    app.register_blueprint(payments_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(riders_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(wallets_bp)
    app.register_blueprint(notifications_bp)

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
            "service": "campusmarket-api",
            "env": env,
            "db": db_state,
            "payments": payment_health(app.config),
            "alembic_head": _resolve_alembic_head(),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.before_request
    def _capture_auth_context():
        g.auth_user_id = None
        g.auth_role = None
        token = get_bearer_token(request.headers.get("Authorization", ""))
        if not token:
            return
        payload = decode_token(token)
        if not payload:
            return
        try:
            uid = int(payload.get("sub"))
        except Exception:
            return
        g.auth_user_id = uid
        try:
            user = db.session.get(User, uid)
            if user:
                g.auth_role = (getattr(user, "role", None) or "buyer").strip().lower()
                try:
                    import sentry_sdk

                    sentry_sdk.set_user({"id": str(uid)})
                    sentry_sdk.set_tag("auth_role", g.auth_role)
                except Exception:
                    pass
        except Exception:
            db.session.rollback()

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

    @app.cli.command("bootstrap-admin")
    def bootstrap_admin():
        allow = (os.getenv("ALLOW_ADMIN_BOOTSTRAP") or "").strip() == "1"
        if env not in ("dev", "development", "local", "test") and not allow:
            raise click.ClickException("Admin bootstrap disabled. Set ALLOW_ADMIN_BOOTSTRAP=1 or CAMPUSMARKET_ENV=dev.")

        email = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
        password = (os.getenv("ADMIN_PASSWORD") or "").strip()
        if not email or not password:
            raise click.ClickException("ADMIN_EMAIL and ADMIN_PASSWORD must be set.")

        u = User.query.filter_by(email=email).first()
        try:
            if u:
                u.set_password(password)
                u.role = "admin"
            else:
                u = User(name=email.split("@")[0], email=email, role="admin")
                u.set_password(password)
                db.session.add(u)
            db.session.commit()
            click.echo(f"admin_bootstrap_ok {u.email}")
        except Exception:
            db.session.rollback()
            raise click.ClickException("Failed to bootstrap admin.")

    @app.cli.command("reconcile-ledger")
    @click.option("--tolerance", default=0.01, show_default=True, type=float)
    @click.option("--user-id", default=None, type=int)
    @click.option("--persist/--no-persist", default=False)
    def reconcile_ledger(tolerance: float, user_id, persist: bool):
        from campusmarket.services.reconciliation_service import persist_report, recompute_balances

        summary = recompute_balances(tolerance=tolerance, user_id=user_id)
        if persist:
            persist_report(summary)
        click.echo(f"reconcile_ok users={summary['user_count']} drift={summary['drift_count']}")
        if summary["drift_count"]:
            raise SystemExit(2)

    return app
