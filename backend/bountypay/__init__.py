import logging
import os

from flask import Flask, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from bountypay.config import Config
from bountypay.errors import register_error_handlers
from bountypay.extensions import cors, db, login_manager, migrate


def create_app(overrides: dict | None = None, config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    if overrides:
        app.config.update(overrides)

    env = (app.config.get("ENV") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (app.config.get("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16 or secret == "dev-secret":
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        if not app.config.get("STRIPE_WEBHOOK_SECRET"):
            raise RuntimeError("STRIPE_WEBHOOK_SECRET must be set in production")
        if not str(app.config.get("PLATFORM_USER_ID") or "").strip().isdigit():
            raise RuntimeError("PLATFORM_USER_ID must name the fee-collecting account in production")

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO))

    # Ensure instance dir exists for SQLite paths
    if str(app.config["SQLALCHEMY_DATABASE_URI"]).startswith("sqlite:///") and ":memory:" not in app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.config["INSTANCE_DIR"], exist_ok=True)

    # CORS configuration
    cors_origins = (app.config.get("CORS_ORIGINS") or "").strip()
    origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    if not origins and env not in ("prod", "production"):
        origins = ["*"]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    # Init extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    from bountypay import auth  # noqa: F401  registers the login_manager loaders
    from bountypay import models  # noqa: F401

    register_error_handlers(app)

    from bountypay.segments.segment_bounties import bounties_bp
    from bountypay.segments.segment_connect import connect_bp
    from bountypay.segments.segment_payment_webhooks import webhooks_bp
    from bountypay.segments.segment_payments import payments_bp
    from bountypay.segments.segment_wallets import wallets_bp

    app.register_blueprint(bounties_bp)
    app.register_blueprint(wallets_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(connect_bp)
    app.register_blueprint(webhooks_bp)

    from bountypay.cli import bountypay_cli
    app.cli.add_command(bountypay_cli)

    # Health check
    @app.get("/api/health")
    def health():
        db_state = "ok"
        try:
            db.session.execute(text("SELECT 1"))
        except SQLAlchemyError:
            db.session.rollback()
            db_state = "fail"
        return jsonify({
            "ok": True,
            "service": "bountypay-backend",
            "env": env,
            "db": db_state,
        })

    return app
