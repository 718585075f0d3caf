# backend/rentflow/__init__.py
import logging

from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Service modules log under "rentflow.services.*"
    level = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    app.logger.setLevel(level)
    logging.getLogger("rentflow").setLevel(level)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Payment processor (tests install a fake before the first request)
    from .services.processor import StripeProcessor
    app.extensions.setdefault("payment_processor", StripeProcessor.from_config(app.config))

    # Register blueprints
    from .routes.system import system_bp
    from .routes.connect import connect_bp
    from .routes.payment_methods import payment_methods_bp
    from .routes.payments import payments_bp
    from .routes.autopay import autopay_bp
    from .routes.webhooks import webhooks_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(connect_bp)
    app.register_blueprint(payment_methods_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(autopay_bp)
    app.register_blueprint(webhooks_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin and origin == app.config.get("APP_BASE_URL", "").rstrip("/"):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = (
                "Content-Type, Idempotency-Key, X-Actor-Role, X-Organization-Id, X-Tenant-Id"
            )
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
