import os
from flask import Flask

from .config import database_url, get_config


def create_app(config_name=None):
    app = Flask(__name__, instance_relative_config=True)

    config_name = config_name or os.environ.get("FLASK_CONFIG", "development")
    app.config.from_object(get_config(config_name))

    # Load config from environment with prefix, e.g., APP_PAYSTACK_SECRET_KEY
    # See https://flask.palletsprojects.com/ for from_prefixed_env
    if config_name != "testing":
        app.config.from_prefixed_env(prefix="APP")

    # Fallback: map DATABASE_URL -> SQLALCHEMY_DATABASE_URI if not set by prefix
    if not app.config.get("SQLALCHEMY_DATABASE_URI") and os.environ.get("DATABASE_URL"):
        app.config["SQLALCHEMY_DATABASE_URI"] = database_url(os.environ["DATABASE_URL"])

    # Init logging
    from .logging import init_logging

    init_logging(app)

    # Init extensions
    from .extensions import db, migrate, jwt, cors, swagger
    from .security import register_jwt_handlers

    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    register_jwt_handlers(jwt)
    cors.init_app(
        app,
        resources={r"/payments/*": {"origins": app.config["CORS_ORIGINS"]}},
        allow_headers=["Authorization", "Content-Type", "x-client-info", "apikey"],
    )
    swagger.init_app(app)

    from .workers.celery_app import celery_init_app

    celery_init_app(app)

    from . import models  # noqa: F401  register tables with the metadata

    # Auto-migrate on startup (if configured)
    if app.config.get("AUTO_MIGRATE"):
        from flask_migrate import upgrade

        with app.app_context():
            try:
                upgrade()
            except Exception:
                app.logger.exception("Database migration failed on startup")
                raise

    # Register blueprints
    from .blueprints.payments import bp as payments_bp
    from .blueprints.webhooks import bp as webhooks_bp

    app.register_blueprint(payments_bp, url_prefix="/payments")
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")

    return app
