# backend/stockline/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, enable_sqlite_savepoints, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    logging.getLogger("stockline").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    with app.app_context():
        if db.engine.dialect.name == "sqlite":
            enable_sqlite_savepoints(db.engine)

    # Import pipeline collaborators, one set per app instance
    from .services.extractors import build_extractors
    from .services.key_resolver import KeyResolver
    from .services.kv_store import build_kv_store
    from .services.session_service import ImportSessionStore
    from .services.usage_service import record_usage
    from .services.vision_service import CloudVisionExtractor

    app.extensions["stockline.key_resolver"] = KeyResolver(
        app.config.get("KEY_SERVICE_URL"),
        timeout=app.config["KEY_SERVICE_TIMEOUT_SECONDS"],
        cache_seconds=app.config["KEY_CACHE_SECONDS"],
    )
    app.extensions["stockline.import_sessions"] = ImportSessionStore(
        build_kv_store(app.config.get("SESSION_STORE_URL")),
        upload_dir=app.config["UPLOAD_DIR"],
        extractors=build_extractors(app.config),
        ttl_seconds=app.config["IMPORT_SESSION_TTL_SECONDS"],
        workers=app.config["IMPORT_EXTRACT_WORKERS"],
        max_files=app.config["IMPORT_MAX_FILES"],
        record_usage=record_usage,
    )
    app.extensions["stockline.vision"] = CloudVisionExtractor(
        app.extensions["stockline.key_resolver"],
        timeout=app.config["VISION_TIMEOUT_SECONDS"],
    )

    # Register blueprints
    from .routes.system import system_bp
    from .routes.imports import imports_bp
    from .routes.inventory import inventory_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(imports_bp)
    app.register_blueprint(inventory_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
