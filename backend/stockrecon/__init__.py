# backend/stockrecon/__init__.py
import logging

from flask import Flask
from sqlalchemy import event

from .config import Config
from .extensions import db, migrate


def _enable_sqlite_savepoints(engine) -> None:
    """
    pysqlite opens transactions lazily on its own, which breaks SAVEPOINT.
    Hand transaction control to SQLAlchemy so begin_nested() works.
    """
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    with app.app_context():
        if db.engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(db.engine)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
