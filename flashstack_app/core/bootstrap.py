"""Bootstrap helpers for configuring the Flask application."""

from __future__ import annotations

import logging

from flask import Flask

from ..extensions import db, scheduler
from .error_handlers import register_error_handlers as _register_error_handlers
from .logging_config import setup_logging
from .module_registry import register_default_modules


def configure_logging(app: Flask) -> None:
    """Configure application logging if no handlers are present."""

    setup_logging(app, log_level=app.config.get('LOG_LEVEL', 'INFO'), log_dir=app.config.get('LOG_DIR'))

    if app.logger.handlers:
        return

    app.logger.setLevel(logging.DEBUG if app.debug else logging.INFO)
    handler = logging.StreamHandler()
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    handler.setFormatter(formatter)
    app.logger.addHandler(handler)
    app.logger.propagate = False
    app.logger.info("Flask app logger configured successfully.")


def register_extensions(app: Flask) -> None:
    """Initialize shared extensions with the Flask app instance."""

    db.init_app(app)

    if app.config.get('FSRS_OPTIMIZER_SCHEDULE_ENABLED') and not app.config.get('TESTING'):
        from apscheduler.schedulers import SchedulerAlreadyRunningError
        try:
            scheduler.init_app(app)
            if not scheduler.running:
                scheduler.start()
        except SchedulerAlreadyRunningError:
            app.logger.info("Scheduler already running, skipping re-initialisation.")


def register_error_handlers(app: Flask) -> None:
    _register_error_handlers(app)


def register_blueprints(app: Flask) -> None:
    """Register all default blueprints with the app."""

    register_default_modules(app)


def initialize_database(app: Flask) -> None:
    """Create database tables for every registered model."""

    db.create_all()
    app.logger.info("Database tables ensured at %s", app.config.get('SQLALCHEMY_DATABASE_URI'))
