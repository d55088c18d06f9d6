# File: flashstack_app/config.py

import os
from dotenv import load_dotenv

from .modules.fsrs.config import FSRSDefaultConfig

load_dotenv()

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))

# SQLite database used when SQLALCHEMY_DATABASE_URI is not set
DATABASE_PATH = os.path.join(BASE_DIR, "database", "flashstack.db")


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_steps(name, default):
    value = os.environ.get(name)
    if not value:
        return list(default)
    return [float(part) for part in value.split(',') if part.strip()]


class Config:
    """FlashStack application configuration."""

    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-replace-in-production'

    SQLALCHEMY_DATABASE_URI = os.environ.get('SQLALCHEMY_DATABASE_URI') or f'sqlite:///{DATABASE_PATH}'
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'connect_args': {'timeout': 30},
    }
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_DIR = os.environ.get('LOG_DIR')

    # FSRS scheduling
    FSRS_DESIRED_RETENTION = float(os.environ.get('FSRS_DESIRED_RETENTION', FSRSDefaultConfig.FSRS_DESIRED_RETENTION))
    FSRS_MAX_INTERVAL = int(os.environ.get('FSRS_MAX_INTERVAL', FSRSDefaultConfig.FSRS_MAX_INTERVAL))
    FSRS_ENABLE_FUZZ = _env_bool('FSRS_ENABLE_FUZZ', FSRSDefaultConfig.FSRS_ENABLE_FUZZ)
    FSRS_LEARNING_STEPS = _env_steps('FSRS_LEARNING_STEPS', FSRSDefaultConfig.FSRS_LEARNING_STEPS)
    FSRS_RELEARNING_STEPS = _env_steps('FSRS_RELEARNING_STEPS', FSRSDefaultConfig.FSRS_RELEARNING_STEPS)
    FSRS_MAX_DUE = int(os.environ.get('FSRS_MAX_DUE', FSRSDefaultConfig.FSRS_MAX_DUE))
    FSRS_MAX_NEW = int(os.environ.get('FSRS_MAX_NEW', FSRSDefaultConfig.FSRS_MAX_NEW))

    # FSRS optimizer
    FSRS_OPTIMIZER_MIN_SAMPLES = int(os.environ.get(
        'FSRS_OPTIMIZER_MIN_SAMPLES', FSRSDefaultConfig.FSRS_OPTIMIZER_MIN_SAMPLES))
    FSRS_OPTIMIZER_MAX_ITERATIONS = int(os.environ.get(
        'FSRS_OPTIMIZER_MAX_ITERATIONS', FSRSDefaultConfig.FSRS_OPTIMIZER_MAX_ITERATIONS))
    FSRS_OPTIMIZER_TIMEOUT = float(os.environ.get('FSRS_OPTIMIZER_TIMEOUT', FSRSDefaultConfig.FSRS_OPTIMIZER_TIMEOUT))
    FSRS_OPTIMIZER_AUTO_APPLY = _env_bool('FSRS_OPTIMIZER_AUTO_APPLY', FSRSDefaultConfig.FSRS_OPTIMIZER_AUTO_APPLY)
    FSRS_OPTIMIZER_SCHEDULE_ENABLED = _env_bool(
        'FSRS_OPTIMIZER_SCHEDULE_ENABLED', FSRSDefaultConfig.FSRS_OPTIMIZER_SCHEDULE_ENABLED)
    FSRS_OPTIMIZER_REFRESH_HOURS = float(os.environ.get(
        'FSRS_OPTIMIZER_REFRESH_HOURS', FSRSDefaultConfig.FSRS_OPTIMIZER_REFRESH_HOURS))
    FSRS_OPTIMIZER_WORKERS = int(os.environ.get('FSRS_OPTIMIZER_WORKERS', FSRSDefaultConfig.FSRS_OPTIMIZER_WORKERS))

    @classmethod
    def init_app(cls, app):
        """Create the SQLite database directory when the default URI is used."""
        if app.config.get('SQLALCHEMY_DATABASE_URI', '').startswith(f'sqlite:///{BASE_DIR}'):
            os.makedirs(os.path.dirname(DATABASE_PATH), exist_ok=True)
