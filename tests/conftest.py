import datetime
import os
import sys

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from flashstack_app import create_app, db
from flashstack_app.config import Config


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ENGINE_OPTIONS = {
        'connect_args': {'check_same_thread': False}
    }
    LOG_DIR = None
    FSRS_ENABLE_FUZZ = False
    FSRS_OPTIMIZER_MIN_SAMPLES = 50
    FSRS_OPTIMIZER_MAX_ITERATIONS = 15
    FSRS_OPTIMIZER_SCHEDULE_ENABLED = False


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def now():
    return datetime.datetime(2024, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)
