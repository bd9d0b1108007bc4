import pytest

from ..app import create_app
from ..database import DatabaseService
from ..settings import TestingConfig


@pytest.fixture
def app():
    """Flask app on a fresh in-memory database"""
    app = create_app(TestingConfig)
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db_service():
    """Standalone in-memory rate card store"""
    service = DatabaseService('sqlite:///:memory:')
    service.init_db()
    yield service
    service.engine.dispose()
