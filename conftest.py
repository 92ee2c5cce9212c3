# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so app.py selects TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from donorhub.models import db  # noqa: E402
from donorhub.pipeline.serving import drop_serving_objects  # noqa: E402


@pytest.fixture(scope="function")
def app():
    """
    The module-level app bound to the in-memory test database.

    Tables are recreated for every test; serving views/tables are not part of
    the ORM metadata so they are dropped explicitly.
    """
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "METRICS_ENABLED": True,
            "PIPELINE_WORKER_ENABLED": False,
            "PIPELINE_SOURCES": (),
        }
    )
    with flask_app.app_context():
        drop_serving_objects()
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.rollback()
        drop_serving_objects()
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


# Pytest configuration
def pytest_configure(config):
    """Ensure testing environment and register markers"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers"""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.slow)
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
