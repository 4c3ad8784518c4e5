# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so app.py uses TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from crm_migrator.models import Organization, User, db  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application backed by a fresh schema"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "MONITORING_ENABLED": False,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "MIGRATIONS_ENABLED": True,
            "MIGRATION_SOURCES": ("acculynx", "jobnimbus", "csv", "roofr", "hover", "other"),
            "MIGRATION_WORKER_ENABLED": False,
            "MIGRATION_RETRY_BASE_DELAY": 0.0,
            "MIGRATION_RETRY_MAX_DELAY": 0.0,
            "MIGRATION_ARTIFACT_DIR": str(tmp_path / "artifacts"),
            "MIGRATION_UPLOAD_DIR": str(tmp_path / "uploads"),
        }
    )
    state = flask_app.extensions.get("migrations")
    if state is not None:
        state["adapter_factory"] = None
        state["worker_enabled"] = False

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
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


@pytest.fixture
def test_organization(app):
    """Organization that owns migration jobs in tests"""
    org = Organization(name="Summit Roofing", slug="summit-roofing", is_active=True)
    db.session.add(org)
    db.session.commit()
    return org


@pytest.fixture
def test_user(test_organization):
    """Operator attached to ``test_organization``"""
    user = User(
        username="operator",
        email="operator@example.com",
        is_active=True,
        organization_id=test_organization.id,
    )
    user.set_password("operatorpass123")
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def logged_in_client(client, test_user):
    """Test client with ``test_user`` signed in"""
    with client.session_transaction() as session:
        session["_user_id"] = str(test_user.id)
        session["_fresh"] = True
    return client
