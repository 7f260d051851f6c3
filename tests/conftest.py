"""Shared test fixtures for the Point Tracker test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off,
  events drained synchronously)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: admin, supervisor and two plain users
- sent_emails: captures every notification instead of sending it
- login helpers
"""

from unittest.mock import patch

import pytest
from flask import g, request_started
from werkzeug.security import generate_password_hash

from pointtracker import create_app
from pointtracker.events import bus
from pointtracker.extensions import db as _db
from pointtracker.models.user import Role, User

PASSWORD = "password123"


def _forget_cached_login(sender, **extra):
    # Requests share the test's app context, so drop the user Flask-Login
    # cached in g by a previous request.
    g.pop("_login_user", None)


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    request_started.connect(_forget_cached_login, app)
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        bus.clear()
        yield _db.session
        _db.session.rollback()
        bus.clear()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


def make_user(name, email, role=Role.USER.value, **extra):
    user = User(
        name=name,
        email=email,
        password_hash=generate_password_hash(PASSWORD),
        role=role,
        **extra,
    )
    _db.session.add(user)
    _db.session.flush()
    return user


@pytest.fixture
def seed_data(app, db_session):
    """Seed the database with one user per role (two plain users).

    Returns a dict with the created users and their plain ids.
    """
    admin = make_user("Ada Admin", "admin@pointtracker.test", Role.ADMIN.value)
    supervisor = make_user("Sam Supervisor", "sam@pointtracker.test", Role.SUPERVISOR.value)
    alice = make_user("Alice Able", "alice@pointtracker.test")
    bob = make_user("Bob Baker", "bob@pointtracker.test")
    _db.session.commit()

    return {
        "admin": admin,
        "admin_id": admin.id,
        "supervisor": supervisor,
        "supervisor_id": supervisor.id,
        "alice": alice,
        "alice_id": alice.id,
        "bob": bob,
        "bob_id": bob.id,
    }


@pytest.fixture
def sent_emails():
    """Capture notification emails as dicts (to, subject, template, context)."""
    outbox = []

    def _capture(to, subject, template, context=None, reply_to=None):
        outbox.append({
            "to": to,
            "subject": subject,
            "template": template,
            "context": context or {},
        })

    with patch(
        "pointtracker.services.notification_service.send_email",
        side_effect=_capture,
    ):
        yield outbox


def login(client, email, password=PASSWORD):
    """Log the test client in as the given user."""
    return client.post("/auth/login", json={"email": email, "password": password})


def login_admin(client):
    return login(client, "admin@pointtracker.test")


def login_supervisor(client):
    return login(client, "sam@pointtracker.test")


def login_alice(client):
    return login(client, "alice@pointtracker.test")


def login_bob(client):
    return login(client, "bob@pointtracker.test")
