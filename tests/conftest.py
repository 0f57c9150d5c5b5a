"""
Shared fixtures.

Every test gets a fresh application bound to its own SQLite file.

Two ways in:
- `client` drives the JSON API. Do not hold an app context around client calls
  (Flask-Login caches the current user on the app context).
- `session` pushes an app context and yields the SQLAlchemy session for
  service-level tests.
"""

import pytest

from dasheet_manager import create_app
from dasheet_manager.auth import SessionManager
from dasheet_manager.extensions import db

PASSWORD = "Passw0rd!"

ACCOUNTS = {
    "admin": ("ADMIN01", "admin@example.com", "admin"),
    "alice": ("ALICE01", "alice@example.com", "user"),
    "bob": ("BOB01", "bob@example.com", "user"),
    "carol": ("CAROL01", "carol@example.com", "user"),
}


@pytest.fixture
def app(tmp_path):
    app = create_app(
        "config.TestingConfig",
        {"SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}"},
    )
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def session(app):
    with app.app_context():
        yield db.session
        db.session.remove()


@pytest.fixture
def users(app):
    """Registered accounts, name -> user id."""
    with app.app_context():
        manager = SessionManager(db.session, app.config)
        ids = {
            name: manager.register(code, email, PASSWORD, role=role).id
            for name, (code, email, role) in ACCOUNTS.items()
        }
        db.session.remove()
    return ids


@pytest.fixture
def login(client, users):
    """login("alice") -> access token (also stores the refresh cookie on the client)."""

    def _login(name: str) -> str:
        response = client.post("/auth/login", json={"code": ACCOUNTS[name][0], "password": PASSWORD})
        assert response.status_code == 200, response.get_json()
        return response.get_json()["access_token"]

    return _login


@pytest.fixture
def auth_headers(login):
    """auth_headers("alice") -> {"Authorization": "Bearer ..."}"""

    def _headers(name: str) -> dict:
        return {"Authorization": f"Bearer {login(name)}"}

    return _headers


@pytest.fixture
def template_payload():
    """
    Build a template body. `weights` is one tuple of parameter weightages per
    category; the default totals 100.
    """

    def _payload(weights=((30, 20), (25, 15, 10)), **overrides) -> dict:
        body = {
            "name": "Cloud CRM Evaluation",
            "type": "SaaS",
            "description": "Vendor scoring for the CRM tender",
            "categories": [
                {
                    "name": f"Category {c_index + 1}",
                    "parameters": [
                        {"name": f"Criterion {c_index + 1}.{p_index + 1}", "weightage": weightage, "comment": ""}
                        for p_index, weightage in enumerate(category)
                    ],
                }
                for c_index, category in enumerate(weights)
            ],
        }
        body.update(overrides)
        return body

    return _payload
