import os
from datetime import datetime, timedelta

# Configuration is read at import time, so the environment is set up first
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["ADMIN_USERNAME"] = "librarian"
os.environ["ADMIN_PASSWORD"] = "admin-secret"
os.environ["ADMIN_EMAIL"] = "librarian@library.local"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ["BCRYPT_ROUNDS"] = "4"
for name in ("OIDC_ISSUER_URL", "OIDC_CLIENT_ID", "OIDC_CLIENT_SECRET", "OIDC_REDIRECT_URI"):
    os.environ.pop(name, None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from library_lending import models  # noqa: F401
from library_lending.database import Base, get_db
from library_lending.endpoints import app

ADMIN_USERNAME = "librarian"
ADMIN_PASSWORD = "admin-secret"
USER_PASSWORD = "secret1"

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """
    Override function for the database dependency.

    This replaces the normal get_db() with one that uses the test database.
    FastAPI's dependency injection will call this instead during tests.
    """
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def setup_database():
    """
    Fixture to set up and tear down the database for each test.

    Internal Working:
    1. autouse=True: runs automatically around every test
    2. Before yield: create all tables in the test database
    3. After yield: drop all tables so the next test starts clean
    """
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


def register(client, username, password=USER_PASSWORD, **overrides):
    payload = {
        "username": username,
        "password": password,
        "confirmPassword": password,
        "email": f"{username}@example.com",
        "firstName": username.capitalize(),
        "lastName": "Reader",
    }
    payload.update(overrides)
    return client.post("/api/auth/register", json=payload)


def due_in(days=14):
    return (datetime.now() + timedelta(days=days)).isoformat()


@pytest.fixture
def admin_client():
    """A client holding the configured administrator's session cookie."""
    client = TestClient(app)
    response = client.post(
        "/api/auth/login", json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD}
    )
    assert response.status_code == 200
    return client


@pytest.fixture
def user_client():
    """A client logged in as a freshly registered patron (alice)."""
    client = TestClient(app)
    response = register(client, "alice")
    assert response.status_code == 201
    return client


@pytest.fixture
def other_user_client():
    client = TestClient(app)
    response = register(client, "bob")
    assert response.status_code == 201
    return client


@pytest.fixture
def create_book(admin_client):
    """Factory adding a book through the API as the administrator."""

    def _create(isbn="978-0-00-000001-1", **overrides):
        payload = {
            "isbn": isbn,
            "title": "The Left Hand of Darkness",
            "author": "Ursula K. Le Guin",
            "genre": "Science Fiction",
            "quantity": 1,
        }
        payload.update(overrides)
        response = admin_client.post("/api/books", json=payload)
        assert response.status_code == 201, response.text
        return response.json()

    return _create
