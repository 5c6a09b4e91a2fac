"""
Test configuration and fixtures.

Provides:
- An in-memory MongoDB (mongomock) per test
- Store instances bound to it
- Registered user/admin accounts and bearer headers
- A FastAPI TestClient with ``get_db`` pointed at the in-memory database
"""
import os

# Settings are read at import time
os.environ["JWT_SECRET"] = "test-secret"
os.environ["PASSWORD_HASH_ITERATIONS"] = "1000"
os.environ["ALLOW_ROLE_OVERRIDE"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

import mongomock
import pytest
from fastapi.testclient import TestClient

from activity_store import ActivityFeed
from contact_store import ContactStore
from lead_store import LeadStore
from main import app, get_db
from security import create_access_token
from task_store import TaskStore
from user_store import UserStore


# =============================================================================
# Database / stores
# =============================================================================

@pytest.fixture
def db():
    client = mongomock.MongoClient()
    yield client["crm_test"]
    # clients on the same host share storage
    client.drop_database("crm_test")


@pytest.fixture
def users(db) -> UserStore:
    return UserStore(db)


@pytest.fixture
def contacts(db) -> ContactStore:
    return ContactStore(db)


@pytest.fixture
def leads(db) -> LeadStore:
    return LeadStore(db)


@pytest.fixture
def tasks(db) -> TaskStore:
    return TaskStore(db)


@pytest.fixture
def activities(db) -> ActivityFeed:
    return ActivityFeed(db)


# =============================================================================
# Accounts
# =============================================================================

@pytest.fixture
def user(users):
    return users.register({"name": "Asha Rao", "email": "asha@example.com"}, "secret123")


@pytest.fixture
def other_user(users):
    return users.register({"name": "Ben Ortiz", "email": "ben@example.com"}, "secret123")


@pytest.fixture
def admin(users):
    account = users.register({"name": "Root Admin", "email": "admin@example.com"}, "secret123")
    return users.update_user(account["id"], {"role": "admin"})


def bearer(user_id) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def auth_headers(user) -> dict:
    return bearer(user["id"])


@pytest.fixture
def other_headers(other_user) -> dict:
    return bearer(other_user["id"])


@pytest.fixture
def admin_headers(admin) -> dict:
    return bearer(admin["id"])


# =============================================================================
# HTTP client
# =============================================================================

@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()
