import os

# Shared-secret tokens only; never reach out to Google's key endpoint in tests
os.environ.pop("FIREBASE_PROJECT_ID", None)
os.environ.pop("DATABASE_URL", None)

import mongomock
import pytest
from fastapi.testclient import TestClient

from main import app
from database import get_db
from security import create_access_token


@pytest.fixture
def db():
    mock_db = mongomock.MongoClient().styledecor_test
    app.dependency_overrides[get_db] = lambda: mock_db
    yield mock_db
    app.dependency_overrides.clear()


@pytest.fixture
def client(db):
    return TestClient(app)


@pytest.fixture
def auth():
    def _headers(email: str):
        return {"Authorization": f"Bearer {create_access_token(email)}"}
    return _headers


@pytest.fixture
def add_user(db):
    def _add(email: str, role: str = "user", **extra):
        doc = {"email": email, "name": email.split("@")[0], "role": role, **extra}
        return db["user"].insert_one(doc).inserted_id
    return _add


@pytest.fixture
def add_booking(db):
    def _add(customer_email: str = "cust@example.com", **extra):
        doc = {
            "service_id": "svc-1",
            "service_name": "Wedding Stage",
            "price": 1200.0,
            "customer_email": customer_email,
            "payment_status": "unpaid",
            "service_status": "pending",
            **extra,
        }
        return db["booking"].insert_one(doc).inserted_id
    return _add
