"""Pytest fixtures for testing."""

import os
import tempfile

os.environ.setdefault("STORAGE_ROOT", tempfile.mkdtemp(prefix="school-admin-"))
os.environ["DATABASE_URL"] = ""

import mongomock  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import database  # noqa: E402
from attachments import AttachmentStore  # noqa: E402
from main import app, get_store  # noqa: E402
from seed_admin import seed_admin  # noqa: E402

ADMIN_EMAIL = "admin@school.com"
ADMIN_PASSWORD = "secret123"


@pytest.fixture
def mongo_db(monkeypatch):
    """In-memory Mongo database swapped in for the module-level handle."""
    db = mongomock.MongoClient()["school_admin_test"]
    monkeypatch.setattr(database, "db", db)
    return db


@pytest.fixture
def store(tmp_path) -> AttachmentStore:
    return AttachmentStore(tmp_path / "storage")


@pytest.fixture
def client(mongo_db, store):
    """Test client with the attachment store rooted in a temp directory."""
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def admin(mongo_db):
    seed_admin(ADMIN_EMAIL, ADMIN_PASSWORD)
    return mongo_db["user"].find_one({"email": ADMIN_EMAIL})


def login(client, email, password):
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}


@pytest.fixture
def admin_headers(client, admin):
    return login(client, ADMIN_EMAIL, ADMIN_PASSWORD)


def pdf(name="cv.pdf", body=b"%PDF-1.4 test"):
    return (name, body, "application/pdf")


def png(name="face.png", body=b"\x89PNG\r\n\x1a\n0000"):
    return (name, body, "image/png")


@pytest.fixture
def make_staff(client, admin_headers):
    """Factory creating staff records through the API."""
    counter = {"n": 0}

    def _make(files=None, **fields):
        counter["n"] += 1
        n = counter["n"]
        data = {
            "staff_id": f"T-{n:03d}",
            "full_name": f"Teacher {n}",
            "email": f"teacher{n}@school.com",
        }
        data.update(fields)
        resp = client.post("/api/staff", data=data, files=files or [], headers=admin_headers)
        assert resp.status_code == 201, resp.text
        return resp.json()["staff"]

    return _make


@pytest.fixture
def make_class(client, admin_headers):
    def _make(class_name="Grade 5", sections=None):
        resp = client.post(
            "/api/classes",
            json={"class_name": class_name, "sections": sections or [{"name": "A"}]},
            headers=admin_headers,
        )
        assert resp.status_code == 201, resp.text
        return resp.json()["class"]

    return _make
