from datetime import timedelta

from conftest import ADMIN_EMAIL, ADMIN_PASSWORD
from main import create_access_token
from settings import settings


def test_health(client):
    assert client.get("/").status_code == 200
    assert client.get("/test").json()["database"] == "Connected"


def test_uploads_serve_owner_folders_but_not_staging(client):
    upload_dir = settings.upload_dir_path
    (upload_dir / "staff").mkdir(parents=True, exist_ok=True)
    (upload_dir / "staff" / "public.txt").write_text("ok")
    (upload_dir / settings.STAGING_DIR_NAME).mkdir(parents=True, exist_ok=True)
    (upload_dir / settings.STAGING_DIR_NAME / "pending.txt").write_text("secret")

    assert client.get("/uploads/staff/public.txt").text == "ok"
    assert client.get(f"/uploads/{settings.STAGING_DIR_NAME}/pending.txt").status_code == 404


def test_login_returns_token_and_user(client, admin):
    resp = client.post("/api/auth/login", json={"email": ADMIN_EMAIL.upper(), "password": ADMIN_PASSWORD})
    assert resp.status_code == 200
    body = resp.json()
    assert body["token"]
    assert body["user"]["role"] == "SuperAdmin"
    assert "password_hash" not in body["user"]


def test_login_wrong_password(client, admin):
    resp = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": "nope"})
    assert resp.status_code == 401


def test_login_unknown_user(client, mongo_db):
    resp = client.post("/api/auth/login", json={"email": "ghost@school.com", "password": "x"})
    assert resp.status_code == 401


def test_me(client, admin_headers):
    resp = client.get("/api/auth/me", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["email"] == ADMIN_EMAIL


def test_me_via_cookie(client, admin_headers):
    token = admin_headers["Authorization"].split(" ", 1)[1]
    client.cookies.set("token", token)
    assert client.get("/api/auth/me").status_code == 200


def test_me_without_token(client, mongo_db):
    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_expired_token(client, admin):
    token = create_access_token(
        {"sub": str(admin["_id"]), "typ": "user"}, settings.JWT_SECRET, timedelta(minutes=-1)
    )
    resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_database_missing(client, monkeypatch):
    import database

    monkeypatch.setattr(database, "db", None)
    resp = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert resp.status_code == 500
    assert resp.json()["detail"] == "Database not available"
