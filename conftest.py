import os
import tempfile

import pytest

# app and models read their configuration at import time
_TMP = tempfile.mkdtemp(prefix="casino-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'casino.db')}"
os.environ["SECRET_KEY"] = "test-secret-key-with-enough-length-for-hs256"
os.environ["STORAGE_DIR"] = os.path.join(_TMP, "data")
os.environ["STORAGE_BACKEND"] = "file"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin123"

from app import app as flask_app  # noqa: E402
from models import Base, engine, ensure_schema, ensure_admin  # noqa: E402
from storage import FileKeyStore  # noqa: E402


@pytest.fixture()
def app(tmp_path):
    Base.metadata.drop_all(bind=engine)
    ensure_schema()
    ensure_admin("admin", "admin123")
    flask_app.config["TESTING"] = True
    flask_app.config["STORAGE_DIR"] = str(tmp_path)
    flask_app.extensions["kv_store"] = FileKeyStore(str(tmp_path))
    yield flask_app


@pytest.fixture()
def client(app):
    return app.test_client()


def signup(client, username="alice", email=None, password="secret1", **extra):
    body = {"username": username, "email": email or f"{username}@example.com", "password": password,
            "first_name": username.title(), "last_name": "Tester"}
    body.update(extra)
    return client.post("/api/auth/register", json=body)


@pytest.fixture()
def user_token(client):
    r = signup(client)
    assert r.status_code == 201, r.get_json()
    return r.get_json()["access_token"]


@pytest.fixture()
def admin_headers(client):
    r = client.post("/api/admin/login", json={"username": "admin", "password": "admin123"})
    assert r.status_code == 200, r.get_json()
    return {"Authorization": f"Bearer {r.get_json()['access_token']}"}
