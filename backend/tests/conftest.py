import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.security as security
import database.db as db
from backend.recognizer import get_face_model_loader
from fakes import STUDENT_FINGERPRINT, TEST_PASSWORD, FakeFaceModel


@pytest.fixture()
def store(tmp_path, monkeypatch):
    test_db = tmp_path / "cybercheck_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    # Cheap hashing and no pauses between liveness samples.
    monkeypatch.setattr(security, "PASSWORD_HASH_ITERATIONS", 1000)
    monkeypatch.setattr(config, "LIVENESS_SAMPLE_INTERVAL_SECONDS", 0.0)

    db.create_tables()
    return test_db


@pytest.fixture()
def face_model():
    return FakeFaceModel()


@pytest.fixture()
def client(store, face_model):
    main.app.dependency_overrides[get_face_model_loader] = lambda: (lambda: face_model)
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture()
def make_user(store):
    def _make_user(
        login: str,
        role: str = "student",
        *,
        password: str = TEST_PASSWORD,
        fingerprint: str | None = None,
        embedding: list[float] | None = None,
        group_id: int | None = None,
    ) -> dict:
        user_id = db.create_user(login, login.title(), role, security.hash_password(password))
        if fingerprint:
            db.set_device_fingerprint(user_id, fingerprint)
        if embedding is not None:
            db.set_face_embedding(user_id, embedding)
        if group_id is not None:
            db.add_student_to_group(user_id, group_id)
        return db.get_user_by_id(user_id)

    return _make_user


@pytest.fixture()
def login_as(client):
    """Log in through the HTTP surface and return (body, headers for later calls)."""

    def _login_as(login: str, password: str = TEST_PASSWORD, fingerprint: str = STUDENT_FINGERPRINT):
        csrf = client.get("/auth/csrf").json()["csrf_token"]
        res = client.post(
            "/auth/login",
            json={"login": login, "password": password, "csrf_token": csrf, "fingerprint": fingerprint},
            headers={"X-XSRF-TOKEN": csrf},
        )
        assert res.status_code == 200, res.text
        body = res.json()
        headers = {
            "Authorization": f"Bearer {body['token']}",
            "X-XSRF-TOKEN": body["csrf_token"],
        }
        return body, headers

    return _login_as


@pytest.fixture()
def admin_headers(login_as):
    _, headers = login_as(config.ADMIN_LOGIN, config.ADMIN_PASSWORD, fingerprint="admin-device")
    return headers
