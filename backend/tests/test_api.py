import sqlite3
from datetime import timedelta

import pytest

import backend.config as config
import database.db as db
from backend.security import is_pbkdf2_hash, verify_password
from fakes import STUDENT_FINGERPRINT, TEST_PASSWORD, png_bytes


def _login(client, login, password=TEST_PASSWORD, fingerprint=STUDENT_FINGERPRINT, *, csrf="abc123", headers=None):
    sent = {"X-XSRF-TOKEN": csrf}
    sent.update(headers or {})
    return client.post(
        "/auth/login",
        json={"login": login, "password": password, "csrf_token": "abc123", "fingerprint": fingerprint},
        headers=sent,
    )


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_checkin_config_reports_defaults(client):
    res = client.get("/config/checkin")
    assert res.status_code == 200
    body = res.json()
    assert body["default_radius_meters"] == 120
    assert body["pin_validity_seconds"] == 60
    assert body["liveness_samples"] == 3
    assert body["face_match_threshold"] == 0.5


def test_csrf_endpoint_issues_fresh_tokens(client):
    first = client.get("/auth/csrf").json()["csrf_token"]
    second = client.get("/auth/csrf").json()["csrf_token"]
    assert len(first) == 64
    assert first != second


# -----------------------------
# Login
# -----------------------------
def test_login_rejects_csrf_mismatch(client, make_user):
    make_user("alice")
    res = _login(client, "alice", csrf="something-else")
    assert res.status_code == 401
    assert res.json()["success"] is False

    logs = db.list_activity_logs(action="login_failed")
    assert logs[0]["details"]["reason"] == "csrf_mismatch"


def test_login_rejects_invalid_credentials_uniformly(client, make_user):
    make_user("alice")

    wrong_password = _login(client, "alice", password="nope")
    unknown_login = _login(client, "nobody")

    assert wrong_password.status_code == 401
    assert unknown_login.status_code == 401
    assert wrong_password.json() == unknown_login.json()
    assert wrong_password.json()["error"] == "Invalid login or password."


def test_login_requires_fingerprint(client, make_user):
    make_user("alice")
    res = _login(client, "alice", fingerprint="")
    assert res.status_code == 400


def test_login_computes_fingerprint_from_device_traits(client, make_user):
    make_user("alice")
    res = client.post(
        "/auth/login",
        json={
            "login": "alice",
            "password": TEST_PASSWORD,
            "csrf_token": "abc123",
            "device": {"user_agent": "Mozilla/5.0", "language": "en-US", "screen_width": 1920},
        },
        headers={"X-XSRF-TOKEN": "abc123"},
    )
    assert res.status_code == 200
    stored = db.get_active_user_by_login("alice")["device_fingerprint"]
    assert len(stored) == 128


def test_login_binds_device_and_returns_session(client, make_user):
    make_user("alice")
    res = _login(client, "alice")
    assert res.status_code == 200

    body = res.json()
    assert body["success"] is True
    assert len(body["token"]) == 64
    assert len(body["refresh_token"]) == 128
    assert body["user"] == {
        "id": body["user"]["id"],
        "login": "alice",
        "full_name": "Alice",
        "role": "student",
        "is_active": True,
    }
    assert "password_hash" not in body["user"]
    assert db.get_active_user_by_login("alice")["device_fingerprint"] == STUDENT_FINGERPRINT


def test_student_device_mismatch_is_blocked(client, make_user):
    make_user("alice", fingerprint=STUDENT_FINGERPRINT)
    res = _login(client, "alice", fingerprint="another-phone")
    assert res.status_code == 403

    attempts = db.list_login_attempts("alice")
    assert attempts[0]["success"] is False
    assert db.get_active_user_by_login("alice")["device_fingerprint"] == STUDENT_FINGERPRINT


def test_admin_device_mismatch_is_blocked(client):
    assert _login(client, config.ADMIN_LOGIN, config.ADMIN_PASSWORD, "admin-device").status_code == 200
    res = _login(client, config.ADMIN_LOGIN, config.ADMIN_PASSWORD, "stranger-laptop")
    assert res.status_code == 403


def test_teacher_device_change_rebinds(client, make_user):
    make_user("bob", role="teacher", fingerprint="old-laptop")
    res = _login(client, "bob", fingerprint="new-laptop")
    assert res.status_code == 200
    assert db.get_active_user_by_login("bob")["device_fingerprint"] == "new-laptop"

    changes = db.list_activity_logs(action="device_changed")
    assert changes[0]["details"]["previous_fingerprint"] == "old-laptop"


def test_legacy_plaintext_password_is_upgraded(client):
    db.create_user("legacy", "Legacy User", "student", "plain-secret")
    res = _login(client, "legacy", password="plain-secret")
    assert res.status_code == 200
    assert is_pbkdf2_hash(db.get_active_user_by_login("legacy")["password_hash"])


def test_legacy_upgrade_writes_once(client, monkeypatch):
    db.create_user("legacy", "Legacy User", "student", "plain-secret")
    writes = []
    original = db.update_password_hash

    def _counting(user_id, password_hash):
        writes.append(user_id)
        original(user_id, password_hash)

    monkeypatch.setattr(db, "update_password_hash", _counting)
    assert _login(client, "legacy", password="plain-secret").status_code == 200
    assert _login(client, "legacy", password="plain-secret").status_code == 200
    assert len(writes) == 1


def test_inactive_account_cannot_login(client):
    db.create_user("gone", "Gone", "student", "x", is_active=False)
    assert _login(client, "gone", password="x").status_code == 401


def test_rate_limit_after_five_failures(client, make_user):
    make_user("alice")
    for _ in range(5):
        assert _login(client, "alice", password="wrong").status_code == 401

    res = _login(client, "alice")
    assert res.status_code == 429
    assert res.json()["success"] is False


def test_rate_limit_counts_failures_per_ip(client, make_user):
    make_user("alice")
    for i in range(5):
        assert _login(client, f"ghost{i}", password="wrong").status_code == 401

    assert _login(client, "alice").status_code == 429


def test_blocked_ip_is_rejected_and_recorded(client, make_user, admin_headers):
    make_user("alice")
    res = client.post(
        "/admin/ip/block",
        json={"target_ip": "10.0.0.9", "reason": "scanner"},
        headers=admin_headers,
    )
    assert res.status_code == 200

    blocked = {"X-Forwarded-For": "10.0.0.9, 172.16.0.1"}
    res = _login(client, "alice", headers=blocked)
    assert res.status_code == 403
    assert db.list_login_attempts("alice")[0]["ip_address"] == "10.0.0.9"
    assert client.get("/auth/csrf", headers=blocked).status_code == 403

    listed = client.get("/admin/ip/blocked", headers=admin_headers).json()["data"]
    assert [r["ip_address"] for r in listed] == ["10.0.0.9"]

    res = client.post("/admin/ip/unblock", json={"target_ip": "10.0.0.9"}, headers=admin_headers)
    assert res.status_code == 200
    assert _login(client, "alice", headers=blocked).status_code == 200


def test_expired_block_no_longer_applies(client, make_user):
    make_user("alice")
    db.upsert_ip_rule("10.0.0.9", "blacklist", expires_at=db.utcnow() - timedelta(minutes=1))

    assert not db.is_ip_blocked("10.0.0.9")
    assert _login(client, "alice", headers={"X-Forwarded-For": "10.0.0.9"}).status_code == 200


def test_unblock_unknown_ip_is_not_found(client, admin_headers):
    res = client.post("/admin/ip/unblock", json={"target_ip": "1.2.3.4"}, headers=admin_headers)
    assert res.status_code == 404


# -----------------------------
# Sessions
# -----------------------------
def test_second_login_invalidates_first_token(client, make_user, login_as):
    make_user("alice")
    first, first_headers = login_as("alice")
    second, second_headers = login_as("alice")

    assert first["token"] != second["token"]
    assert client.get("/auth/me", headers=first_headers).status_code == 401
    assert client.get("/auth/me", headers=second_headers).json()["user"]["login"] == "alice"


def test_refresh_rotates_access_token_only(client, make_user, login_as):
    make_user("alice")
    body, headers = login_as("alice")

    res = client.post("/auth/refresh", json={"refresh_token": body["refresh_token"]})
    assert res.status_code == 200
    rotated = res.json()["access_token"]
    assert rotated != body["token"]

    assert client.get("/auth/me", headers=headers).status_code == 401
    assert client.get("/auth/me", headers={"Authorization": f"Bearer {rotated}"}).status_code == 200

    again = client.post("/auth/refresh", json={"refresh_token": body["refresh_token"]})
    assert again.status_code == 200


def test_refresh_rejects_unknown_token(client):
    assert client.post("/auth/refresh", json={"refresh_token": "nope"}).status_code == 401
    assert client.post("/auth/refresh", json={}).status_code == 400


def test_validate_reports_validity(client, make_user, login_as):
    make_user("alice")
    body, _ = login_as("alice")

    valid = client.post("/auth/validate", json={"token": body["token"]}).json()
    assert valid["valid"] is True
    assert valid["user"]["login"] == "alice"

    invalid = client.post("/auth/validate", json={"token": "missing"}).json()
    assert invalid == {"success": True, "valid": False}


def test_logout_deletes_session(client, make_user, login_as):
    make_user("alice")
    body, headers = login_as("alice")

    res = client.post("/auth/logout", json={}, headers=headers)
    assert res.status_code == 200
    assert client.post("/auth/validate", json={"token": body["token"]}).json()["valid"] is False
    assert db.list_activity_logs(action="logout")


def test_me_requires_bearer_token(client):
    res = client.get("/auth/me")
    assert res.status_code == 401
    assert res.json() == {"success": False, "error": "Missing bearer token."}


def test_request_validation_errors_use_failure_shape(client):
    res = client.post("/auth/login", json={"login": "alice"})
    assert res.status_code == 422
    assert res.json()["success"] is False
    assert "password" in res.json()["error"]


# -----------------------------
# Admin
# -----------------------------
def test_admin_endpoints_reject_non_admin(client, make_user, login_as):
    make_user("alice")
    _, headers = login_as("alice")

    assert client.get("/admin/ip/blocked", headers=headers).status_code == 403
    assert client.post("/auth/hash-password", json={"password": "x"}, headers=headers).status_code == 403


def test_admin_mutations_require_csrf_header(client, admin_headers):
    bearer_only = {"Authorization": admin_headers["Authorization"]}
    res = client.post("/admin/ip/block", json={"target_ip": "10.0.0.1"}, headers=bearer_only)
    assert res.status_code == 401
    assert db.list_ip_rules() == []


def test_hash_password_endpoint(client, admin_headers):
    res = client.post("/auth/hash-password", json={"password": "s3cret"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["hash"].startswith("$pbkdf2$")


def test_hash_password_endpoint_keeps_password_verbatim(client, admin_headers):
    res = client.post("/auth/hash-password", json={"password": "  a<b>c  "}, headers=admin_headers)
    assert verify_password("  a<b>c  ", res.json()["hash"])
    assert not verify_password("abc", res.json()["hash"])


def test_login_attempts_listing(client, make_user, admin_headers):
    make_user("alice")
    _login(client, "alice", password="wrong")

    res = client.get("/admin/login-attempts", params={"login": "alice"}, headers=admin_headers)
    assert res.status_code == 200
    rows = res.json()["data"]
    assert len(rows) == 1
    assert rows[0]["success"] is False


def test_admin_resets_device_binding(client, make_user, admin_headers):
    alice = make_user("alice", fingerprint="old-phone")

    res = client.post(f"/admin/users/{alice['id']}/device/reset", headers=admin_headers)
    assert res.status_code == 200
    assert db.get_user_by_id(alice["id"])["device_fingerprint"] is None

    assert _login(client, "alice", fingerprint="new-phone").status_code == 200
    assert client.post("/admin/users/9999/device/reset", headers=admin_headers).status_code == 404


def test_admin_enrolls_face(client, make_user, admin_headers, face_model):
    alice = make_user("alice")

    res = client.post(
        f"/admin/users/{alice['id']}/face",
        files={"file": ("face.png", png_bytes(50), "image/png")},
        headers=admin_headers,
    )
    assert res.status_code == 200
    assert db.get_user_by_id(alice["id"])["face_embedding"] == face_model.embedding


def test_admin_enroll_rejects_frame_without_face(client, make_user, admin_headers):
    alice = make_user("alice")
    res = client.post(
        f"/admin/users/{alice['id']}/face",
        files={"file": ("face.png", png_bytes(0), "image/png")},
        headers=admin_headers,
    )
    assert res.status_code == 400
    assert db.get_user_by_id(alice["id"])["face_embedding"] is None


def test_activity_log_listing(client, admin_headers):
    res = client.get("/admin/activity-logs", params={"action": "login_success"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["data"][0]["action"] == "login_success"


# -----------------------------
# Lessons
# -----------------------------
def _start_lesson(client, headers, **overrides):
    payload = {"latitude": 55.7558, "longitude": 37.6173, "group_id": 7}
    payload.update(overrides)
    res = client.post("/lessons", json=payload, headers=headers)
    assert res.status_code == 200, res.text
    return res.json()


def test_teacher_starts_lesson_with_absent_roster(client, make_user, login_as):
    make_user("bob", role="teacher")
    make_user("alice", group_id=7)
    make_user("carol", group_id=7)
    make_user("dave", group_id=8)
    _, headers = login_as("bob", fingerprint="bob-laptop")

    lesson = _start_lesson(client, headers)
    assert len(lesson["pin_code"]) == 6 and lesson["pin_code"].isdigit()
    assert lesson["radius_meters"] == 120

    rows = client.get(f"/lessons/{lesson['lesson_id']}/attendance", headers=headers).json()["data"]
    assert sorted(r["login"] for r in rows) == ["alice", "carol"]
    assert {r["status"] for r in rows} == {"absent"}


def test_lesson_endpoints_are_teacher_only(client, make_user, login_as):
    make_user("alice")
    _, headers = login_as("alice")
    res = client.post("/lessons", json={"latitude": 1.0, "longitude": 2.0}, headers=headers)
    assert res.status_code == 403


def test_lesson_belongs_to_its_teacher(client, make_user, login_as):
    make_user("bob", role="teacher")
    make_user("eve", role="teacher")
    _, bob = login_as("bob", fingerprint="bob-laptop")
    _, eve = login_as("eve", fingerprint="eve-laptop")

    lesson = _start_lesson(client, bob)
    assert client.post(f"/lessons/{lesson['lesson_id']}/end", headers=eve).status_code == 403
    assert client.get("/lessons/9999/attendance", headers=bob).status_code == 404


def test_manual_attendance_override(client, make_user, login_as):
    make_user("bob", role="teacher")
    alice = make_user("alice", group_id=7)
    _, headers = login_as("bob", fingerprint="bob-laptop")
    lesson_id = _start_lesson(client, headers)["lesson_id"]

    url = f"/lessons/{lesson_id}/attendance/{alice['id']}"
    res = client.patch(url, json={"status": "excused"}, headers=headers)
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "excused"
    assert db.get_attendance(lesson_id, alice["id"])["status"] == "excused"

    assert client.patch(url, json={"status": "suspicious"}, headers=headers).status_code == 422
    missing = f"/lessons/{lesson_id}/attendance/9999"
    assert client.patch(missing, json={"status": "present"}, headers=headers).status_code == 404


def test_teacher_updates_lesson_radius(client, make_user, login_as):
    make_user("bob", role="teacher")
    make_user("eve", role="teacher")
    _, bob = login_as("bob", fingerprint="bob-laptop")
    _, eve = login_as("eve", fingerprint="eve-laptop")
    lesson_id = _start_lesson(client, bob)["lesson_id"]
    url = f"/lessons/{lesson_id}/radius"

    res = client.patch(url, json={"radius_meters": 300}, headers=bob)
    assert res.status_code == 200
    assert db.get_lesson(lesson_id)["radius_meters"] == 300
    audit_row = db.list_activity_logs(action="lesson_radius_updated")[0]
    assert audit_row["details"]["from_radius"] == 120

    assert client.patch(url, json={"radius_meters": 0}, headers=bob).status_code == 422
    assert client.patch(url, json={"radius_meters": 50}, headers=eve).status_code == 403

    client.post(f"/lessons/{lesson_id}/end", headers=bob)
    assert client.patch(url, json={"radius_meters": 50}, headers=bob).status_code == 400


def test_regenerate_pin_and_end_lesson(client, make_user, login_as):
    make_user("bob", role="teacher")
    _, headers = login_as("bob", fingerprint="bob-laptop")
    lesson = _start_lesson(client, headers)
    lesson_id = lesson["lesson_id"]

    res = client.post(f"/lessons/{lesson_id}/pin", headers=headers)
    assert res.status_code == 200
    assert res.json()["pin_expires_at"] >= lesson["pin_expires_at"]

    ended = client.post(f"/lessons/{lesson_id}/end", headers=headers).json()
    assert ended["ended"] is True
    stored = db.get_lesson(lesson_id)
    assert stored["is_active"] is False
    assert stored["pin_code"] is None

    assert client.post(f"/lessons/{lesson_id}/pin", headers=headers).status_code == 400


def test_admin_creates_accounts(client, admin_headers, login_as):
    res = client.post(
        "/admin/users",
        json={"login": "zoe", "full_name": "Zoe Q", "role": "student", "password": "pw-123", "group_id": 4},
        headers=admin_headers,
    )
    assert res.status_code == 200
    assert res.json()["user"]["role"] == "student"

    duplicate = client.post(
        "/admin/users",
        json={"login": "zoe", "full_name": "Other", "role": "teacher", "password": "pw"},
        headers=admin_headers,
    )
    assert duplicate.status_code == 409
    assert duplicate.json() == {"success": False, "error": "Login already exists."}

    body, _ = login_as("zoe", password="pw-123")
    assert body["user"]["full_name"] == "Zoe Q"


def test_failed_insert_leaves_database_writable(store):
    db.create_user("zoe", "Zoe", "student", "x")
    with pytest.raises(sqlite3.IntegrityError):
        db.create_user("zoe", "Zoe Again", "student", "y")

    db.record_login_attempt("zoe", "127.0.0.1", "pytest", True)
    assert db.list_login_attempts("zoe")[0]["success"] is True


@pytest.mark.parametrize("password", ["  padded  ", "a<b>c-pass"])
def test_provisioned_password_logs_in_as_typed(client, admin_headers, login_as, password):
    res = client.post(
        "/admin/users",
        json={"login": "zoe", "full_name": "Zoe Q", "role": "student", "password": password},
        headers=admin_headers,
    )
    assert res.status_code == 200

    body, _ = login_as("zoe", password=password)
    assert body["user"]["login"] == "zoe"
    normalized = password.strip().replace("<", "").replace(">", "")
    assert _login(client, "zoe", password=normalized).status_code == 401


def test_admin_adds_student_to_group(client, make_user, admin_headers):
    alice = make_user("alice")
    bob = make_user("bob", role="teacher")

    assert client.post(f"/admin/groups/5/students/{alice['id']}", headers=admin_headers).status_code == 200
    assert client.post(f"/admin/groups/5/students/{bob['id']}", headers=admin_headers).status_code == 404
