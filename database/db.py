import json
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from backend.config import (
    ADMIN_LOGIN,
    ADMIN_PASSWORD,
    DB_PATH,
    LOGIN_ATTEMPT_RETENTION_HOURS,
)

Role = Literal["admin", "teacher", "student"]
AttendanceStatus = Literal["present", "absent", "excused", "unexcused", "suspicious"]
IpRuleType = Literal["blacklist", "whitelist"]

ROLES: set[str] = {"admin", "teacher", "student"}
ATTENDANCE_STATUSES: set[str] = {"present", "absent", "excused", "unexcused", "suspicious"}

_USER_COLUMNS = (
    "id, login, full_name, role, password_hash, device_fingerprint, "
    "face_embedding, is_active, created_at, updated_at"
)
_SESSION_COLUMNS = (
    "id, user_id, token, refresh_token, csrf_token, fingerprint, user_agent, "
    "ip_address, expires_at, refresh_expires_at, created_at"
)
_LESSON_COLUMNS = (
    "id, teacher_id, group_id, subject_id, latitude, longitude, radius_meters, "
    "pin_code, pin_expires_at, is_active, started_at, ended_at"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    # Fixed width so stored timestamps compare correctly as strings.
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    # Local import: security pulls config only, but keeps hashing in one place.
    from backend.security import hash_password

    login = (ADMIN_LOGIN or "").strip()
    password = ADMIN_PASSWORD or ""
    if not login or not password.strip():
        return

    cursor.execute("SELECT id FROM users WHERE login = ?", (login,))
    if cursor.fetchone():
        return

    now = to_iso(utcnow())
    cursor.execute(
        """
        INSERT INTO users (login, full_name, role, password_hash, created_at, updated_at)
        VALUES (?, ?, 'admin', ?, ?, ?)
        """,
        (login, "Administrator", hash_password(password), now, now),
    )


_SCHEMA = """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        login TEXT NOT NULL UNIQUE,
        full_name TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('admin', 'teacher', 'student')),
        password_hash TEXT NOT NULL,
        device_fingerprint TEXT,
        face_embedding TEXT,                 -- JSON array of 128 floats
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS student_groups (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER NOT NULL,
        group_id INTEGER NOT NULL,
        FOREIGN KEY (student_id) REFERENCES users(id) ON DELETE CASCADE,
        UNIQUE(student_id, group_id)
    );

    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL UNIQUE,     -- single-session policy
        token TEXT NOT NULL UNIQUE,
        refresh_token TEXT NOT NULL UNIQUE,
        csrf_token TEXT NOT NULL,
        fingerprint TEXT,
        user_agent TEXT,
        ip_address TEXT,
        expires_at TEXT NOT NULL,
        refresh_expires_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS login_attempts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        login TEXT NOT NULL,
        ip_address TEXT NOT NULL,
        user_agent TEXT,
        success INTEGER NOT NULL,
        created_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_login_attempts_login ON login_attempts(login, created_at);
    CREATE INDEX IF NOT EXISTS idx_login_attempts_ip ON login_attempts(ip_address, created_at);

    CREATE TABLE IF NOT EXISTS ip_rules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ip_address TEXT NOT NULL,
        rule_type TEXT NOT NULL CHECK (rule_type IN ('blacklist', 'whitelist')),
        reason TEXT,
        created_by INTEGER,
        expires_at TEXT,
        created_at TEXT NOT NULL,
        UNIQUE(ip_address, rule_type)
    );

    CREATE TABLE IF NOT EXISTS lessons (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        teacher_id INTEGER NOT NULL,
        group_id INTEGER,
        subject_id INTEGER,
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        radius_meters INTEGER,
        pin_code TEXT,
        pin_expires_at TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        started_at TEXT NOT NULL,
        ended_at TEXT,
        FOREIGN KEY (teacher_id) REFERENCES users(id) ON DELETE CASCADE
    );
    CREATE INDEX IF NOT EXISTS idx_lessons_pin ON lessons(pin_code, is_active);

    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        lesson_id INTEGER NOT NULL,
        student_id INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'absent'
            CHECK (status IN ('present', 'absent', 'excused', 'unexcused', 'suspicious')),
        check_in_time TEXT,
        latitude REAL,
        longitude REAL,
        distance_meters REAL,
        is_fake_gps INTEGER NOT NULL DEFAULT 0,
        suspicious_reason TEXT,
        fingerprint TEXT,
        user_agent TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (lesson_id) REFERENCES lessons(id) ON DELETE CASCADE,
        FOREIGN KEY (student_id) REFERENCES users(id) ON DELETE CASCADE,
        UNIQUE(lesson_id, student_id)
    );

    CREATE TABLE IF NOT EXISTS activity_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER,
        action TEXT NOT NULL,
        details TEXT,                        -- JSON object
        ip_address TEXT,
        user_agent TEXT,
        created_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_activity_logs_user ON activity_logs(user_id, created_at);
    """


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()
    try:
        cursor.executescript(_SCHEMA)
        _ensure_default_admin(cursor)
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


def _user_from_row(row: sqlite3.Row | None) -> dict | None:
    user = _row_to_dict(row)
    if user is None:
        return None
    raw_embedding = user.get("face_embedding")
    user["face_embedding"] = json.loads(raw_embedding) if raw_embedding else None
    user["is_active"] = bool(user["is_active"])
    return user


# -----------------------------
# Users
# -----------------------------
def create_user(
    login: str,
    full_name: str,
    role: Role,
    password_hash: str,
    *,
    is_active: bool = True,
) -> int:
    clean_login = login.strip()
    if not clean_login:
        raise ValueError("Login is required.")
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")

    now = to_iso(utcnow())
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO users (login, full_name, role, password_hash, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (clean_login, full_name.strip(), role, password_hash, 1 if is_active else 0, now, now),
        )
        conn.commit()
        return int(cur.lastrowid)
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_user_by_id(user_id: int) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,))
    row = cur.fetchone()
    conn.close()
    return _user_from_row(row)


def get_active_user_by_login(login: str) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_USER_COLUMNS}
        FROM users
        WHERE login = ? AND is_active = 1
        """,
        (login,),
    )
    row = cur.fetchone()
    conn.close()
    return _user_from_row(row)


def update_password_hash(user_id: int, password_hash: str) -> None:
    conn = connect_db()
    try:
        conn.execute(
            "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
            (password_hash, to_iso(utcnow()), user_id),
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def set_device_fingerprint(user_id: int, fingerprint: str | None) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            "UPDATE users SET device_fingerprint = ?, updated_at = ? WHERE id = ?",
            (fingerprint, to_iso(utcnow()), user_id),
        )
        conn.commit()
        return cur.rowcount > 0
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def set_face_embedding(user_id: int, embedding: list[float] | None) -> bool:
    payload = json.dumps([float(v) for v in embedding]) if embedding is not None else None
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            "UPDATE users SET face_embedding = ?, updated_at = ? WHERE id = ?",
            (payload, to_iso(utcnow()), user_id),
        )
        conn.commit()
        return cur.rowcount > 0
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def add_student_to_group(student_id: int, group_id: int) -> None:
    conn = connect_db()
    try:
        conn.execute(
            """
            INSERT INTO student_groups (student_id, group_id)
            VALUES (?, ?)
            ON CONFLICT(student_id, group_id) DO NOTHING
            """,
            (student_id, group_id),
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


# -----------------------------
# Sessions
# -----------------------------
def replace_session(
    *,
    user_id: int,
    token: str,
    refresh_token: str,
    csrf_token: str,
    fingerprint: str | None,
    user_agent: str | None,
    ip_address: str | None,
    expires_at: datetime,
    refresh_expires_at: datetime,
    now: datetime | None = None,
) -> dict:
    """
    Install the only live session for `user_id`.

    One upsert keyed by user_id, so a concurrent login can never leave two
    rows behind for the same account.
    """
    created_at = to_iso(now or utcnow())
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO sessions (
                user_id, token, refresh_token, csrf_token, fingerprint,
                user_agent, ip_address, expires_at, refresh_expires_at, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                token = excluded.token,
                refresh_token = excluded.refresh_token,
                csrf_token = excluded.csrf_token,
                fingerprint = excluded.fingerprint,
                user_agent = excluded.user_agent,
                ip_address = excluded.ip_address,
                expires_at = excluded.expires_at,
                refresh_expires_at = excluded.refresh_expires_at,
                created_at = excluded.created_at
            """,
            (
                user_id,
                token,
                refresh_token,
                csrf_token,
                fingerprint,
                user_agent,
                ip_address,
                to_iso(expires_at),
                to_iso(refresh_expires_at),
                created_at,
            ),
        )
        cur.execute(f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE user_id = ?", (user_id,))
        row = cur.fetchone()
        conn.commit()
        return _row_to_dict(row)
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_live_session_by_token(token: str, *, now: datetime | None = None) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_SESSION_COLUMNS}
        FROM sessions
        WHERE token = ? AND expires_at > ?
        """,
        (token, to_iso(now or utcnow())),
    )
    row = cur.fetchone()
    conn.close()
    return _row_to_dict(row)


def rotate_access_token(
    refresh_token: str,
    new_token: str,
    expires_at: datetime,
    *,
    now: datetime | None = None,
) -> dict | None:
    """Swap the access token on the session owning a live refresh token."""
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            UPDATE sessions
            SET token = ?, expires_at = ?
            WHERE refresh_token = ? AND refresh_expires_at > ?
            """,
            (new_token, to_iso(expires_at), refresh_token, to_iso(now or utcnow())),
        )
        if cur.rowcount == 0:
            conn.rollback()
            return None
        cur.execute(f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE refresh_token = ?", (refresh_token,))
        row = cur.fetchone()
        conn.commit()
        return _row_to_dict(row)
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def delete_session_by_token(token: str) -> int | None:
    """Delete the session holding `token`; returns its owner id when one existed."""
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("SELECT user_id FROM sessions WHERE token = ?", (token,))
        row = cur.fetchone()
        if not row:
            return None
        cur.execute("DELETE FROM sessions WHERE token = ?", (token,))
        conn.commit()
        return int(row["user_id"])
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


# -----------------------------
# Login attempts
# -----------------------------
def record_login_attempt(
    login: str,
    ip_address: str,
    user_agent: str | None,
    success: bool,
    *,
    now: datetime | None = None,
) -> None:
    stamp = now or utcnow()
    cutoff = stamp - timedelta(hours=LOGIN_ATTEMPT_RETENTION_HOURS)
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO login_attempts (login, ip_address, user_agent, success, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (login, ip_address, user_agent, 1 if success else 0, to_iso(stamp)),
        )
        cur.execute("DELETE FROM login_attempts WHERE created_at < ?", (to_iso(cutoff),))
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def count_recent_failed_attempts(login: str, ip_address: str, since: datetime) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT COUNT(1)
        FROM login_attempts
        WHERE (login = ? OR ip_address = ?)
          AND success = 0
          AND created_at > ?
        """,
        (login, ip_address, to_iso(since)),
    )
    row = cur.fetchone()
    conn.close()
    return int(row[0] or 0) if row else 0


def list_login_attempts(login: str | None = None, limit: int = 50) -> list[dict]:
    where = ""
    params: list[Any] = []
    if login:
        where = "WHERE login = ?"
        params.append(login)
    params.append(limit)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT id, login, ip_address, user_agent, success, created_at
        FROM login_attempts
        {where}
        ORDER BY created_at DESC, id DESC
        LIMIT ?
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    out = []
    for row in rows:
        item = _row_to_dict(row)
        item["success"] = bool(item["success"])
        out.append(item)
    return out


# -----------------------------
# IP rules
# -----------------------------
def upsert_ip_rule(
    ip_address: str,
    rule_type: IpRuleType,
    *,
    reason: str | None = None,
    created_by: int | None = None,
    expires_at: datetime | None = None,
) -> None:
    conn = connect_db()
    try:
        conn.execute(
            """
            INSERT INTO ip_rules (ip_address, rule_type, reason, created_by, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(ip_address, rule_type) DO UPDATE SET
                reason = excluded.reason,
                created_by = excluded.created_by,
                expires_at = excluded.expires_at,
                created_at = excluded.created_at
            """,
            (
                ip_address,
                rule_type,
                reason,
                created_by,
                to_iso(expires_at) if expires_at else None,
                to_iso(utcnow()),
            ),
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def delete_ip_rule(ip_address: str, rule_type: IpRuleType) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            "DELETE FROM ip_rules WHERE ip_address = ? AND rule_type = ?",
            (ip_address, rule_type),
        )
        conn.commit()
        return cur.rowcount > 0
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def is_ip_blocked(ip_address: str, *, now: datetime | None = None) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT 1
        FROM ip_rules
        WHERE ip_address = ?
          AND rule_type = 'blacklist'
          AND (expires_at IS NULL OR expires_at > ?)
        LIMIT 1
        """,
        (ip_address, to_iso(now or utcnow())),
    )
    row = cur.fetchone()
    conn.close()
    return row is not None


def list_ip_rules(rule_type: IpRuleType = "blacklist") -> list[dict]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT r.id, r.ip_address, r.rule_type, r.reason, r.created_by,
               u.full_name AS created_by_name, r.expires_at, r.created_at
        FROM ip_rules r
        LEFT JOIN users u ON u.id = r.created_by
        WHERE r.rule_type = ?
        ORDER BY r.created_at DESC, r.id DESC
        """,
        (rule_type,),
    )
    rows = cur.fetchall()
    conn.close()
    return [_row_to_dict(row) for row in rows]


# -----------------------------
# Lessons
# -----------------------------
def create_lesson(
    *,
    teacher_id: int,
    latitude: float,
    longitude: float,
    radius_meters: int | None,
    pin_code: str,
    pin_expires_at: datetime,
    group_id: int | None = None,
    subject_id: int | None = None,
    now: datetime | None = None,
) -> int:
    """
    Start a lesson and seed one `absent` attendance row per group member,
    in the same transaction.
    """
    stamp = to_iso(now or utcnow())
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO lessons (
                teacher_id, group_id, subject_id, latitude, longitude,
                radius_meters, pin_code, pin_expires_at, is_active, started_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
            """,
            (
                teacher_id,
                group_id,
                subject_id,
                latitude,
                longitude,
                radius_meters,
                pin_code,
                to_iso(pin_expires_at),
                stamp,
            ),
        )
        lesson_id = int(cur.lastrowid)
        if group_id is not None:
            cur.execute(
                """
                INSERT INTO attendance (lesson_id, student_id, status, created_at, updated_at)
                SELECT ?, sg.student_id, 'absent', ?, ?
                FROM student_groups sg
                JOIN users u ON u.id = sg.student_id
                WHERE sg.group_id = ? AND u.role = 'student' AND u.is_active = 1
                ON CONFLICT(lesson_id, student_id) DO NOTHING
                """,
                (lesson_id, stamp, stamp, group_id),
            )
        conn.commit()
        return lesson_id
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_lesson(lesson_id: int) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {_LESSON_COLUMNS} FROM lessons WHERE id = ?", (lesson_id,))
    row = cur.fetchone()
    conn.close()
    lesson = _row_to_dict(row)
    if lesson:
        lesson["is_active"] = bool(lesson["is_active"])
    return lesson


def find_active_lesson_by_pin(pin_code: str, *, now: datetime | None = None) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_LESSON_COLUMNS}
        FROM lessons
        WHERE pin_code = ?
          AND is_active = 1
          AND pin_expires_at > ?
        ORDER BY started_at DESC, id DESC
        LIMIT 1
        """,
        (pin_code, to_iso(now or utcnow())),
    )
    row = cur.fetchone()
    conn.close()
    lesson = _row_to_dict(row)
    if lesson:
        lesson["is_active"] = bool(lesson["is_active"])
    return lesson


def _update_active_lesson(sql: str, params: tuple) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(sql, params)
        conn.commit()
        return cur.rowcount > 0
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def update_lesson_pin(lesson_id: int, pin_code: str, pin_expires_at: datetime) -> bool:
    return _update_active_lesson(
        """
        UPDATE lessons
        SET pin_code = ?, pin_expires_at = ?
        WHERE id = ? AND is_active = 1
        """,
        (pin_code, to_iso(pin_expires_at), lesson_id),
    )


def update_lesson_radius(lesson_id: int, radius_meters: int) -> bool:
    return _update_active_lesson(
        "UPDATE lessons SET radius_meters = ? WHERE id = ? AND is_active = 1",
        (radius_meters, lesson_id),
    )


def end_lesson(lesson_id: int, *, now: datetime | None = None) -> bool:
    return _update_active_lesson(
        """
        UPDATE lessons
        SET is_active = 0, pin_code = NULL, pin_expires_at = NULL, ended_at = ?
        WHERE id = ? AND is_active = 1
        """,
        (to_iso(now or utcnow()), lesson_id),
    )


# -----------------------------
# Attendance
# -----------------------------
def upsert_attendance(
    *,
    lesson_id: int,
    student_id: int,
    status: AttendanceStatus,
    check_in_time: datetime | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    distance_meters: float | None = None,
    is_fake_gps: bool = False,
    suspicious_reason: str | None = None,
    fingerprint: str | None = None,
    user_agent: str | None = None,
) -> int:
    """
    Write the (lesson, student) attendance row in one statement.

    Relies on UNIQUE(lesson_id, student_id); never check-then-insert.
    """
    if status not in ATTENDANCE_STATUSES:
        raise ValueError(f"Unknown attendance status: {status}")

    now = to_iso(utcnow())
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO attendance (
                lesson_id, student_id, status, check_in_time, latitude, longitude,
                distance_meters, is_fake_gps, suspicious_reason, fingerprint,
                user_agent, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(lesson_id, student_id) DO UPDATE SET
                status = excluded.status,
                check_in_time = excluded.check_in_time,
                latitude = excluded.latitude,
                longitude = excluded.longitude,
                distance_meters = excluded.distance_meters,
                is_fake_gps = excluded.is_fake_gps,
                suspicious_reason = excluded.suspicious_reason,
                fingerprint = excluded.fingerprint,
                user_agent = excluded.user_agent,
                updated_at = excluded.updated_at
            """,
            (
                lesson_id,
                student_id,
                status,
                to_iso(check_in_time) if check_in_time else None,
                latitude,
                longitude,
                distance_meters,
                1 if is_fake_gps else 0,
                suspicious_reason,
                fingerprint,
                user_agent,
                now,
                now,
            ),
        )
        cur.execute(
            "SELECT id FROM attendance WHERE lesson_id = ? AND student_id = ?",
            (lesson_id, student_id),
        )
        row = cur.fetchone()
        conn.commit()
        return int(row["id"])
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def set_attendance_status(lesson_id: int, student_id: int, status: AttendanceStatus) -> bool:
    if status not in ATTENDANCE_STATUSES:
        raise ValueError(f"Unknown attendance status: {status}")
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            UPDATE attendance
            SET status = ?, updated_at = ?
            WHERE lesson_id = ? AND student_id = ?
            """,
            (status, to_iso(utcnow()), lesson_id, student_id),
        )
        conn.commit()
        return cur.rowcount > 0
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_attendance(lesson_id: int, student_id: int) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, lesson_id, student_id, status, check_in_time, latitude, longitude,
               distance_meters, is_fake_gps, suspicious_reason, fingerprint,
               user_agent, created_at, updated_at
        FROM attendance
        WHERE lesson_id = ? AND student_id = ?
        """,
        (lesson_id, student_id),
    )
    row = cur.fetchone()
    conn.close()
    record = _row_to_dict(row)
    if record:
        record["is_fake_gps"] = bool(record["is_fake_gps"])
    return record


def list_lesson_attendance(lesson_id: int) -> list[dict]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT a.id, a.student_id, u.login, u.full_name, a.status, a.check_in_time,
               a.distance_meters, a.is_fake_gps, a.suspicious_reason
        FROM attendance a
        JOIN users u ON u.id = a.student_id
        WHERE a.lesson_id = ?
        ORDER BY u.full_name ASC
        """,
        (lesson_id,),
    )
    rows = cur.fetchall()
    conn.close()
    out = []
    for row in rows:
        item = _row_to_dict(row)
        item["is_fake_gps"] = bool(item["is_fake_gps"])
        out.append(item)
    return out


# -----------------------------
# Activity log
# -----------------------------
def insert_activity_log(
    action: str,
    *,
    user_id: int | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO activity_logs (user_id, action, details, ip_address, user_agent, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                action,
                json.dumps(details, sort_keys=True, default=str) if details else None,
                ip_address,
                user_agent,
                to_iso(utcnow()),
            ),
        )
        conn.commit()
        return int(cur.lastrowid)
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def list_activity_logs(
    *,
    user_id: int | None = None,
    action: str | None = None,
    limit: int = 100,
) -> list[dict]:
    where: list[str] = []
    params: list[Any] = []
    if user_id is not None:
        where.append("user_id = ?")
        params.append(user_id)
    if action:
        where.append("action = ?")
        params.append(action)
    clause = f"WHERE {' AND '.join(where)}" if where else ""
    params.append(limit)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT id, user_id, action, details, ip_address, user_agent, created_at
        FROM activity_logs
        {clause}
        ORDER BY id DESC
        LIMIT ?
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    out = []
    for row in rows:
        item = _row_to_dict(row)
        item["details"] = json.loads(item["details"]) if item["details"] else {}
        out.append(item)
    return out
