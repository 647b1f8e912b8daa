import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("CYBERCHECK_DB_PATH", BASE_DIR / "database" / "cybercheck.db"))
ADMIN_LOGIN = os.getenv("CYBERCHECK_ADMIN_LOGIN", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("CYBERCHECK_ADMIN_PASSWORD", "admin123").strip() or "admin123"
LOG_LEVEL = os.getenv("CYBERCHECK_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if value is None or not value.strip():
        return fallback
    try:
        return max(minimum, int(value))
    except ValueError:
        return fallback


def _parse_float(value: str | None, fallback: float) -> float:
    if value is None or not value.strip():
        return fallback
    try:
        return float(value)
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("CYBERCHECK_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("CYBERCHECK_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("CYBERCHECK_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept", "X-XSRF-TOKEN"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("CYBERCHECK_CORS_ALLOW_CREDENTIALS"), True)

CSRF_HEADER_NAME = "X-XSRF-TOKEN"

# Sessions
ACCESS_TOKEN_TTL_SECONDS = _parse_int(os.getenv("CYBERCHECK_ACCESS_TOKEN_TTL_SECONDS"), 12 * 3600, minimum=60)
REFRESH_TOKEN_TTL_SECONDS = max(
    ACCESS_TOKEN_TTL_SECONDS + 1,
    _parse_int(os.getenv("CYBERCHECK_REFRESH_TOKEN_TTL_SECONDS"), 7 * 24 * 3600, minimum=60),
)

# Passwords
PASSWORD_HASH_ITERATIONS = _parse_int(os.getenv("CYBERCHECK_PASSWORD_HASH_ITERATIONS"), 100_000, minimum=1)

# Login throttling
LOGIN_RATE_LIMIT_WINDOW_MINUTES = _parse_int(os.getenv("CYBERCHECK_LOGIN_RATE_LIMIT_WINDOW_MINUTES"), 15, minimum=1)
LOGIN_RATE_LIMIT_MAX_FAILURES = _parse_int(os.getenv("CYBERCHECK_LOGIN_RATE_LIMIT_MAX_FAILURES"), 5, minimum=1)
LOGIN_ATTEMPT_RETENTION_HOURS = _parse_int(os.getenv("CYBERCHECK_LOGIN_ATTEMPT_RETENTION_HOURS"), 24, minimum=1)

# Lessons / geofence
DEFAULT_RADIUS_METERS = _parse_int(os.getenv("CYBERCHECK_DEFAULT_RADIUS_METERS"), 120, minimum=1)
PIN_VALIDITY_SECONDS = _parse_int(os.getenv("CYBERCHECK_PIN_VALIDITY_SECONDS"), 60, minimum=5)
GPS_MIN_ACCURACY_METERS = _parse_float(os.getenv("CYBERCHECK_GPS_MIN_ACCURACY_METERS"), 1.0)
GPS_MAX_ACCURACY_METERS = _parse_float(os.getenv("CYBERCHECK_GPS_MAX_ACCURACY_METERS"), 1000.0)
LOCATION_TIMEOUT_SECONDS = _parse_float(os.getenv("CYBERCHECK_LOCATION_TIMEOUT_SECONDS"), 15.0)

# Biometric gates
# Euclidean distance over dlib ResNet descriptors; strict "<".
FACE_MATCH_THRESHOLD = _parse_float(os.getenv("CYBERCHECK_FACE_MATCH_THRESHOLD"), 0.5)
FACE_DESCRIPTOR_SIZE = 128
LIVENESS_SAMPLES = _parse_int(os.getenv("CYBERCHECK_LIVENESS_SAMPLES"), 3, minimum=1)
LIVENESS_REQUIRED_PASSES = _parse_int(os.getenv("CYBERCHECK_LIVENESS_REQUIRED_PASSES"), 2, minimum=1)
LIVENESS_SAMPLE_INTERVAL_SECONDS = _parse_float(os.getenv("CYBERCHECK_LIVENESS_SAMPLE_INTERVAL_SECONDS"), 0.2)
LIVENESS_MIN_FACE_SIZE = _parse_int(os.getenv("CYBERCHECK_LIVENESS_MIN_FACE_SIZE"), 100, minimum=1)
LIVENESS_MIN_SCORE = _parse_float(os.getenv("CYBERCHECK_LIVENESS_MIN_SCORE"), 0.8)
LIVENESS_MIN_MOTION = _parse_float(os.getenv("CYBERCHECK_LIVENESS_MIN_MOTION"), 0.1)
LIVENESS_MAX_RETRIES = _parse_int(os.getenv("CYBERCHECK_LIVENESS_MAX_RETRIES"), 2)
MAX_CHECKIN_FRAMES = _parse_int(os.getenv("CYBERCHECK_MAX_CHECKIN_FRAMES"), 9, minimum=1)

# Face model (face_recognition / dlib). "hog" runs on CPU, "cnn" wants a GPU build of dlib.
FACE_DETECTION_MODEL = os.getenv("CYBERCHECK_FACE_DETECTION_MODEL", "hog").strip().lower()
if FACE_DETECTION_MODEL not in {"hog", "cnn"}:
    FACE_DETECTION_MODEL = "hog"
FACE_UPSAMPLE_TIMES = _parse_int(os.getenv("CYBERCHECK_FACE_UPSAMPLE_TIMES"), 1)
FACE_ENCODING_JITTERS = _parse_int(os.getenv("CYBERCHECK_FACE_ENCODING_JITTERS"), 1, minimum=1)
