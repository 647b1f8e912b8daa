import hashlib
import hmac
import secrets
from typing import Any

from fastapi import Depends, Header, Request

from backend.config import CSRF_HEADER_NAME, PASSWORD_HASH_ITERATIONS
from backend.errors import AuthError, ForbiddenError

PBKDF2_PREFIX = "$pbkdf2$"
PBKDF2_SALT_BYTES = 16
PBKDF2_KEY_BYTES = 32


# -----------------------------
# Passwords
# -----------------------------
def _derive(password: str, salt_hex: str, iterations: int) -> str:
    # The hex text of the salt is the PBKDF2 salt input.
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_hex.encode("utf-8"),
        iterations,
        dklen=PBKDF2_KEY_BYTES,
    ).hex()


def hash_password(password: str, *, salt: str | None = None, iterations: int | None = None) -> str:
    salt_hex = salt or secrets.token_hex(PBKDF2_SALT_BYTES)
    rounds = iterations or PASSWORD_HASH_ITERATIONS
    return f"{PBKDF2_PREFIX}{rounds}${salt_hex}${_derive(password, salt_hex, rounds)}"


def is_pbkdf2_hash(password_hash: str) -> bool:
    return bool(password_hash) and password_hash.startswith(PBKDF2_PREFIX)


def verify_password(password: str, password_hash: str) -> bool:
    """
    Check `password` against a stored hash.

    Stored values outside the `$pbkdf2$<iterations>$<salt>$<hash>` grammar are
    legacy plaintext and compared directly; callers upgrade them on success.
    """
    if not is_pbkdf2_hash(password_hash):
        return hmac.compare_digest(password.encode("utf-8"), (password_hash or "").encode("utf-8"))

    parts = password_hash.split("$")
    if len(parts) != 5:
        return False
    _, _, rounds_text, salt_hex, expected = parts
    try:
        rounds = int(rounds_text)
    except ValueError:
        return False
    if rounds <= 0 or not salt_hex or not expected:
        return False

    return hmac.compare_digest(_derive(password, salt_hex, rounds), expected)


# -----------------------------
# Tokens
# -----------------------------
def generate_access_token() -> str:
    return secrets.token_hex(32)


def generate_refresh_token() -> str:
    return secrets.token_hex(64)


def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def generate_pin() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def csrf_tokens_match(body_token: str | None, header_token: str | None) -> bool:
    if not body_token or not header_token:
        return False
    return hmac.compare_digest(body_token.encode("utf-8"), header_token.encode("utf-8"))


# -----------------------------
# Request context
# -----------------------------
def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = (request.headers.get(header) or "").strip()
        if value:
            return value
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or ""


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise AuthError("Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Invalid authorization scheme.")
    return token.strip()


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    """Resolve the bearer token to `{"session", "user": <public projection>, "account"}`."""
    from backend.services import auth

    return auth.resolve_session(_bearer_token(authorization))


def require_role(*roles: str):
    allowed = set(roles)

    def _dependency(context: dict[str, Any] = Depends(require_session)) -> dict[str, Any]:
        if context["user"]["role"] not in allowed:
            raise ForbiddenError("Insufficient role for this action.")
        return context

    return _dependency


def require_csrf(request: Request, context: dict[str, Any] = Depends(require_session)) -> dict[str, Any]:
    """State-changing calls must echo the session's CSRF token in the header."""
    header_token = request.headers.get(CSRF_HEADER_NAME)
    if not csrf_tokens_match(context["session"]["csrf_token"], header_token):
        raise AuthError("CSRF token mismatch.")
    return context


def reject_blocked_ip(request: Request) -> None:
    from backend.services import auth

    auth.ensure_ip_allowed(client_ip(request), user_agent(request))
