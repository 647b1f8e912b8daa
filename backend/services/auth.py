"""
Credential authority: login, session lifecycle, throttling and IP rules.

Login gate order: IP block, CSRF double-submit, input checks, rate limit,
credentials, device binding, session issue. Every outcome is written to the
activity log; credential and device outcomes also land in login_attempts,
which feed the rate limiter.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Any

from backend.config import (
    ACCESS_TOKEN_TTL_SECONDS,
    LOGIN_RATE_LIMIT_MAX_FAILURES,
    LOGIN_RATE_LIMIT_WINDOW_MINUTES,
    REFRESH_TOKEN_TTL_SECONDS,
)
from backend.errors import AuthError, ForbiddenError, NotFoundError, RateLimitError, ValidationError
from backend.security import (
    csrf_tokens_match,
    generate_access_token,
    generate_csrf_token,
    generate_refresh_token,
    hash_password,
    is_pbkdf2_hash,
    verify_password,
)
from backend.services import device
from backend.services.audit import record_activity
from database import db

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[<>]")


def _sanitize(value: str | None) -> str:
    if not isinstance(value, str):
        return ""
    return _UNSAFE_CHARS.sub("", value.strip())


def public_user(account: dict) -> dict[str, Any]:
    return {
        "id": account["id"],
        "login": account["login"],
        "full_name": account["full_name"],
        "role": account["role"],
        "is_active": bool(account["is_active"]),
    }


# -----------------------------
# Gates
# -----------------------------
def ensure_ip_allowed(ip_address: str, user_agent: str, *, login: str | None = None) -> None:
    if not db.is_ip_blocked(ip_address):
        return

    logger.warning("Blocked IP attempted access: ip=%s login=%s", ip_address, login)
    if login:
        db.record_login_attempt(login, ip_address, user_agent, False)
    record_activity(
        "access_blocked",
        details={"reason": "ip_blocked", "login": login},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    raise ForbiddenError("Access from this IP address is blocked.")


def check_rate_limit(login: str, ip_address: str, *, now: datetime | None = None) -> None:
    since = (now or db.utcnow()) - timedelta(minutes=LOGIN_RATE_LIMIT_WINDOW_MINUTES)
    failures = db.count_recent_failed_attempts(login, ip_address, since)
    if failures >= LOGIN_RATE_LIMIT_MAX_FAILURES:
        raise RateLimitError(
            f"Too many failed attempts. Try again in {LOGIN_RATE_LIMIT_WINDOW_MINUTES} minutes."
        )


def verify_credentials(login: str, password: str) -> dict:
    """
    Return the active account for `login` when `password` matches.

    Unknown logins and wrong passwords raise the same AuthError. A matching
    legacy plaintext hash is upgraded to PBKDF2 before returning.
    """
    account = db.get_active_user_by_login(login)
    if account is None or not verify_password(password, account["password_hash"]):
        raise AuthError()

    if not is_pbkdf2_hash(account["password_hash"]):
        upgraded = hash_password(password)
        db.update_password_hash(account["id"], upgraded)
        account["password_hash"] = upgraded
        logger.info("Password upgraded to PBKDF2: user_id=%s", account["id"])

    return account


# -----------------------------
# Session lifecycle
# -----------------------------
def issue_session(
    account: dict,
    *,
    fingerprint: str | None,
    ip_address: str,
    user_agent: str,
    now: datetime | None = None,
) -> dict:
    issued_at = now or db.utcnow()
    expires_at = issued_at + timedelta(seconds=ACCESS_TOKEN_TTL_SECONDS)
    refresh_expires_at = issued_at + timedelta(seconds=REFRESH_TOKEN_TTL_SECONDS)
    return db.replace_session(
        user_id=account["id"],
        token=generate_access_token(),
        refresh_token=generate_refresh_token(),
        csrf_token=generate_csrf_token(),
        fingerprint=fingerprint,
        user_agent=user_agent,
        ip_address=ip_address,
        expires_at=expires_at,
        refresh_expires_at=refresh_expires_at,
        now=issued_at,
    )


def login(
    *,
    login: str | None,
    password: str | None,
    fingerprint: str | None,
    csrf_body: str | None,
    csrf_header: str | None,
    ip_address: str,
    user_agent: str,
) -> dict[str, Any]:
    clean_login = _sanitize(login)
    # Hashed as typed on provisioning, so never normalized here.
    raw_password = password if isinstance(password, str) else ""

    ensure_ip_allowed(ip_address, user_agent, login=clean_login or None)

    if not csrf_tokens_match(csrf_body, csrf_header):
        logger.warning("CSRF validation failed for login attempt: ip=%s", ip_address)
        record_activity(
            "login_failed",
            details={"reason": "csrf_mismatch"},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise AuthError("Security check failed. Reload the page and try again.")

    if not clean_login or not raw_password:
        raise ValidationError("Login and password are required.")
    if not fingerprint:
        raise ValidationError("Device fingerprint is required.")

    try:
        check_rate_limit(clean_login, ip_address)
    except RateLimitError:
        logger.warning("Rate limited: login=%s ip=%s", clean_login, ip_address)
        record_activity(
            "login_failed",
            details={"reason": "rate_limited", "login": clean_login},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise

    try:
        account = verify_credentials(clean_login, raw_password)
    except AuthError:
        db.record_login_attempt(clean_login, ip_address, user_agent, False)
        known = db.get_active_user_by_login(clean_login)
        record_activity(
            "login_failed",
            user_id=known["id"] if known else None,
            details={"reason": "wrong_password" if known else "unknown_login", "login": clean_login},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("Invalid credentials: login=%s ip=%s", clean_login, ip_address)
        raise

    try:
        binding = device.enforce_binding(account, fingerprint)
    except ForbiddenError:
        db.record_login_attempt(clean_login, ip_address, user_agent, False)
        record_activity(
            "login_failed",
            user_id=account["id"],
            details={"reason": "device_mismatch", "attempted_fingerprint": fingerprint},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise

    if binding.action == "rebound":
        record_activity(
            "device_changed",
            user_id=account["id"],
            details={
                "previous_fingerprint": binding.previous_fingerprint,
                "new_fingerprint": binding.fingerprint,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )

    db.record_login_attempt(clean_login, ip_address, user_agent, True)
    session = issue_session(account, fingerprint=fingerprint, ip_address=ip_address, user_agent=user_agent)
    record_activity(
        "login_success",
        user_id=account["id"],
        details={"device": binding.action},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    logger.info("Login successful: login=%s", clean_login)

    return {
        "success": True,
        "token": session["token"],
        "refresh_token": session["refresh_token"],
        "csrf_token": session["csrf_token"],
        "user": public_user(account),
        "expires_at": session["expires_at"],
        "refresh_expires_at": session["refresh_expires_at"],
    }


def refresh(refresh_token: str | None) -> dict[str, Any]:
    if not refresh_token:
        raise ValidationError("Refresh token is required.")

    expires_at = db.utcnow() + timedelta(seconds=ACCESS_TOKEN_TTL_SECONDS)
    session = db.rotate_access_token(refresh_token, generate_access_token(), expires_at)
    if session is None:
        raise AuthError("Invalid refresh token.")

    logger.info("Access token refreshed: user_id=%s", session["user_id"])
    return {
        "success": True,
        "access_token": session["token"],
        "expires_at": session["expires_at"],
    }


def resolve_session(token: str | None) -> dict[str, Any]:
    """Return `{"session", "user", "account"}` for a live access token, else AuthError."""
    if not token:
        raise AuthError("Missing bearer token.")
    session = db.get_live_session_by_token(token)
    if session is None:
        raise AuthError("Invalid or expired session token.")
    account = db.get_user_by_id(session["user_id"])
    if account is None or not account["is_active"]:
        raise AuthError("Invalid or expired session token.")
    return {"session": session, "user": public_user(account), "account": account}


def validate(token: str | None) -> dict[str, Any]:
    try:
        context = resolve_session(token)
    except AuthError:
        return {"success": True, "valid": False}
    return {
        "success": True,
        "valid": True,
        "user": context["user"],
        "expires_at": context["session"]["expires_at"],
    }


def logout(token: str | None, *, ip_address: str, user_agent: str) -> dict[str, Any]:
    if token:
        user_id = db.delete_session_by_token(token)
        if user_id is not None:
            record_activity("logout", user_id=user_id, ip_address=ip_address, user_agent=user_agent)
            logger.info("Logout: user_id=%s", user_id)
    return {"success": True}


# -----------------------------
# IP rules (admin)
# -----------------------------
def block_ip(
    actor: dict,
    target_ip: str,
    *,
    reason: str | None,
    expires_in_minutes: int | None,
    ip_address: str,
    user_agent: str,
) -> dict[str, Any]:
    target = _sanitize(target_ip)
    if not target:
        raise ValidationError("Target IP is required.")

    expires_at = None
    if expires_in_minutes:
        expires_at = db.utcnow() + timedelta(minutes=expires_in_minutes)
    clean_reason = _sanitize(reason) or "Blocked by administrator"

    db.upsert_ip_rule(
        target,
        "blacklist",
        reason=clean_reason,
        created_by=actor["id"],
        expires_at=expires_at,
    )
    record_activity(
        "ip_blocked",
        user_id=actor["id"],
        details={
            "target_ip": target,
            "reason": clean_reason,
            "expires_at": db.to_iso(expires_at) if expires_at else None,
        },
        ip_address=ip_address,
        user_agent=user_agent,
    )
    logger.warning("IP blocked: target=%s by user_id=%s", target, actor["id"])
    return {"success": True, "message": f"IP {target} blocked"}


def unblock_ip(actor: dict, target_ip: str, *, ip_address: str, user_agent: str) -> dict[str, Any]:
    target = _sanitize(target_ip)
    if not target:
        raise ValidationError("Target IP is required.")
    if not db.delete_ip_rule(target, "blacklist"):
        raise NotFoundError(f"IP {target} is not blocked.")

    record_activity(
        "ip_unblocked",
        user_id=actor["id"],
        details={"target_ip": target},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    logger.info("IP unblocked: target=%s by user_id=%s", target, actor["id"])
    return {"success": True, "message": f"IP {target} unblocked"}
