import hashlib

import pytest
from starlette.requests import Request

from backend.security import (
    client_ip,
    csrf_tokens_match,
    generate_access_token,
    generate_csrf_token,
    generate_pin,
    generate_refresh_token,
    hash_password,
    is_pbkdf2_hash,
    verify_password,
)


def _request(headers: dict[str, str] | None = None, peer: str | None = "9.9.9.9") -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (peer, 5000) if peer else None,
    }
    return Request(scope)


def test_hash_format_and_roundtrip():
    stored = hash_password("hunter2", iterations=1000)
    _, scheme, rounds, salt, digest = stored.split("$")
    assert scheme == "pbkdf2"
    assert rounds == "1000"
    assert len(salt) == 32
    assert len(digest) == 64

    assert verify_password("hunter2", stored)
    assert not verify_password("hunter3", stored)


def test_hash_uses_hex_salt_text_as_pbkdf2_salt():
    stored = hash_password("pw", salt="00ff", iterations=10)
    expected = hashlib.pbkdf2_hmac("sha256", b"pw", b"00ff", 10, dklen=32).hex()
    assert stored == f"$pbkdf2$10$00ff${expected}"


def test_fresh_salt_per_hash():
    assert hash_password("same", iterations=10) != hash_password("same", iterations=10)


def test_legacy_plaintext_is_compared_directly():
    assert not is_pbkdf2_hash("letmein")
    assert verify_password("letmein", "letmein")
    assert not verify_password("letmein", "LETMEIN")


@pytest.mark.parametrize(
    "stored",
    ["$pbkdf2$", "$pbkdf2$abc$00$11", "$pbkdf2$0$00$11", "$pbkdf2$10$$11", "$pbkdf2$10$00$11$extra"],
)
def test_malformed_pbkdf2_never_verifies(stored):
    assert verify_password("anything", stored) is False


def test_token_shapes():
    assert len(generate_access_token()) == 64
    assert len(generate_refresh_token()) == 128
    assert len(generate_csrf_token()) == 64
    assert generate_access_token() != generate_access_token()


def test_pin_is_six_digits():
    for _ in range(50):
        pin = generate_pin()
        assert len(pin) == 6
        assert pin.isdigit()


def test_csrf_match_requires_both_tokens():
    assert csrf_tokens_match("abc", "abc")
    assert not csrf_tokens_match("abc", "abd")
    assert not csrf_tokens_match(None, "abc")
    assert not csrf_tokens_match("", "")


def test_client_ip_precedence():
    assert client_ip(_request({"X-Forwarded-For": "1.1.1.1, 2.2.2.2", "X-Real-IP": "3.3.3.3"})) == "1.1.1.1"
    assert client_ip(_request({"X-Real-IP": "3.3.3.3", "CF-Connecting-IP": "4.4.4.4"})) == "3.3.3.3"
    assert client_ip(_request({"CF-Connecting-IP": "4.4.4.4"})) == "4.4.4.4"
    assert client_ip(_request()) == "9.9.9.9"
    assert client_ip(_request(peer=None)) == "unknown"
