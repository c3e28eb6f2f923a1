"""
tests/test_tokens.py -- JWT access/refresh codec.

Covers:
  - round trip of claims for both token kinds
  - the two kinds are not interchangeable (separate keys + type claim)
  - tampering with any segment makes decode return None
  - expired and garbage tokens return None, never raise
"""

from __future__ import annotations

import os

os.environ.setdefault("DEBUG", "true")

from datetime import datetime, timedelta, timezone

from jose import jwt

from auth.tokens import create_access_token, create_refresh_token, decode_access_token, decode_refresh_token
from core.config import get_settings


def _tamper(token: str, segment: int) -> str:
    """Flip one character in the middle of a segment.

    The last base64url character of a segment may carry ignored padding
    bits, so changing it does not always change the decoded bytes.
    """
    parts = token.split(".")
    middle = len(parts[segment]) // 2
    ch = parts[segment][middle]
    parts[segment] = parts[segment][:middle] + ("A" if ch != "A" else "B") + parts[segment][middle + 1 :]
    return ".".join(parts)


def test_access_token_round_trip():
    payload = decode_access_token(create_access_token(7, "admin"))
    assert payload is not None
    assert payload.user_id == 7
    assert payload.role == "admin"
    assert payload.token_type == "access"
    assert payload.expires_at > payload.issued_at


def test_refresh_token_round_trip():
    payload = decode_refresh_token(create_refresh_token(7, "user"))
    assert payload is not None
    assert payload.user_id == 7
    assert payload.token_type == "refresh"


def test_access_token_expiry_follows_settings():
    payload = decode_access_token(create_access_token(1, "user"))
    assert payload.expires_at - payload.issued_at == get_settings().access_token_expire_seconds


def test_refresh_token_is_not_an_access_token():
    assert decode_access_token(create_refresh_token(1, "user")) is None


def test_access_token_is_not_a_refresh_token():
    assert decode_refresh_token(create_access_token(1, "user")) is None


def test_tampered_payload_is_rejected():
    token = create_access_token(1, "user")
    assert decode_access_token(_tamper(token, 1)) is None


def test_tampered_signature_is_rejected():
    token = create_access_token(1, "user")
    assert decode_access_token(_tamper(token, 2)) is None


def test_expired_token_is_rejected():
    cfg = get_settings()
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    token = jwt.encode(
        {"sub": "1", "role": "user", "type": "access", "iat": int(past.timestamp()), "exp": past},
        cfg.secret_key,
        algorithm="HS256",
    )
    assert decode_access_token(token) is None


def test_token_with_non_numeric_subject_is_rejected():
    token = jwt.encode(
        {"sub": "abc", "role": "user", "type": "access", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        get_settings().secret_key,
        algorithm="HS256",
    )
    assert decode_access_token(token) is None


def test_garbage_and_empty_tokens_return_none():
    assert decode_access_token("") is None
    assert decode_access_token("not.a.jwt") is None
    assert decode_refresh_token("definitely-not-a-token") is None
