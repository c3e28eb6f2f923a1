"""
tests/test_passwords.py -- bcrypt hashing and timing-equalized authentication.
"""

from __future__ import annotations

from unittest.mock import patch

from auth import passwords
from auth.models import User
from auth.passwords import authenticate_user, hash_password, verify_password


def test_hash_then_verify_round_trip():
    hashed = hash_password("correct horse")
    assert verify_password("correct horse", hashed)


def test_wrong_password_does_not_verify():
    hashed = hash_password("correct horse")
    assert not verify_password("battery staple", hashed)


def test_same_password_hashes_differently():
    """Each hash carries its own salt."""
    assert hash_password("same input") != hash_password("same input")


def test_malformed_hash_is_a_mismatch_not_an_error():
    assert verify_password("anything", "not-a-bcrypt-hash") is False
    assert verify_password("anything", "") is False


class TestAuthenticateUser:
    def test_valid_credentials_return_user(self, harness):
        uid = harness.users.create_user(User(email="ana@example.com", hashed_password=hash_password("pw-123456")))
        user = authenticate_user(harness.users, "ana@example.com", "pw-123456")
        assert user is not None
        assert user.id == uid

    def test_wrong_password_returns_none(self, harness):
        harness.users.create_user(User(email="ana@example.com", hashed_password=hash_password("pw-123456")))
        assert authenticate_user(harness.users, "ana@example.com", "nope") is None

    def test_unknown_email_still_runs_bcrypt(self, harness):
        """Unknown accounts are checked against the dummy hash so timing does not leak existence."""
        with patch.object(passwords, "verify_password", wraps=passwords.verify_password) as spy:
            assert authenticate_user(harness.users, "ghost@example.com", "pw") is None
        spy.assert_called_once_with("pw", passwords._DUMMY_HASH)

    def test_oauth_only_account_cannot_password_login(self, harness):
        harness.users.create_user(User(email="oauth@example.com", oauth_provider="github", oauth_subject="42"))
        with patch.object(passwords, "verify_password", wraps=passwords.verify_password) as spy:
            assert authenticate_user(harness.users, "oauth@example.com", "pw") is None
        spy.assert_called_once_with("pw", passwords._DUMMY_HASH)
