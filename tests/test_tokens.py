"""Unit tests for auth/tokens.py -- password hashing, session JWTs, confirmation tokens.

Covers:
- bcrypt hash/verify round trip; malformed hashes are a mismatch, not an error
- authenticate_user() returns None for unknown users and wrong passwords
- Session JWT carries jti/user_id/role and is rejected when tampered or expired
- Confirmation tokens are high-entropy and stored only as an HMAC digest
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from auth.roles import Role
from auth.tokens import (
    authenticate_user,
    create_session_token,
    decode_session_token,
    generate_confirmation_token,
    hash_confirmation_token,
    hash_password,
    new_session_id,
    verify_password,
)

from conftest import DEFAULT_PASSWORD


class TestPasswordHashing:
    def test_round_trip(self) -> None:
        hashed = hash_password("s3cret-value")
        assert hashed != "s3cret-value"
        assert verify_password("s3cret-value", hashed)
        assert not verify_password("wrong-value", hashed)

    def test_hashes_are_salted(self) -> None:
        assert hash_password("same") != hash_password("same")

    def test_malformed_hash_is_mismatch(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestAuthenticateUser:
    def test_valid_credentials(self, store, make_user) -> None:
        alice = make_user("alice", Role.ORGANIZER)
        user = authenticate_user(store, "alice", DEFAULT_PASSWORD)
        assert user is not None
        assert user.id == alice.id
        assert user.role is Role.ORGANIZER

    def test_wrong_password(self, store, make_user) -> None:
        make_user("alice")
        assert authenticate_user(store, "alice", "not-the-password") is None

    def test_unknown_user(self, store) -> None:
        assert authenticate_user(store, "ghost", DEFAULT_PASSWORD) is None

    def test_username_match_is_exact(self, store, make_user) -> None:
        make_user("alice")
        assert authenticate_user(store, "Alice", DEFAULT_PASSWORD) is None


class TestSessionToken:
    def _token(self, expires_at: datetime) -> tuple[str, str]:
        sid = new_session_id()
        return sid, create_session_token(sid, 42, "alice", Role.ADMIN.label, expires_at)

    def test_claims(self) -> None:
        sid, token = self._token(datetime.now(timezone.utc) + timedelta(hours=1))
        payload = decode_session_token(token)
        assert payload is not None
        assert payload["jti"] == sid
        assert payload["user_id"] == 42
        assert payload["sub"] == "alice"
        assert payload["role"] == "admin"

    def test_expired_token_rejected(self) -> None:
        _, token = self._token(datetime.now(timezone.utc) - timedelta(seconds=5))
        assert decode_session_token(token) is None

    def test_tampered_token_rejected(self) -> None:
        _, token = self._token(datetime.now(timezone.utc) + timedelta(hours=1))
        header, payload, signature = token.split(".")
        flipped = signature[:-2] + ("AA" if signature[-2:] != "AA" else "BB")
        assert decode_session_token(f"{header}.{payload}.{flipped}") is None

    def test_garbage_rejected(self) -> None:
        assert decode_session_token("not.a.jwt") is None

    def test_session_ids_are_unique(self) -> None:
        assert len({new_session_id() for _ in range(50)}) == 50


class TestConfirmationToken:
    def test_token_is_url_safe_and_long(self) -> None:
        token = generate_confirmation_token()
        assert len(token) >= 43
        assert all(c.isalnum() or c in "-_" for c in token)

    def test_digest_is_deterministic_and_not_the_token(self) -> None:
        token = generate_confirmation_token()
        digest = hash_confirmation_token(token)
        assert digest == hash_confirmation_token(token)
        assert digest != token
        assert len(digest) == 64

    def test_different_tokens_different_digests(self) -> None:
        assert hash_confirmation_token("a") != hash_confirmation_token("b")
