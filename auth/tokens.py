"""
auth/tokens.py -- Password hashing, session JWTs, and email confirmation tokens.

Security design decisions:
  Passwords: bcrypt, used directly. Bcrypt is the right choice for
       low-entropy secrets because its cost factor makes brute-force
       expensive, and checkpw() compares digests in constant time. The
       _DUMMY_HASH constant enables timing equalization in
       authenticate_user() so response time does not reveal whether a
       username exists.

  Session JWT: python-jose with HS256. The token carries only the session id
       (jti), user id, username and the role snapshot. The server-side session
       row is the source of truth -- a valid signature for a deleted session
       is rejected by the session manager, which is what makes logout real.

  Confirmation tokens: secrets.token_urlsafe(32) gives 256 bits of entropy.
       We store HMAC-SHA256(SECRET_KEY, raw_token) so lookup is O(1) via a
       unique index, and a leaked database does not leak usable links.

  SECRET_KEY: sourced from core.config.get_settings(), which validates length
       and refuses to start in production without one.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("pollhub.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_SECRET_KEY = _settings.secret_key
_ALGORITHM = "HS256"
AUTH_COOKIE = "access_token"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt (this is
    a known bcrypt limitation). The API layer caps password length well below
    that threshold.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed hash is a mismatch, not an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. It uses the same cost factor as real hashes,
# so checking against it costs exactly as much as a real failed check.
_DUMMY_HASH: str = hash_password("pollhub_timing_dummy")


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Check a username/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure. Do NOT inline
    find_by() + verify_password() elsewhere -- that re-introduces the
    enumeration side channel.
    """
    user = store.find_by("username", username)
    if user is None or user.password_hash is None:
        # Equalize timing -- do NOT return early before running bcrypt
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def new_session_id() -> str:
    return secrets.token_hex(16)


def create_session_token(session_id: str, user_id: int, username: str, role: str, expires_at: datetime) -> str:
    """Encode a signed JWT that references a server-side session.

    Args:
        session_id: Server-side session key, stored as the jti claim.
        user_id:    Numeric user ID.
        username:   Stored as the subject claim.
        role:       Role label snapshot ("voter", "organizer", "admin").
        expires_at: Absolute expiry; matches the session row.
    """
    payload = {
        "sub": username,
        "jti": session_id,
        "user_id": user_id,
        "role": role,
        "exp": expires_at,
    }
    return jwt.encode(payload, _SECRET_KEY, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> dict | None:
    """Decode and verify a session JWT. Returns the payload dict or None on any failure.

    Returning None (rather than raising) keeps the caller simple: any invalid
    or expired token is treated as anonymous.
    """
    try:
        payload = jwt.decode(token, _SECRET_KEY, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "jti" not in payload or "user_id" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Email confirmation tokens
# ---------------------------------------------------------------------------


def generate_confirmation_token() -> str:
    """Return a new URL-safe confirmation token (256 bits of entropy)."""
    return secrets.token_urlsafe(32)


def hash_confirmation_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the store can look the digest up through its unique
    index instead of comparing against every pending token.
    """
    return hmac.new(
        _SECRET_KEY.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, max_age: int = 0) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": cookie is not sent on cross-site POST -- CSRF mitigation
        for most cases.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: defaults to SESSION_EXPIRE_SECONDS so cookie and session expire
        together.
    """
    response.set_cookie(
        AUTH_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age or _settings.session_expire_seconds,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(AUTH_COOKIE)
