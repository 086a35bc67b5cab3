"""Password hashing and session cookie signing.

Passwords are hashed with bcrypt directly. The session cookie is a small
HS256 JWT whose only claim is the server-side session id; the session row
itself holds the identity claims and the expiry.
"""

import hmac
import logging
import secrets
from typing import Optional

import bcrypt
from jose import JWTError, jwt

from library_lending.config import (
    BCRYPT_ROUNDS,
    SESSION_SECRET,
    SESSION_SIGNING_ALGORITHM,
)

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes of a password
BCRYPT_MAX_BYTES = 72


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    """Hash a password using bcrypt.

    Args:
        password: Plain text password.

    Returns:
        Hashed password (bcrypt hash string).
    """
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(_password_bytes(password), salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a bcrypt hash.

    Args:
        plain_password: Plain text password to verify.
        hashed_password: Bcrypt hash string to verify against.

    Returns:
        True if password matches, False otherwise (including malformed hashes).
    """
    try:
        return bcrypt.checkpw(_password_bytes(plain_password), hashed_password.encode("utf-8"))
    except ValueError:
        logger.error("Stored password hash is malformed")
        return False


def secrets_match(supplied: str, expected: str) -> bool:
    """Constant-time comparison for out-of-band plaintext secrets."""
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def sign_session_id(sid: str) -> str:
    """Encode the session id into the signed cookie value."""
    return jwt.encode({"sid": sid}, SESSION_SECRET, algorithm=SESSION_SIGNING_ALGORITHM)


def read_session_id(token: str) -> Optional[str]:
    """Return the session id from a cookie value, or None if it was tampered with."""
    try:
        payload = jwt.decode(token, SESSION_SECRET, algorithms=[SESSION_SIGNING_ALGORITHM])
    except JWTError:
        return None
    sid = payload.get("sid")
    return sid if isinstance(sid, str) else None
