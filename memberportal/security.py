"""Password hashing and password-session tokens for administrator logins.

New hashes are bcrypt via passlib. Accounts imported with a
``pbkdf2_sha256$rounds$salt$hash`` digest still verify, so administrators keep
working passwords until they are reset.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets

from passlib.context import CryptContext

PASSWORD_TOKEN_PREFIX = "password_login_"

_LEGACY_PREFIX = "pbkdf2_sha256$"

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password must not be empty")
    return _pwd_context.hash(password)


def _legacy_pbkdf2_matches(password: str, hashed: str) -> bool:
    parts = hashed[len(_LEGACY_PREFIX):].split("$")
    if len(parts) != 3:
        return False
    rounds_text, salt_text, digest_text = parts
    try:
        iterations = int(rounds_text)
        salt = base64.b64decode(salt_text, validate=True)
        digest = base64.b64decode(digest_text, validate=True)
    except (ValueError, binascii.Error):
        return False
    if iterations <= 0:
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(digest, candidate)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    if hashed.startswith(_LEGACY_PREFIX):
        return _legacy_pbkdf2_matches(password, hashed)
    try:
        return _pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        # passlib rejects digests it cannot identify
        return False


def issue_password_token() -> str:
    """Return an opaque token for a password session.

    Password sessions carry no server-side expiry; the token only marks the
    browser as signed in through the administrator form.
    """

    return PASSWORD_TOKEN_PREFIX + secrets.token_urlsafe(24)


__all__ = [
    "PASSWORD_TOKEN_PREFIX",
    "hash_password",
    "issue_password_token",
    "verify_password",
]
