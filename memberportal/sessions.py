"""Browser-local session state used by the admission controller."""

from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol

TOKEN_KEY = "token"
PASSWORD_LOGIN_KEY = "password-login"
PASSWORD_EMAIL_KEY = "password-email"
BLOCKED_ROLE_KEY = "blocked-role"
REQUESTED_PAGE_KEY = "requested-page"
DISCLAIMER_ACCEPTED_KEY = "disclaimer-accepted-at"
DISCLAIMER_OWNER_KEY = "disclaimer-accepted-by"

BLOCKED_ROLE_MESSAGES = {
    "new": (
        "Your account is pending approval. The team will review your submission "
        "and get in touch with you soon."
    ),
    "declined": (
        "Access to your account has been declined. Please contact the team if "
        "you believe this is an error."
    ),
}


class SessionStore(Protocol):
    """Key/value storage that survives page reloads (``localStorage`` in a browser)."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemorySessionStore:
    """Thread-safe in-memory :class:`SessionStore`."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._values)


def get_token(store: SessionStore) -> Optional[str]:
    return store.get(TOKEN_KEY)


def set_token(store: SessionStore, token: str) -> None:
    store.set(TOKEN_KEY, token)


def clear_session(store: SessionStore) -> None:
    """Drop every marker of a signed-in session, including the cached disclaimer acceptance."""

    for key in (TOKEN_KEY, PASSWORD_LOGIN_KEY, PASSWORD_EMAIL_KEY, DISCLAIMER_ACCEPTED_KEY, DISCLAIMER_OWNER_KEY):
        store.remove(key)


def is_password_session(store: SessionStore) -> bool:
    return store.get(PASSWORD_LOGIN_KEY) == "true" and bool(store.get(TOKEN_KEY))


def start_password_session(store: SessionStore, *, token: str, email: str) -> None:
    store.set(TOKEN_KEY, token)
    store.set(PASSWORD_LOGIN_KEY, "true")
    store.set(PASSWORD_EMAIL_KEY, email)


def remember_disclaimer_acceptance(store: SessionStore, *, user_id: str, accepted_at: str) -> None:
    store.set(DISCLAIMER_ACCEPTED_KEY, accepted_at)
    store.set(DISCLAIMER_OWNER_KEY, user_id)


def cached_disclaimer_acceptance(store: SessionStore, user_id: str) -> Optional[str]:
    """Return the cached acceptance timestamp only if ``user_id`` recorded it."""

    if store.get(DISCLAIMER_OWNER_KEY) != user_id:
        return None
    return store.get(DISCLAIMER_ACCEPTED_KEY)


def consume_blocked_role_message(store: SessionStore) -> Optional[str]:
    """Return the login-page message for a blocked role and clear the marker."""

    role = store.get(BLOCKED_ROLE_KEY)
    if role is None:
        return None
    store.remove(BLOCKED_ROLE_KEY)
    return BLOCKED_ROLE_MESSAGES.get(role)


__all__ = [
    "BLOCKED_ROLE_KEY",
    "BLOCKED_ROLE_MESSAGES",
    "DISCLAIMER_ACCEPTED_KEY",
    "DISCLAIMER_OWNER_KEY",
    "MemorySessionStore",
    "PASSWORD_EMAIL_KEY",
    "PASSWORD_LOGIN_KEY",
    "REQUESTED_PAGE_KEY",
    "SessionStore",
    "TOKEN_KEY",
    "cached_disclaimer_acceptance",
    "clear_session",
    "consume_blocked_role_message",
    "get_token",
    "is_password_session",
    "remember_disclaimer_acceptance",
    "set_token",
    "start_password_session",
]
