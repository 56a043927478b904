"""Identity-provider session capability consumed by the admission controller."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


@dataclass(frozen=True)
class AuthSession:
    """Server-issued one-time-passcode session."""

    user_id: str
    email: str
    access_token: str
    refresh_token: Optional[str] = None


class IdentityProviderError(RuntimeError):
    """Raised when the identity provider cannot answer a session query."""


AuthListener = Callable[[AuthEvent, Optional[AuthSession]], None]


class IdentityProvider(Protocol):
    async def get_session(self) -> Optional[AuthSession]:
        """Return the current session, ``None`` when signed out.

        Raises :class:`IdentityProviderError` when the provider is unreachable.
        """

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unsubscribes it."""

    async def sign_out(self) -> None: ...


__all__ = ["AuthEvent", "AuthListener", "AuthSession", "IdentityProvider", "IdentityProviderError"]
