"""Session admission state machine for the portal client shell.

Every input, whether page load, identity-provider callback, disclaimer modal
or user interaction, is an event passed to :meth:`AdmissionController.dispatch`.
Dispatch is serialised by a lock, so the controller's :class:`AdmissionSession`
is the single inspectable record of where a visitor stands:

``UNKNOWN -> CHECKING_SESSION -> AUTHENTICATED [-> DISCLAIMER_PENDING] -> ADMITTED``
or ``-> BLOCKED`` / ``-> UNAUTHENTICATED``.

Role blocking always runs before the disclaimer check, and the disclaimer
check always runs before admission. Login recording is spawned as a detached
task guarded by ``AdmissionSession.login_recorded``; its failures are only
logged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol, Set, Union
from urllib.parse import quote

from .api_client import DirectoryEntry, PasswordLogin, PortalAPIError, RemoteDisclaimerStatus
from .config import DEFAULT_PUBLIC_PAGES, PortalSettings
from .disclaimer import DISCLAIMER_WINDOW, needs_disclaimer
from .fingerprint import ClientTelemetry
from .heartbeat import ActivityHeartbeat
from .identity import AuthEvent, AuthSession, IdentityProvider, IdentityProviderError
from .models import LoginMethod, is_blocked_role
from .sessions import (
    BLOCKED_ROLE_KEY,
    PASSWORD_EMAIL_KEY,
    REQUESTED_PAGE_KEY,
    SessionStore,
    cached_disclaimer_acceptance,
    clear_session,
    get_token,
    is_password_session,
    remember_disclaimer_acceptance,
    set_token,
    start_password_session,
)

logger = logging.getLogger("memberportal.admission")


class AdmissionState(str, Enum):
    UNKNOWN = "unknown"
    CHECKING_SESSION = "checking_session"
    AUTHENTICATED = "authenticated"
    DISCLAIMER_PENDING = "disclaimer_pending"
    ADMITTED = "admitted"
    BLOCKED = "blocked"
    UNAUTHENTICATED = "unauthenticated"


_SIGNED_IN_STATES = frozenset(
    {AdmissionState.AUTHENTICATED, AdmissionState.DISCLAIMER_PENDING, AdmissionState.ADMITTED}
)


@dataclass(frozen=True)
class PortalUser:
    id: str
    email: str
    role: Optional[str] = None


@dataclass(frozen=True)
class Redirect:
    path: str
    return_to: Optional[str] = None

    @property
    def url(self) -> str:
        if not self.return_to:
            return self.path
        return f"{self.path}?returnTo={quote(self.return_to, safe='')}"


@dataclass
class AdmissionSession:
    """Everything the controller knows about the current visitor."""

    state: AdmissionState = AdmissionState.UNKNOWN
    user: Optional[PortalUser] = None
    login_method: LoginMethod = LoginMethod.UNKNOWN
    login_recorded: bool = False
    blocked_role: Optional[str] = None
    redirect: Optional[Redirect] = None
    page: Optional[str] = None
    requested_page: Optional[str] = None
    disclaimer_scrolled: bool = False

    @property
    def disclaimer_accept_enabled(self) -> bool:
        return self.state is AdmissionState.DISCLAIMER_PENDING and self.disclaimer_scrolled


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class AppLoaded:
    page: Optional[str] = None


@dataclass(frozen=True)
class AuthStateChanged:
    event: AuthEvent
    session: Optional[AuthSession] = None


@dataclass(frozen=True)
class DisclaimerScrolled:
    pass


@dataclass(frozen=True)
class DisclaimerAccepted:
    pass


@dataclass(frozen=True)
class DisclaimerDeclined:
    pass


@dataclass(frozen=True)
class UserInteraction:
    kind: str = "pointerdown"


@dataclass(frozen=True)
class SignOutRequested:
    pass


@dataclass(frozen=True)
class NavigatedAway:
    pass


AdmissionEvent = Union[
    AppLoaded,
    AuthStateChanged,
    DisclaimerScrolled,
    DisclaimerAccepted,
    DisclaimerDeclined,
    UserInteraction,
    SignOutRequested,
    NavigatedAway,
]


class PortalDirectory(Protocol):
    """The portal endpoints the controller depends on (see :class:`PortalClient`)."""

    async def check_user(self, email: str) -> Optional[DirectoryEntry]: ...

    async def track_login(self, payload: Dict[str, Any]) -> Any: ...

    async def track_activity(self, user_id: str, email: str, activity_time: Optional[datetime] = None) -> None: ...

    async def disclaimer_status(
        self, *, user_id: Optional[str] = None, email: Optional[str] = None
    ) -> RemoteDisclaimerStatus: ...

    async def accept_disclaimer(
        self, *, user_id: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[datetime]: ...

    async def password_login(self, email: str, password: str) -> PasswordLogin: ...


HeartbeatFactory = Callable[[PortalUser], ActivityHeartbeat]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdmissionController:
    """Decide whether the current visitor reaches the authenticated portal."""

    def __init__(
        self,
        *,
        sessions: SessionStore,
        identity: IdentityProvider,
        directory: PortalDirectory,
        telemetry: Optional[ClientTelemetry] = None,
        heartbeat_factory: Optional[HeartbeatFactory] = None,
        public_pages: Iterable[str] = DEFAULT_PUBLIC_PAGES,
        login_path: str = "/login",
        default_page: str = "settings",
        disclaimer_window: timedelta = DISCLAIMER_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._sessions = sessions
        self._identity = identity
        self._directory = directory
        self._telemetry = telemetry
        self._heartbeat_factory = heartbeat_factory or self._default_heartbeat
        self._public_pages = frozenset(public_pages)
        self._login_path = login_path
        self._default_page = default_page
        self._disclaimer_window = disclaimer_window
        self._clock = clock

        self.session = AdmissionSession()
        self._lock = asyncio.Lock()
        self._heartbeat: Optional[ActivityHeartbeat] = None
        self._login_tasks: Set[asyncio.Task[None]] = set()
        self._event_tasks: Set[asyncio.Task[Any]] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def state(self) -> AdmissionState:
        return self.session.state

    @property
    def heartbeat(self) -> Optional[ActivityHeartbeat]:
        return self._heartbeat

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def subscribe(self) -> None:
        """Feed identity-provider callbacks into :meth:`dispatch`."""

        if self._unsubscribe is None:
            self._unsubscribe = self._identity.on_auth_state_change(self._on_auth_state_change)

    def _on_auth_state_change(self, event: AuthEvent, session: Optional[AuthSession]) -> None:
        self._spawn(self.dispatch(AuthStateChanged(event, session)), self._event_tasks)

    async def drain(self) -> None:
        """Wait for queued callbacks and detached login recording to finish."""

        while self._event_tasks or self._login_tasks:
            await asyncio.gather(*self._event_tasks, *self._login_tasks, return_exceptions=True)

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._stop_background()
        for task in list(self._event_tasks):
            if task is not asyncio.current_task():
                task.cancel()

    async def sign_in_with_password(self, email: str, password: str) -> AdmissionSession:
        """Submit the administrator login form and admit through the new password session.

        A refused login raises :class:`PortalAPIError` carrying the server's message
        and leaves the stored session untouched.
        """

        login = await self._directory.password_login(email, password)
        start_password_session(self._sessions, token=login.token, email=login.user.email)
        return await self.dispatch(AppLoaded(self.session.requested_page))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def dispatch(self, event: AdmissionEvent) -> AdmissionSession:
        async with self._lock:
            previous = self.session.state
            if isinstance(event, AppLoaded):
                await self._on_app_loaded(event)
            elif isinstance(event, AuthStateChanged):
                await self._on_auth_event(event)
            elif isinstance(event, DisclaimerScrolled):
                if self.session.state is AdmissionState.DISCLAIMER_PENDING:
                    self.session.disclaimer_scrolled = True
            elif isinstance(event, DisclaimerAccepted):
                await self._on_disclaimer_accepted()
            elif isinstance(event, DisclaimerDeclined):
                if self.session.state is AdmissionState.DISCLAIMER_PENDING:
                    await self._sign_out(call_provider=True)
            elif isinstance(event, UserInteraction):
                if self._heartbeat is not None:
                    self._heartbeat.notify_interaction(event.kind)
            elif isinstance(event, SignOutRequested):
                if self.session.state in _SIGNED_IN_STATES:
                    await self._sign_out(call_provider=True)
            elif isinstance(event, NavigatedAway):
                await self._stop_background()
            else:
                raise TypeError(f"Unsupported admission event: {event!r}")

            if self.session.state is not previous:
                logger.debug("Admission %s -> %s on %s", previous.value, self.session.state.value, type(event).__name__)
            return replace(self.session)

    async def _on_app_loaded(self, event: AppLoaded) -> None:
        recorded = self.session.login_recorded
        if event.page and event.page in self._public_pages:
            self.session = AdmissionSession(
                state=AdmissionState.ADMITTED,
                page=event.page,
                login_recorded=recorded,
            )
            return

        requested = event.page or self._sessions.get(REQUESTED_PAGE_KEY)
        self.session = AdmissionSession(
            state=AdmissionState.CHECKING_SESSION,
            requested_page=requested,
            login_recorded=recorded,
        )
        if requested:
            self._sessions.set(REQUESTED_PAGE_KEY, requested)

        if is_password_session(self._sessions):
            await self._check_password_session()
        else:
            await self._check_identity_session()

    async def _check_password_session(self) -> None:
        email = self._sessions.get(PASSWORD_EMAIL_KEY) or ""
        entry: Optional[DirectoryEntry] = None
        if email:
            try:
                entry = await self._directory.check_user(email)
            except PortalAPIError as exc:
                # Unlike the identity-provider path, a failed lookup here ends the session.
                logger.warning("User lookup for password session %s failed: %s", email, exc)

        if entry is None:
            clear_session(self._sessions)
            self._unauthenticated()
            return
        if is_blocked_role(entry.role):
            await self._block(str(entry.role), sign_out_provider=False, keep_return_target=False)
            return

        await self._authenticate(
            PortalUser(id=entry.id, email=entry.email, role=entry.role),
            LoginMethod.PASSWORD,
            token=get_token(self._sessions),
        )

    async def _check_identity_session(self) -> None:
        try:
            auth_session = await self._identity.get_session()
        except IdentityProviderError as exc:
            logger.warning("Identity provider session check failed: %s", exc)
            auth_session = None

        if auth_session is None:
            if get_token(self._sessions):
                clear_session(self._sessions)
            self._unauthenticated()
            return

        await self._accept_identity_session(auth_session)

    async def _accept_identity_session(self, auth_session: AuthSession) -> None:
        role = await self._lookup_role(auth_session.email)
        if is_blocked_role(role):
            await self._block(str(role), sign_out_provider=True, keep_return_target=True)
            return

        await self._authenticate(
            PortalUser(id=auth_session.user_id, email=auth_session.email, role=role),
            LoginMethod.OTP,
            token=auth_session.access_token,
        )

    async def _lookup_role(self, email: str) -> Optional[str]:
        try:
            entry = await self._directory.check_user(email)
        except PortalAPIError as exc:
            logger.warning("Role lookup for %s failed, continuing with an unknown role: %s", email, exc)
            return None
        return entry.role if entry is not None else None

    async def _on_auth_event(self, change: AuthStateChanged) -> None:
        if change.event is AuthEvent.SIGNED_OUT:
            if self.session.state in _SIGNED_IN_STATES and self.session.login_method is not LoginMethod.PASSWORD:
                await self._sign_out(call_provider=False)
            return

        if change.session is None:
            return

        if change.event is AuthEvent.TOKEN_REFRESHED:
            if self.session.state in _SIGNED_IN_STATES and self.session.login_method is LoginMethod.OTP:
                set_token(self._sessions, change.session.access_token)
            return

        current = self.session.user
        if (
            self.session.state in _SIGNED_IN_STATES
            and current is not None
            and current.id == change.session.user_id
        ):
            role = await self._lookup_role(change.session.email)
            if is_blocked_role(role):
                await self._block(str(role), sign_out_provider=True, keep_return_target=True)
                return
            set_token(self._sessions, change.session.access_token)
            return

        await self._accept_identity_session(change.session)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------
    def _unauthenticated(self) -> None:
        requested = self.session.requested_page
        self.session = AdmissionSession(
            state=AdmissionState.UNAUTHENTICATED,
            requested_page=requested,
            redirect=Redirect(self._login_path, return_to=requested),
        )

    async def _block(self, role: str, *, sign_out_provider: bool, keep_return_target: bool) -> None:
        role = role.strip().lower()
        logger.info("Blocking admission for role %s", role)
        if sign_out_provider:
            await self._provider_sign_out()
        clear_session(self._sessions)
        self._sessions.set(BLOCKED_ROLE_KEY, role)
        await self._stop_background()

        requested = self.session.requested_page if keep_return_target else None
        self.session = AdmissionSession(
            state=AdmissionState.BLOCKED,
            blocked_role=role,
            requested_page=requested,
            redirect=Redirect(self._login_path, return_to=requested),
        )

    async def _authenticate(self, user: PortalUser, method: LoginMethod, *, token: Optional[str]) -> None:
        if token:
            set_token(self._sessions, token)
        self.session.state = AdmissionState.AUTHENTICATED
        self.session.user = user
        self.session.login_method = method
        self.session.redirect = None
        self.session.blocked_role = None

        if not self.session.login_recorded:
            self.session.login_recorded = True
            self._spawn(self._record_login(user, method), self._login_tasks)

        if await self._disclaimer_required(user):
            self.session.state = AdmissionState.DISCLAIMER_PENDING
            self.session.disclaimer_scrolled = False
            return

        self._admit(self.session.requested_page)

    async def _disclaimer_required(self, user: PortalUser) -> bool:
        try:
            status = await self._directory.disclaimer_status(user_id=user.id, email=user.email)
        except PortalAPIError as exc:
            logger.warning("Disclaimer check failed, using the locally cached acceptance: %s", exc)
            return needs_disclaimer(self._local_acceptance(user), now=self._clock(), window=self._disclaimer_window)

        if status.last_accepted_at is not None:
            remember_disclaimer_acceptance(
                self._sessions, user_id=user.id, accepted_at=status.last_accepted_at.isoformat()
            )
        return status.needs_disclaimer

    def _local_acceptance(self, user: PortalUser) -> Optional[datetime]:
        raw = cached_disclaimer_acceptance(self._sessions, user.id)
        if not raw:
            return None
        try:
            accepted = datetime.fromisoformat(raw)
        except ValueError:
            return None
        return accepted if accepted.tzinfo else accepted.replace(tzinfo=timezone.utc)

    async def _on_disclaimer_accepted(self) -> None:
        if not self.session.disclaimer_accept_enabled or self.session.user is None:
            return
        user = self.session.user
        accepted_at: Optional[datetime] = None
        try:
            accepted_at = await self._directory.accept_disclaimer(user_id=user.id, email=user.email)
        except PortalAPIError as exc:
            logger.warning("Failed to record disclaimer acceptance remotely, keeping it locally: %s", exc)
        remember_disclaimer_acceptance(
            self._sessions, user_id=user.id, accepted_at=(accepted_at or self._clock()).isoformat()
        )
        self._admit(self._default_page)

    def _admit(self, page: Optional[str]) -> None:
        self.session.state = AdmissionState.ADMITTED
        self.session.page = page or self._default_page
        self.session.disclaimer_scrolled = False
        self._sessions.remove(REQUESTED_PAGE_KEY)
        if self.session.user is not None:
            self._start_heartbeat(self.session.user)

    async def _sign_out(self, *, call_provider: bool) -> None:
        if call_provider and self.session.login_method is not LoginMethod.PASSWORD:
            await self._provider_sign_out()
        clear_session(self._sessions)
        await self._stop_background()
        self.session = AdmissionSession(
            state=AdmissionState.UNAUTHENTICATED,
            redirect=Redirect(self._login_path),
        )

    async def _provider_sign_out(self) -> None:
        try:
            await self._identity.sign_out()
        except IdentityProviderError as exc:
            logger.warning("Identity provider sign-out failed: %s", exc)

    # ------------------------------------------------------------------
    # Detached work
    # ------------------------------------------------------------------
    def _spawn(self, coro: Awaitable[Any], bucket: Set[asyncio.Task[Any]]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        bucket.add(task)
        task.add_done_callback(bucket.discard)
        return task

    async def _record_login(self, user: PortalUser, method: LoginMethod) -> None:
        try:
            if self._telemetry is not None:
                payload = await self._telemetry.login_payload(
                    user_id=user.id,
                    email=user.email,
                    login_method=method,
                )
            else:
                payload = {
                    "user_id": user.id,
                    "email": user.email,
                    "login_method": method.value,
                    "login_time": self._clock().isoformat(),
                }
            await self._directory.track_login(payload)
            logger.info("Recorded %s login for %s", method.value, user.id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - detached work only logs
            logger.warning("Failed to record login for %s: %s", user.id, exc)

    def _default_heartbeat(self, user: PortalUser) -> ActivityHeartbeat:
        return ActivityHeartbeat(lambda: self._directory.track_activity(user.id, user.email))

    def _start_heartbeat(self, user: PortalUser) -> None:
        if self._heartbeat is not None and self._heartbeat.running:
            return
        self._heartbeat = self._heartbeat_factory(user)
        self._heartbeat.start()

    async def _stop_background(self) -> None:
        heartbeat, self._heartbeat = self._heartbeat, None
        if heartbeat is not None:
            await heartbeat.stop()
        current = asyncio.current_task()
        for task in list(self._login_tasks):
            if task is not current:
                task.cancel()


def build_controller(
    settings: PortalSettings,
    *,
    sessions: SessionStore,
    identity: IdentityProvider,
    directory: PortalDirectory,
    telemetry: Optional[ClientTelemetry] = None,
) -> AdmissionController:
    """Wire a controller with the timing and routing values from ``settings``."""

    def heartbeat_factory(user: PortalUser) -> ActivityHeartbeat:
        return ActivityHeartbeat(
            lambda: directory.track_activity(user.id, user.email),
            interval=settings.heartbeat_interval,
            debounce=settings.heartbeat_debounce,
            warning_interval=settings.heartbeat_warning_interval,
        )

    return AdmissionController(
        sessions=sessions,
        identity=identity,
        directory=directory,
        telemetry=telemetry,
        heartbeat_factory=heartbeat_factory,
        public_pages=settings.public_pages,
        login_path=settings.login_path,
        default_page=settings.default_page,
        disclaimer_window=timedelta(days=settings.disclaimer_window_days),
    )


__all__ = [
    "AdmissionController",
    "AdmissionEvent",
    "AdmissionSession",
    "AdmissionState",
    "AppLoaded",
    "AuthStateChanged",
    "DisclaimerAccepted",
    "DisclaimerDeclined",
    "DisclaimerScrolled",
    "NavigatedAway",
    "PortalDirectory",
    "PortalUser",
    "Redirect",
    "SignOutRequested",
    "UserInteraction",
    "build_controller",
]
