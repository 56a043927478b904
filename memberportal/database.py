"""SQLite-backed persistence for members, login events and allowed domains."""
from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import resolve_database_path
from .models import DeviceSnapshot, GeoSnapshot, LoginEvent, Role, User
from .security import hash_password, verify_password

_ROLES = {role.value for role in Role}


class DataStoreError(RuntimeError):
    """Raised when the underlying store rejects a query."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"message": self.message}
        if self.code is not None:
            payload["code"] = self.code
        return payload


class UserNotFoundError(LookupError):
    """Raised when a lookup by id or email matches no user."""

    def __str__(self) -> str:
        return "User not found"


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    return email.strip().lower()


_LOGIN_COLUMNS = (
    "user_id",
    "email",
    "ip_address",
    "country",
    "country_code",
    "city",
    "region",
    "region_code",
    "timezone",
    "isp",
    "organization",
    "asn",
    "latitude",
    "longitude",
    "postal_code",
    "device",
    "browser",
    "browser_version",
    "os",
    "user_agent",
    "language",
    "languages",
    "platform",
    "cookie_enabled",
    "do_not_track",
    "screen_width",
    "screen_height",
    "screen_color_depth",
    "viewport_width",
    "viewport_height",
    "device_timezone",
    "timezone_offset",
    "online_status",
    "hardware_concurrency",
    "device_memory",
    "login_method",
    "login_time",
)


class Database:
    """Simple wrapper around SQLite for the tables the portal core touches."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            with self._connect() as conn:
                return conn.execute(sql, params)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise DataStoreError(str(exc), code=type(exc).__name__) from exc

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        try:
            with self._connect() as conn:
                return conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise DataStoreError(str(exc), code=type(exc).__name__) from exc

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT,
                    role TEXT NOT NULL DEFAULT 'guest',
                    password_hash TEXT,
                    last_login TEXT,
                    last_activity TEXT,
                    disclaimer_accepted_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_logins (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    ip_address TEXT NOT NULL DEFAULT 'Unknown',
                    country TEXT, country_code TEXT, city TEXT, region TEXT,
                    region_code TEXT, timezone TEXT, isp TEXT, organization TEXT,
                    asn TEXT, latitude REAL, longitude REAL, postal_code TEXT,
                    device TEXT, browser TEXT, browser_version TEXT, os TEXT,
                    user_agent TEXT, language TEXT, languages TEXT, platform TEXT,
                    cookie_enabled TEXT, do_not_track TEXT,
                    screen_width INTEGER, screen_height INTEGER, screen_color_depth INTEGER,
                    viewport_width INTEGER, viewport_height INTEGER,
                    device_timezone TEXT, timezone_offset INTEGER, online_status TEXT,
                    hardware_concurrency INTEGER, device_memory REAL,
                    login_method TEXT NOT NULL DEFAULT 'unknown',
                    login_time TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS org_domains (
                    domain_email TEXT PRIMARY KEY,
                    org_name TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_user_logins_user_id ON user_logins(user_id);
                """
            )

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(
        self,
        email: str,
        *,
        role: str = Role.GUEST.value,
        name: Optional[str] = None,
        user_id: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        """Create a new member record and return it."""

        normalized_email = normalize_email(email)
        if not normalized_email or "@" not in normalized_email:
            raise ValueError("A valid email address is required")
        if role not in _ROLES:
            raise ValueError(f"Unknown role '{role}'")

        identifier = user_id or str(uuid.uuid4())
        created_at = _current_timestamp()
        password_hash = hash_password(password) if password else None

        try:
            self._execute(
                """
                INSERT INTO users (id, email, name, role, password_hash, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (identifier, normalized_email, name, role, password_hash, _serialize_datetime(created_at)),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError("A user with that email already exists") from exc

        return User(id=identifier, email=normalized_email, role=role, name=name, created_at=created_at)

    def upsert_user(self, user_id: str, email: str, *, name: Optional[str] = None, role: str = Role.GUEST.value) -> User:
        """Insert the user or refresh its email/name, leaving the role untouched."""

        normalized_email = normalize_email(email)
        try:
            self._execute(
                """
                INSERT INTO users (id, email, name, role, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    name = COALESCE(excluded.name, users.name)
                """,
                (user_id, normalized_email, name, role, _serialize_datetime(_current_timestamp())),
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError("A different user already owns that email") from exc

        user = self.get_user(user_id)
        if user is None:  # pragma: no cover - the row was just written
            raise DataStoreError("User vanished after upsert")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        row = self._fetchone("SELECT * FROM users WHERE id = ?", (str(user_id),))
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._fetchone("SELECT * FROM users WHERE email = ?", (normalize_email(email),))
        if row is None:
            return None
        return self._row_to_user(row)

    def find_user(self, *, user_id: Optional[str] = None, email: Optional[str] = None) -> Optional[User]:
        """Look a user up by id when given, otherwise by email."""

        if user_id:
            return self.get_user(user_id)
        if email:
            return self.get_user_by_email(email)
        raise ValueError("User ID or email is required")

    def verify_user_password(self, user_id: str, password: str) -> bool:
        """Return ``True`` if the supplied password matches the stored hash."""

        row = self._fetchone("SELECT password_hash FROM users WHERE id = ?", (user_id,))
        if row is None or not row["password_hash"]:
            return False
        return verify_password(password, row["password_hash"])

    def touch_login(self, user_id: str, at: datetime) -> bool:
        """Stamp ``last_login`` and ``last_activity``; returns whether a row matched."""

        stamp = _serialize_datetime(at)
        cursor = self._execute(
            "UPDATE users SET last_login = ?, last_activity = ? WHERE id = ?",
            (stamp, stamp, user_id),
        )
        return cursor.rowcount > 0

    def touch_activity(self, user_id: str, at: datetime) -> bool:
        cursor = self._execute(
            "UPDATE users SET last_activity = ? WHERE id = ?",
            (_serialize_datetime(at), user_id),
        )
        return cursor.rowcount > 0

    def set_disclaimer_accepted(
        self,
        at: datetime,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> bool:
        stamp = _serialize_datetime(at)
        if user_id:
            cursor = self._execute(
                "UPDATE users SET disclaimer_accepted_at = ? WHERE id = ?",
                (stamp, user_id),
            )
        elif email:
            cursor = self._execute(
                "UPDATE users SET disclaimer_accepted_at = ? WHERE email = ?",
                (stamp, normalize_email(email)),
            )
        else:
            raise ValueError("User ID or email is required")
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Login events
    # ------------------------------------------------------------------
    def insert_login(self, event: LoginEvent) -> LoginEvent:
        record = event.to_record()
        values = tuple(record[column] for column in _LOGIN_COLUMNS)
        placeholders = ", ".join("?" for _ in _LOGIN_COLUMNS)
        try:
            cursor = self._execute(
                f"INSERT INTO user_logins ({', '.join(_LOGIN_COLUMNS)}) VALUES ({placeholders})",
                values,
            )
        except sqlite3.IntegrityError as exc:
            raise DataStoreError(str(exc), code="IntegrityError") from exc

        return LoginEvent(
            id=cursor.lastrowid,
            user_id=event.user_id,
            email=event.email,
            ip_address=event.ip_address,
            login_method=event.login_method,
            login_time=event.login_time,
            geo=event.geo,
            device=event.device,
        )

    def list_logins(self, user_id: Optional[str] = None) -> List[LoginEvent]:
        try:
            with self._connect() as conn:
                if user_id is None:
                    rows = conn.execute("SELECT * FROM user_logins ORDER BY id").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM user_logins WHERE user_id = ? ORDER BY id",
                        (user_id,),
                    ).fetchall()
        except sqlite3.Error as exc:
            raise DataStoreError(str(exc), code=type(exc).__name__) from exc
        return [self._row_to_login(row) for row in rows]

    # ------------------------------------------------------------------
    # Organisation domains
    # ------------------------------------------------------------------
    def allow_domain(self, domain: str, org_name: Optional[str] = None) -> None:
        cleaned = domain.strip().lower()
        if not cleaned or "." not in cleaned:
            raise ValueError("A valid domain is required")
        self._execute(
            """
            INSERT INTO org_domains (domain_email, org_name, created_at) VALUES (?, ?, ?)
            ON CONFLICT(domain_email) DO UPDATE SET org_name = COALESCE(excluded.org_name, org_domains.org_name)
            """,
            (cleaned, org_name, _serialize_datetime(_current_timestamp())),
        )

    def is_domain_allowed(self, domain: str) -> bool:
        row = self._fetchone(
            "SELECT 1 FROM org_domains WHERE domain_email = ?",
            (domain.strip().lower(),),
        )
        return row is not None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            role=row["role"],
            created_at=_parse_datetime(row["created_at"]) or _current_timestamp(),
            last_login=_parse_datetime(row["last_login"]),
            last_activity=_parse_datetime(row["last_activity"]),
            disclaimer_accepted_at=_parse_datetime(row["disclaimer_accepted_at"]),
        )

    @staticmethod
    def _row_to_login(row: sqlite3.Row) -> LoginEvent:
        record = dict(row)
        return LoginEvent(
            id=record["id"],
            user_id=record["user_id"],
            email=record["email"],
            ip_address=record["ip_address"],
            login_method=record["login_method"],
            login_time=_parse_datetime(record["login_time"]) or _current_timestamp(),
            geo=GeoSnapshot.from_record(record),
            device=DeviceSnapshot.from_record(record),
        )


__all__ = [
    "DataStoreError",
    "Database",
    "UserNotFoundError",
    "normalize_email",
    "resolve_database_path",
]
