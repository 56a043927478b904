"""Configuration management for the member portal service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, FrozenSet, Mapping, Optional

import yaml

DEFAULT_PUBLIC_PAGES = frozenset({"newuser-form"})
_ENV_PREFIX = "PORTAL_"


@dataclass(frozen=True)
class PortalSettings:
    """Runtime settings shared by the HTTP endpoints and the client shell."""

    database_path: Path
    api_base_url: str = "http://localhost:8000"
    login_path: str = "/login"
    default_page: str = "settings"
    public_pages: FrozenSet[str] = field(default_factory=lambda: DEFAULT_PUBLIC_PAGES)
    default_role: str = "guest"
    allowed_domains: FrozenSet[str] = field(default_factory=frozenset)
    disclaimer_window_days: int = 90
    heartbeat_interval: float = 120.0
    heartbeat_debounce: float = 30.0
    heartbeat_warning_interval: float = 60.0
    ip_lookup_timeout: float = 3.0
    client_geo_timeout: float = 4.0
    server_geo_timeout: float = 5.0

    @staticmethod
    def from_dict(data: Mapping[str, object], base: "PortalSettings") -> "PortalSettings":
        """Overlay raw configuration values on top of ``base``."""

        unknown = set(data.keys()) - set(base.__dataclass_fields__.keys())
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        changes: Dict[str, object] = {}
        for key, value in data.items():
            if value is None:
                continue
            current = getattr(base, key)
            try:
                if key == "database_path":
                    changes[key] = Path(str(value)).expanduser().resolve(strict=False)
                elif key in {"public_pages", "allowed_domains"}:
                    changes[key] = _parse_set(value)
                elif isinstance(current, int):
                    changes[key] = int(value)
                elif isinstance(current, float):
                    changes[key] = float(value)
                else:
                    changes[key] = str(value).strip()
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Invalid value for configuration key '{key}': {value!r}") from exc

        settings = replace(base, **changes)
        if settings.disclaimer_window_days <= 0:
            raise ValueError("disclaimer_window_days must be positive")
        if settings.default_role not in {"guest", "member", "admin", "moderator", "new", "declined"}:
            raise ValueError(f"Unknown default_role '{settings.default_role}'")
        return settings


def _parse_set(value: object) -> FrozenSet[str]:
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = [str(item) for item in value]
    else:
        raise ValueError(f"Expected a list or comma separated string, got {value!r}")
    return frozenset(item.strip().lower() for item in items if item.strip())


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the portal database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "portal.sqlite3").resolve(strict=False)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the optional YAML configuration file."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "portal.yaml").resolve(strict=False)


def _environment_overrides(environ: Mapping[str, str]) -> Dict[str, object]:
    overrides: Dict[str, object] = {}
    for key in PortalSettings.__dataclass_fields__:
        raw = environ.get(f"{_ENV_PREFIX}{key.upper()}")
        if raw is not None and raw.strip():
            overrides[key] = raw
    # PORTAL_DB_PATH is the name used by the CLI and deployment units.
    db_path = environ.get("PORTAL_DB_PATH")
    if db_path:
        overrides["database_path"] = db_path
    return overrides


def load_settings(
    config_path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> PortalSettings:
    """Build settings from defaults, an optional YAML file, then the environment."""

    env = os.environ if environ is None else environ
    settings = PortalSettings(database_path=resolve_database_path(None))

    path = config_path or resolve_config_path(env.get("PORTAL_CONFIG"))
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        if not isinstance(raw, dict):
            raise ValueError("Portal configuration file must contain a mapping")
        settings = PortalSettings.from_dict(raw, settings)
    elif config_path is not None:
        raise ValueError(f"Configuration file {config_path} does not exist")

    return PortalSettings.from_dict(_environment_overrides(env), settings)


__all__ = [
    "DEFAULT_PUBLIC_PAGES",
    "PortalSettings",
    "load_settings",
    "resolve_config_path",
    "resolve_database_path",
]
