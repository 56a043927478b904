"""Domain allow-listed signup provisioning."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from .database import Database, normalize_email
from .models import Role

logger = logging.getLogger("memberportal.provisioning")


@dataclass(frozen=True)
class ProvisioningResult:
    user_id: str
    created: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"created": self.created, "user_id": self.user_id}
        if self.reason:
            payload["reason"] = self.reason
        return payload


def email_domain(email: str) -> str:
    _, _, domain = normalize_email(email).partition("@")
    if not domain or "." not in domain:
        raise ValueError("Invalid email domain")
    return domain


class UserProvisioner:
    """Create or link member records for signups from allowed organisations.

    Domains come from the ``org_domains`` table, plus any configured
    ``extra_domains`` (used for bootstrap deployments before the table is
    populated).
    """

    def __init__(
        self,
        database: Database,
        *,
        default_role: str = Role.GUEST.value,
        extra_domains: Iterable[str] = (),
    ) -> None:
        self._database = database
        self._default_role = default_role
        self._extra_domains = frozenset(domain.strip().lower() for domain in extra_domains if domain.strip())

    def is_allowed(self, domain: str) -> bool:
        return domain in self._extra_domains or self._database.is_domain_allowed(domain)

    def provision(self, email: Optional[str]) -> ProvisioningResult:
        if not email or not isinstance(email, str):
            raise ValueError("Missing or invalid email")
        domain = email_domain(email)
        if not self.is_allowed(domain):
            raise PermissionError("Domain not allowed")

        existing = self._database.get_user_by_email(email)
        if existing is not None:
            return ProvisioningResult(user_id=existing.id, created=False, reason="already_exists")

        user = self._database.create_user(email, role=self._default_role)
        logger.info("Provisioned user %s for domain %s", user.id, domain)
        return ProvisioningResult(user_id=user.id, created=True)

    def sync_signed_in(self, session: Mapping[str, Any]) -> ProvisioningResult:
        """Upsert the user carried by an identity-provider ``SIGNED_IN`` webhook."""

        user = session.get("user") if isinstance(session, Mapping) else None
        if not isinstance(user, Mapping) or not user.get("id") or not user.get("email"):
            raise ValueError("Webhook session is missing the user id or email")
        metadata = user.get("user_metadata") or {}
        name = metadata.get("name") if isinstance(metadata, Mapping) else None
        existed = self._database.get_user(str(user["id"])) is not None
        stored = self._database.upsert_user(
            str(user["id"]),
            str(user["email"]),
            name=name,
            role=self._default_role,
        )
        return ProvisioningResult(user_id=stored.id, created=not existed)


__all__ = ["ProvisioningResult", "UserProvisioner", "email_domain"]
