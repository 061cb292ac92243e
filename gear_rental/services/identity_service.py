from __future__ import annotations

import os
from dataclasses import dataclass

from .errors import AccessDeniedError


ADMIN_ROLE = "admin"
STUDENT_ROLE = "student"


@dataclass(frozen=True)
class ActorIdentity:
    id: str
    name: str
    email: str = ""
    role: str = STUDENT_ROLE

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def admin_email_allowlist() -> set[str]:
    raw = os.environ.get("ADMIN_EMAILS", "")
    return {item.strip().lower() for item in str(raw).split(",") if item.strip()}


def build_actor(
    actor_id: str,
    name: str | None = None,
    email: str | None = None,
    role: str | None = None,
) -> ActorIdentity:
    clean_email = (email or "").strip()
    clean_role = (role or STUDENT_ROLE).strip().lower()
    if clean_email and clean_email.lower() in admin_email_allowlist():
        clean_role = ADMIN_ROLE
    if clean_role not in {ADMIN_ROLE, STUDENT_ROLE}:
        clean_role = STUDENT_ROLE
    return ActorIdentity(
        id=str(actor_id).strip(),
        name=(name or "").strip() or "Unknown",
        email=clean_email,
        role=clean_role,
    )


def require_admin(actor: ActorIdentity) -> None:
    if not actor.is_admin:
        raise AccessDeniedError("Admin role required.")
