"""
Feature-flagged API authn/authz helpers.

Default behavior is permissive: the surrounding service authenticates callers.
Set `AUTH_ENFORCEMENT=true` to require identity headers and a clinician or
admin role on every pipeline route.
"""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, HTTPException

from apps.worker.jobs import REVIEWER_ROLES
from packages.shared.config import load_settings


def auth_enforcement_enabled() -> bool:
    return load_settings().auth_enforcement


@dataclass(frozen=True)
class RequestIdentity:
    user_id: str
    role: str


def get_request_identity(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_user_role: str | None = Header(default=None, alias="X-User-Role"),
) -> RequestIdentity | None:
    """
    Resolve request identity from headers.
    Returns None when enforcement is disabled and no headers were sent.
    """
    role = (x_user_role or "").strip().lower()
    if not auth_enforcement_enabled():
        if x_user_id and role:
            return RequestIdentity(user_id=x_user_id, role=role)
        return None

    if not x_user_id or not role:
        raise HTTPException(status_code=401, detail="Missing required identity headers: X-User-Id and X-User-Role")
    if role not in REVIEWER_ROLES:
        raise HTTPException(status_code=403, detail="Forbidden: clinician or admin role required")
    return RequestIdentity(user_id=x_user_id, role=role)
