"""
Authentication and authorization primitives.

Provides:
- get_auth_user(): bearer token -> AuthUser via Supabase Auth, or None
- require_auth_user(): same, but raises Unauthorized
- AdminPolicy / is_privileged(): operator allow-list, passed in explicitly
"""
from dataclasses import dataclass
from typing import FrozenSet, Optional

import httpx
from supabase import AuthError

from config import settings
from core.database import get_supabase
from core.errors import Unauthorized
from core.models.user import AuthUser


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_auth_user(authorization: Optional[str]) -> Optional[AuthUser]:
    """
    Resolve the identity behind an Authorization header.

    Client-supplied ids are never trusted; only what Supabase Auth confirms
    for the token is returned.
    """
    token = extract_bearer_token(authorization)
    if not token:
        return None

    try:
        response = get_supabase().auth.get_user(token)
    except (AuthError, httpx.HTTPError) as e:
        print(f"[auth] Failed to read authenticated user: {type(e).__name__}")
        return None

    user = getattr(response, "user", None) if response else None
    if not user:
        return None
    return AuthUser(id=user.id, email=getattr(user, "email", None))


def require_auth_user(authorization: Optional[str]) -> AuthUser:
    user = get_auth_user(authorization)
    if not user:
        raise Unauthorized()
    return user


# ─────────────────────────────────────────────────────────────────────────────
# PRIVILEGE POLICY
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AdminPolicy:
    """Operators allowed to see every feature. Built once per request."""
    emails: FrozenSet[str] = frozenset()

    @classmethod
    def from_setting(cls, raw: str) -> "AdminPolicy":
        emails = {email.strip().lower() for email in (raw or "").split(",")}
        return cls(emails=frozenset(e for e in emails if e))


def get_admin_policy() -> AdminPolicy:
    return AdminPolicy.from_setting(settings.super_admin_emails)


def is_privileged(identity: Optional[AuthUser], policy: AdminPolicy) -> bool:
    if identity is None or not identity.email:
        return False
    return identity.email.lower() in policy.emails
