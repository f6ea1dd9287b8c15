"""
Client access resolution for the client portal.

Who may read a client's invoices and usage:

1. a member with an explicit `client_users` row (its role governs)
2. otherwise the client's creator (implicit admin)
3. anyone holding an unexpired share link for one of the client's invoices
   (viewer access to that client only)

A ClientAccessResolver is created per request. Role lookups are cached on the
instance, so the same (user, client) pair is resolved once per request and
never shared between requests.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from operator import attrgetter
from typing import Dict, List, Optional, Tuple, Union

from cachetools import LRUCache, cachedmethod

from core.database import DATASTORE_ERRORS, first_row
from core.dates import parse_timestamp
from core.errors import Forbidden, ShareLinkInvalid, Unauthorized, UpstreamFailure
from core.models.portal import ClientPortalMembership, MembershipSummary
from core.models.user import AuthUser
from core.portal.gate import ensure_portal_enabled

LOG_TAG = "[client-auth]"

ROLE_ADMIN = "admin"
ROLE_VIEWER = "viewer"


# ─────────────────────────────────────────────────────────────────────────────
# RESOLVED ROLE
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExplicitRole:
    role: str


@dataclass(frozen=True)
class ImplicitOwner:
    role: str = ROLE_ADMIN


@dataclass(frozen=True)
class NoAccess:
    role: None = None


ResolvedRole = Union[ExplicitRole, ImplicitOwner, NoAccess]


def normalize_role(raw) -> str:
    return ROLE_ADMIN if raw == ROLE_ADMIN else ROLE_VIEWER


@dataclass(frozen=True)
class PortalAccess:
    """Outcome of a successful authorization."""
    client_id: str
    role: str
    user: Optional[AuthUser] = None
    via_share: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def share_is_expired(expires_at, now: Optional[datetime] = None) -> bool:
    """No expiry means the link never expires. An expiry that cannot be read counts as expired."""
    if not expires_at:
        return False
    expiry = parse_timestamp(expires_at)
    if expiry is None:
        print(f"{LOG_TAG} Unreadable share expiry value={expires_at!r}")
        return True
    return expiry < (now or datetime.now(timezone.utc))


# ─────────────────────────────────────────────────────────────────────────────
# RESOLVER
# ─────────────────────────────────────────────────────────────────────────────

class ClientAccessResolver:
    """Resolves which client a request acts on and with which role."""

    def __init__(self, db, now: Optional[datetime] = None):
        self.db = db
        self.now = now
        self._roles = LRUCache(maxsize=64)

    # -- lookups --------------------------------------------------------------

    def client_id_from_share(self, share_id: str) -> Optional[str]:
        """Client behind a share link, or None when the link is unknown or expired."""
        try:
            result = self.db.table("invoices").select(
                "client_id, public_share_expires_at"
            ).eq("public_share_id", share_id).limit(1).execute()
        except DATASTORE_ERRORS as e:
            print(f"{LOG_TAG} Failed to resolve share link share={share_id} error={e}")
            raise UpstreamFailure("Unable to resolve share link.") from e

        invoice = first_row(result)
        if not invoice:
            return None
        if share_is_expired(invoice.get("public_share_expires_at"), self.now):
            return None
        return invoice.get("client_id")

    def fetch_client(self, client_id: str) -> Optional[dict]:
        try:
            result = self.db.table("clients").select(
                "id, created_by, client_portal_enabled"
            ).eq("id", client_id).limit(1).execute()
        except DATASTORE_ERRORS as e:
            print(f"{LOG_TAG} Failed to load client portal info client={client_id} error={e}")
            raise UpstreamFailure("Unable to load client portal.") from e
        return first_row(result)

    @cachedmethod(attrgetter("_roles"))
    def resolve_role(self, user_id: str, client_id: str) -> ResolvedRole:
        """Explicit membership row first, then ownership."""
        try:
            result = self.db.table("client_users").select("role").eq(
                "client_id", client_id
            ).eq("user_id", user_id).limit(1).execute()
        except DATASTORE_ERRORS as e:
            print(f"{LOG_TAG} Failed to fetch client membership client={client_id} user={user_id} error={e}")
            raise UpstreamFailure("Unable to load client membership.") from e

        membership = first_row(result)
        if membership:
            return ExplicitRole(normalize_role(membership.get("role")))

        client = self.fetch_client(client_id)
        if client and client.get("created_by") == user_id:
            return ImplicitOwner()
        return NoAccess()

    def resolve_client_id(
        self,
        client_id: Optional[str] = None,
        share_id: Optional[str] = None,
    ) -> Tuple[str, bool]:
        """
        Decide which client the request is about.
        Returns (client_id, resolved_via_share).
        """
        if client_id:
            return client_id, False
        if share_id:
            shared_client = self.client_id_from_share(share_id)
            if not shared_client:
                raise ShareLinkInvalid()
            return shared_client, True
        raise Forbidden("Unable to determine client access.")

    # -- strategies -----------------------------------------------------------

    def authorize_member(self, user: Optional[AuthUser], client_id: str) -> PortalAccess:
        if user is None:
            raise Unauthorized()
        resolved = self.resolve_role(user.id, client_id)
        if isinstance(resolved, NoAccess):
            raise Forbidden()
        return PortalAccess(client_id=client_id, role=resolved.role, user=user)

    def authorize_share(
        self,
        user: Optional[AuthUser],
        share_id: str,
        expected_client_id: Optional[str] = None,
    ) -> PortalAccess:
        """
        Share-link access. Grants viewer on the link's client; a signed-in
        member keeps their own role. Never raises Unauthorized.
        """
        client_id, _ = self.resolve_client_id(share_id=share_id)
        if expected_client_id and expected_client_id != client_id:
            raise Forbidden()

        role = ROLE_VIEWER
        if user is not None:
            resolved = self.resolve_role(user.id, client_id)
            if not isinstance(resolved, NoAccess):
                role = resolved.role
        return PortalAccess(client_id=client_id, role=role, user=user, via_share=True)

    def authorize(
        self,
        user: Optional[AuthUser],
        client_id: Optional[str] = None,
        share_id: Optional[str] = None,
        require_portal_enabled: bool = True,
    ) -> PortalAccess:
        """
        Full portal check: resolve the client, check membership (or the share
        link), then the portal-enabled gate.
        """
        if user is None and not share_id:
            raise Unauthorized()
        resolved_client, via_share = self.resolve_client_id(client_id, share_id)
        if via_share:
            access = self.authorize_share(user, share_id)
        else:
            access = self.authorize_member(user, resolved_client)

        if require_portal_enabled:
            ensure_portal_enabled(self.db, access.client_id)
        return access

    # -- listing --------------------------------------------------------------

    def list_memberships(self, user_id: str) -> List[ClientPortalMembership]:
        """Explicit memberships plus owned clients; ownership's admin wins."""
        try:
            explicit = self.db.table("client_users").select("client_id, role").eq(
                "user_id", user_id
            ).order("client_id").execute()
        except DATASTORE_ERRORS as e:
            print(f"{LOG_TAG} Failed to list client memberships user={user_id} error={e}")
            raise UpstreamFailure("Unable to load client memberships.") from e

        roles: Dict[str, str] = {}
        for row in explicit.data or []:
            roles[row["client_id"]] = normalize_role(row.get("role"))

        try:
            owned = self.db.table("clients").select("id").eq("created_by", user_id).execute()
        except DATASTORE_ERRORS as e:
            print(f"{LOG_TAG} Failed to load owned clients user={user_id} error={e}")
            raise UpstreamFailure("Unable to load client memberships.") from e

        for row in owned.data or []:
            roles[row["id"]] = ROLE_ADMIN

        return [ClientPortalMembership(client_id=cid, role=role) for cid, role in roles.items()]

    def membership_summaries(self, user_id: str) -> List[MembershipSummary]:
        memberships = self.list_memberships(user_id)
        if not memberships:
            return []

        try:
            result = self.db.table("clients").select(
                "id, name, company_name, client_portal_enabled"
            ).in_("id", [m.client_id for m in memberships]).execute()
        except DATASTORE_ERRORS as e:
            print(f"{LOG_TAG} Failed to load membership clients user={user_id} error={e}")
            raise UpstreamFailure("Unable to load client memberships.") from e

        clients = {row["id"]: row for row in result.data or []}
        summaries = []
        for membership in memberships:
            client = clients.get(membership.client_id)
            if not client:
                continue
            summaries.append(MembershipSummary(
                id=client["id"],
                name=client.get("name") or "Client",
                company_name=client.get("company_name"),
                role=membership.role,
                portal_enabled=client.get("client_portal_enabled") is not False,
            ))
        return summaries
