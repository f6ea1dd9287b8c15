"""
Portal gate: a client's portal can be switched off for every external reader.
"""
from core.database import DATASTORE_ERRORS, first_row
from core.errors import PortalDisabled, UpstreamFailure


def portal_enabled(flag) -> bool:
    """Only an explicit False disables; missing or any other value is enabled."""
    return flag is not False


def ensure_portal_enabled(db, client_id: str) -> None:
    """
    Re-read clients.client_portal_enabled and raise PortalDisabled when it is
    False. Runs after the membership check, so "not a member" and "portal
    disabled" stay distinguishable.
    """
    try:
        result = db.table("clients").select("client_portal_enabled").eq(
            "id", client_id
        ).limit(1).execute()
    except DATASTORE_ERRORS as e:
        print(f"[client-auth] Failed to load client portal info client={client_id} error={e}")
        raise UpstreamFailure("Unable to load client portal.") from e

    client = first_row(result)
    if client and not portal_enabled(client.get("client_portal_enabled")):
        raise PortalDisabled()
