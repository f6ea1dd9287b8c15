"""
Supabase database client.
"""
from functools import lru_cache
from typing import Optional

import httpx
from postgrest.exceptions import APIError
from supabase import create_client, Client

from config import settings
from core.errors import UpstreamFailure

# Exceptions raised by the PostgREST query builder (bad query, constraint
# violation) or by the transport underneath it.
DATASTORE_ERRORS = (APIError, httpx.HTTPError)


@lru_cache()
def get_supabase() -> Client:
    """Get Supabase client with anon key (respects RLS)."""
    return create_client(settings.supabase_url, settings.supabase_key)


@lru_cache()
def get_supabase_admin() -> Client:
    """Get Supabase client with service key (bypasses RLS)."""
    return create_client(settings.supabase_url, settings.supabase_service_key)


def execute_or_fail(query, tag: str, message: str, **ids):
    """
    Run a query. Datastore errors are logged with the operation tag and the
    given identifiers (never row payloads) and re-raised as UpstreamFailure.
    """
    try:
        return query.execute()
    except DATASTORE_ERRORS as e:
        context = " ".join(f"{key}={value}" for key, value in ids.items())
        print(f"[{tag}] {message} {context} error={e}")
        raise UpstreamFailure(message) from e


def first_row(result) -> Optional[dict]:
    """Return the first row of a query result, or None when it matched nothing."""
    if result is None or not result.data:
        return None
    return result.data[0]
