"""Supabase client singleton and small query helpers."""

import logging

from supabase import Client, create_client

from financasai.config import SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY

logger = logging.getLogger(__name__)

_client: Client | None = None


def get_client() -> Client:
    """Return the shared service-role Supabase client, creating it on first use."""
    global _client
    if _client is None:
        _client = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
    return _client


def first(response) -> dict | None:
    """First row of a query response, or None."""
    rows = response.data or []
    return rows[0] if rows else None


def phone_variants(phone: str) -> list[str]:
    """Phone numbers are stored with or without a leading '+'."""
    bare = phone.lstrip("+")
    return [bare, f"+{bare}"]


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def get_user_from_token(jwt: str) -> dict | None:
    """Resolve a Supabase access token to {id, email}. None if invalid."""
    try:
        resp = get_client().auth.get_user(jwt)
    except Exception as e:
        logger.warning("Token validation failed: %s", e)
        return None
    user = getattr(resp, "user", None)
    if not user:
        return None
    return {"id": user.id, "email": user.email}


def find_auth_user_by_email(email: str) -> dict | None:
    """Look up an auth user by e-mail through the admin API."""
    users = get_client().auth.admin.list_users()
    for user in users:
        if (user.email or "").lower() == email.lower():
            return {"id": user.id, "email": user.email}
    return None


def has_role(user_id: str, role: str) -> bool:
    resp = get_client().rpc("has_role", {"_user_id": user_id, "_role": role}).execute()
    return bool(resp.data)


def is_master_user(user_id: str) -> bool:
    resp = get_client().rpc("is_master_user", {"_user_id": user_id}).execute()
    return bool(resp.data)
