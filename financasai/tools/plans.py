"""Subscription plan lookups and user role changes shared by billing and trials."""

import logging

from financasai.db import first, get_client, is_master_user

logger = logging.getLogger(__name__)

PRIVILEGED_ROLES = ("admin",)


def get_plan(name: str, active_only: bool = False) -> dict | None:
    query = get_client().table("subscription_plans").select("*").eq("name", name)
    if active_only:
        query = query.eq("is_active", True)
    return first(query.limit(1).execute())


def plan_id(name: str) -> str | None:
    plan = get_plan(name)
    return plan["id"] if plan else None


def plan_for_price(price_id: str | None) -> dict | None:
    """Plan whose monthly or yearly Stripe price matches price_id."""
    if not price_id:
        return None
    db = get_client()
    for column in ("stripe_price_id_monthly", "stripe_price_id_yearly"):
        plan = first(db.table("subscription_plans").select("*").eq(column, price_id).limit(1).execute())
        if plan:
            return plan
    return None


def get_role(user_id: str) -> str | None:
    row = first(get_client().table("user_roles").select("role").eq("user_id", user_id).limit(1).execute())
    return row["role"] if row else None


def is_protected(user_id: str) -> bool:
    """Masters and admins keep their role whatever happens to their subscription."""
    return is_master_user(user_id) or get_role(user_id) in PRIVILEGED_ROLES


def set_role(user_id: str, role: str, expires_at: str | None = None) -> None:
    """Replace the user's role (one role row per user)."""
    db = get_client()
    db.table("user_roles").delete().eq("user_id", user_id).execute()
    db.table("user_roles").insert({"user_id": user_id, "role": role, "expires_at": expires_at}).execute()
    logger.info("User %s role set to %s", user_id, role)
