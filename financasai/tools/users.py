"""Admin-only user deletion with an ordered cascade over user-owned tables."""

import logging

from financasai.db import get_client, has_role, is_master_user
from financasai.errors import FinancasError, PermissionDenied, ValidationError

logger = logging.getLogger(__name__)

# Children before parents; profiles last, then the auth user itself
CASCADE_TABLES = [
    "calendar_connections",
    "whatsapp_sessions",
    "whatsapp_auth_codes",
    "organization_members",
    "commitments",
    "recurring_transactions",
    "transactions",
    "categories",
    "user_subscriptions",
    "user_coupons",
    "user_roles",
    "profiles",
]


class UserDeletionError(FinancasError):
    """The auth user could not be removed after the cascade ran."""

    status_code = 500


def delete_user(caller: dict, target_user_id: str | None) -> dict:
    if not (has_role(caller["id"], "admin") or is_master_user(caller["id"])):
        logger.warning("Non-admin %s tried to delete a user", caller.get("email"))
        raise PermissionDenied("Forbidden: Only admins can delete users")
    if not target_user_id:
        raise ValidationError("Missing user_id parameter")
    if is_master_user(target_user_id):
        raise PermissionDenied("Cannot delete master user")

    logger.info("Admin %s deleting user %s", caller.get("email"), target_user_id)
    db = get_client()
    for table in CASCADE_TABLES:
        db.table(table).delete().eq("user_id", target_user_id).execute()
        logger.info("Removed %s rows for %s", table, target_user_id)

    try:
        db.auth.admin.delete_user(target_user_id)
    except Exception as e:
        logger.error("Failed to delete auth user %s: %s", target_user_id, e)
        raise UserDeletionError(f"Failed to delete auth user: {e}")

    logger.info("User %s deleted", target_user_id)
    return {"success": True, "message": "User deleted successfully", "deleted_user_id": target_user_id}
