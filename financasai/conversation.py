"""Per-phone WhatsApp conversation state, persisted in whatsapp_sessions.

A session row carries session_data = {conversation_state, pending_transaction}.
The only multi-step flow is confirming a high-value transaction, so state is
either "idle" or "waiting_confirmation". A pending confirmation expires after
PENDING_TIMEOUT seconds of inactivity.
"""

import logging
from datetime import datetime, timedelta, timezone

from financasai.db import first, get_client, phone_variants
from financasai.tools.reminders import parse_timestamp

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STATE_IDLE = "idle"
STATE_WAITING_CONFIRMATION = "waiting_confirmation"
PENDING_TIMEOUT = 1800  # 30 minutes

TABLE = "whatsapp_sessions"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Read / write
# ---------------------------------------------------------------------------

def get_session(phone: str) -> dict | None:
    """Find the session for a phone, stored with or without '+'."""
    resp = (
        get_client().table(TABLE)
        .select("*")
        .in_("phone_number", phone_variants(phone))
        .limit(1)
        .execute()
    )
    return first(resp)


def get_or_create_session(phone: str, user_id: str | None) -> dict:
    session = get_session(phone)
    if session:
        if user_id and session.get("user_id") != user_id:
            get_client().table(TABLE).update({"user_id": user_id}).eq("id", session["id"]).execute()
            session["user_id"] = user_id
        return session

    row = {
        "phone_number": phone,
        "user_id": user_id,
        "session_data": {"conversation_state": STATE_IDLE, "pending_transaction": None},
        "last_activity": _now_iso(),
    }
    resp = get_client().table(TABLE).insert(row).execute()
    logger.info("Created WhatsApp session for %s", phone)
    return (resp.data or [row])[0]


def get_state(session: dict, now: datetime | None = None) -> tuple[str, dict | None]:
    """Current (state, pending_transaction). Stale confirmations read as idle."""
    data = session.get("session_data") or {}
    state = data.get("conversation_state") or STATE_IDLE
    pending = data.get("pending_transaction")
    if state == STATE_WAITING_CONFIRMATION:
        last = _parse_ts(session.get("last_activity"))
        now = now or datetime.now(timezone.utc)
        if last and now - last > timedelta(seconds=PENDING_TIMEOUT):
            logger.info("Pending confirmation expired for %s", session.get("phone_number"))
            return STATE_IDLE, None
    return state, pending


def save_state(session: dict, state: str, pending: dict | None = None) -> None:
    """Merge the new state into session_data and touch last_activity."""
    data = dict(session.get("session_data") or {})
    data["conversation_state"] = state
    data["pending_transaction"] = pending
    updates = {"session_data": data, "last_activity": _now_iso()}
    if session.get("id") is not None:
        get_client().table(TABLE).update(updates).eq("id", session["id"]).execute()
    session.update(updates)


def clear_state(session: dict) -> None:
    save_state(session, STATE_IDLE, None)
