"""Google Calendar per-user OAuth, token refresh and event import.

Each user connects their own calendar through the web consent flow. Tokens
live in calendar_connections (one row per user+provider). Every calendar
operation goes through get_valid_access_token(), which refreshes the access
token when it is about to expire and flags the connection for reconnection
when Google rejects the refresh token.
"""

import base64
import json
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from urllib.parse import quote

import httpx
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build

from financasai.config import (
    GOOGLE_CALENDAR_REDIRECT_URI,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    SITE_URL,
)
from financasai.db import first, get_client
from financasai.errors import NotFound, ReconnectRequired, ValidationError
from financasai.tools.reminders import build_default_reminders, parse_timestamp

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/calendar.readonly",
]
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"
PROVIDER = "google"

EXPIRY_SKEW = timedelta(minutes=5)
RENEW_WINDOW = timedelta(hours=24)
IMPORT_DAYS_AHEAD = 90
SWEEP_DELAY_SECONDS = 1.0

# Refresh errors that mean the grant is gone for good
FATAL_GRANT_ERRORS = ("invalid_client", "invalid_grant", "unauthorized_client")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _client_config() -> dict:
    return {
        "web": {
            "client_id": GOOGLE_CLIENT_ID,
            "client_secret": GOOGLE_CLIENT_SECRET,
            "auth_uri": "https://accounts.google.com/o/oauth2/v2/auth",
            "token_uri": TOKEN_URL,
            "redirect_uris": [GOOGLE_CALENDAR_REDIRECT_URI],
        }
    }


def _flow(state: str | None = None) -> Flow:
    if not (GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET and GOOGLE_CALENDAR_REDIRECT_URI):
        raise ValidationError("Google Calendar OAuth is not configured")
    flow = Flow.from_client_config(
        _client_config(), scopes=SCOPES, state=state, autogenerate_code_verifier=False
    )
    flow.redirect_uri = GOOGLE_CALENDAR_REDIRECT_URI
    return flow


def _service(access_token: str):
    return build("calendar", "v3", credentials=Credentials(token=access_token), cache_discovery=False)


# ---------------------------------------------------------------------------
# OAuth: consent URL + callback
# ---------------------------------------------------------------------------

def encode_state(user_id: str, app_origin: str) -> str:
    payload = {"n": str(uuid.uuid4()), "uid": user_id, "ts": int(time.time() * 1000), "o": app_origin}
    raw = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
    return raw.rstrip("=")


def decode_state(state: str | None) -> dict:
    """Decode the base64url JSON state. Returns {} when it can't be read."""
    if not state:
        return {}
    try:
        padded = state + "=" * (-len(state) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
    except (ValueError, UnicodeDecodeError):
        logger.warning("Failed to decode OAuth state")
        return {}
    return payload if isinstance(payload, dict) else {}


def build_auth_url(user_id: str, app_origin: str | None = None) -> str:
    """Google consent URL for connecting a user's calendar (offline access)."""
    if not user_id:
        raise ValidationError("User ID is required")
    state = encode_state(user_id, (app_origin or SITE_URL).rstrip("/"))
    url, _ = _flow(state).authorization_url(
        access_type="offline",
        prompt="consent select_account",
        include_granted_scopes="true",
    )
    logger.info("Generated Google auth URL for user %s", user_id)
    return url


def _exchange_code(code: str) -> dict:
    """Exchange an authorization code for tokens."""
    flow = _flow()
    flow.fetch_token(code=code)
    creds = flow.credentials
    expires_at = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else _now() + timedelta(hours=1)
    return {
        "access_token": creds.token,
        "refresh_token": creds.refresh_token,
        "expires_at": expires_at.isoformat(),
    }


def _fetch_primary_calendar(access_token: str) -> dict:
    return _service(access_token).calendars().get(calendarId="primary").execute()


def _done_url(origin: str, reason: str | None = None) -> str:
    if reason is None:
        return f"{origin}/gc-done.html?google=success"
    return f"{origin}/gc-done.html?google=error&reason={quote(reason)}"


def complete_oauth(code: str | None, state: str | None, error: str | None = None,
                   fallback_user_id: str | None = None) -> str:
    """Handle Google's redirect. Returns the URL to send the browser to."""
    payload = decode_state(state)
    origin = (payload.get("o") or SITE_URL).rstrip("/")
    user_id = payload.get("uid") or fallback_user_id

    if error:
        logger.error("OAuth error from Google: %s", error)
        return _done_url(origin, error)
    if not code:
        return _done_url(origin, "no_code")

    try:
        tokens = _exchange_code(code)
    except Exception as e:
        logger.error("Token exchange failed: %s", e)
        return _done_url(origin, "invalid_client" if "invalid_client" in str(e) else "token_exchange")

    if not user_id:
        logger.error("No user ID available in OAuth callback")
        return _done_url(origin, "no_user")

    try:
        calendar = _fetch_primary_calendar(tokens["access_token"])
    except Exception:
        logger.exception("Failed to fetch primary calendar for %s", user_id)
        return _done_url(origin, "unknown")

    row = {
        "user_id": user_id,
        "provider": PROVIDER,
        "access_token": tokens["access_token"],
        "refresh_token": tokens["refresh_token"],
        "expires_at": tokens["expires_at"],
        "calendar_id": calendar.get("id"),
        "calendar_email": calendar.get("id"),
        "calendar_name": calendar.get("summary"),
        "is_active": True,
    }
    try:
        get_client().table("calendar_connections").upsert(row, on_conflict="user_id,provider").execute()
    except Exception:
        logger.exception("Failed to save calendar connection for %s", user_id)
        return _done_url(origin, "db_error")

    logger.info("Google Calendar connected for user %s", user_id)
    return _done_url(origin)


# ---------------------------------------------------------------------------
# Token refresh
# ---------------------------------------------------------------------------

def get_connection(user_id: str) -> dict | None:
    resp = (
        get_client().table("calendar_connections")
        .select("*")
        .eq("user_id", user_id)
        .eq("provider", PROVIDER)
        .eq("is_active", True)
        .limit(1)
        .execute()
    )
    return first(resp)


def _google_error_code(resp: httpx.Response) -> str:
    try:
        body = resp.json()
        code = body.get("error")
        if isinstance(code, str) and code:
            return code
    except ValueError:
        pass
    text = resp.text or ""
    for code in FATAL_GRANT_ERRORS:
        if code in text:
            return code
    return "unknown"


def refresh_connection(connection: dict) -> str:
    """Refresh a connection's access token and persist it. Returns the new token."""
    if not connection.get("refresh_token"):
        raise ReconnectRequired(google_error="missing_refresh_token")

    resp = httpx.post(
        TOKEN_URL,
        data={
            "client_id": GOOGLE_CLIENT_ID,
            "client_secret": GOOGLE_CLIENT_SECRET,
            "refresh_token": connection["refresh_token"],
            "grant_type": "refresh_token",
        },
    )
    if resp.status_code != 200:
        code = _google_error_code(resp)
        logger.error("Token refresh failed for user %s: %s", connection.get("user_id"), code)
        if code in FATAL_GRANT_ERRORS:
            get_client().table("calendar_connections").update(
                {"is_active": False}
            ).eq("id", connection["id"]).execute()
        raise ReconnectRequired(google_error=code)

    tokens = resp.json()
    expires_at = (_now() + timedelta(seconds=int(tokens.get("expires_in", 3600)))).isoformat()
    updates = {"access_token": tokens["access_token"], "expires_at": expires_at}
    # Google only occasionally rotates the refresh token
    if tokens.get("refresh_token"):
        updates["refresh_token"] = tokens["refresh_token"]
    get_client().table("calendar_connections").update(updates).eq("id", connection["id"]).execute()
    connection.update(updates)
    logger.info("Refreshed Google token for user %s", connection.get("user_id"))
    return tokens["access_token"]


def get_valid_access_token(user_id: str) -> str:
    """Stored access token, refreshed first if it expires within EXPIRY_SKEW."""
    connection = get_connection(user_id)
    if not connection:
        raise NotFound("Google Calendar não conectado")
    expires_at = connection.get("expires_at")
    if expires_at and parse_timestamp(expires_at) > _now() + EXPIRY_SKEW:
        return connection["access_token"]
    return refresh_connection(connection)


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

def _list_events(access_token: str, time_min: datetime, time_max: datetime) -> list[dict]:
    service = _service(access_token)
    events: list[dict] = []
    page_token = None
    while True:
        result = service.events().list(
            calendarId="primary",
            timeMin=time_min.isoformat(),
            timeMax=time_max.isoformat(),
            singleEvents=True,
            orderBy="startTime",
            pageToken=page_token,
        ).execute()
        events.extend(result.get("items", []))
        page_token = result.get("nextPageToken")
        if not page_token:
            return events


def _event_time(value: dict) -> datetime:
    """Timed events carry dateTime; all-day events only a date."""
    if value.get("dateTime"):
        return parse_timestamp(value["dateTime"])
    return datetime.fromisoformat(value["date"]).replace(tzinfo=timezone.utc)


def user_reminders(user_id: str) -> list[dict]:
    """Enabled default reminders from reminder_settings, or the 24h/2h/1h defaults."""
    resp = (
        get_client().table("reminder_settings")
        .select("default_reminders")
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    settings = first(resp)
    configured = (settings or {}).get("default_reminders")
    if not isinstance(configured, list):
        return build_default_reminders()
    return [{"minutes_before": int(r["time"]), "sent": False} for r in configured if r.get("enabled")]


def event_to_commitment(event: dict, user_id: str, reminders: list[dict]) -> dict:
    start = _event_time(event["start"])
    end = _event_time(event.get("end") or event["start"])
    return {
        "user_id": user_id,
        "title": event.get("summary") or "Sem título",
        "description": event.get("description"),
        "scheduled_at": start.isoformat(),
        "duration_minutes": round((end - start).total_seconds() / 60),
        "location": event.get("location"),
        "google_event_id": event["id"],
        "category": "meeting" if event.get("conferenceData") else "other",
        "reminder_sent": False,
        "scheduled_reminders": reminders,
    }


def import_events(user_id: str, days_ahead: int = IMPORT_DAYS_AHEAD) -> dict:
    """Upsert the user's upcoming primary-calendar events into commitments."""
    access_token = get_valid_access_token(user_id)
    now = _now()
    events = _list_events(access_token, now, now + timedelta(days=days_ahead))
    reminders = user_reminders(user_id)
    logger.info("Found %d Google events for user %s", len(events), user_id)

    imported = updated = skipped = 0
    db = get_client()
    for event in events:
        try:
            row = event_to_commitment(event, user_id, reminders)
            existing = first(
                db.table("commitments")
                .select("id, scheduled_at")
                .eq("user_id", user_id)
                .eq("google_event_id", event["id"])
                .limit(1)
                .execute()
            )
            if existing:
                # Keep reminder progress unless the event moved
                if existing.get("scheduled_at") and parse_timestamp(existing["scheduled_at"]) == parse_timestamp(row["scheduled_at"]):
                    row.pop("reminder_sent")
                    row.pop("scheduled_reminders")
                db.table("commitments").update(row).eq("id", existing["id"]).execute()
                updated += 1
            else:
                db.table("commitments").insert(row).execute()
                imported += 1
        except Exception:
            logger.exception("Error importing Google event %s", event.get("id"))
            skipped += 1

    return {
        "total": len(events),
        "imported": imported,
        "updated": updated,
        "skipped": skipped,
        "timestamp": _now().isoformat(),
    }


# ---------------------------------------------------------------------------
# Disconnect
# ---------------------------------------------------------------------------

def disconnect(user_id: str) -> dict:
    """Revoke the grant (best effort), drop the connection and unlink commitments."""
    db = get_client()
    connection = first(
        db.table("calendar_connections")
        .select("*")
        .eq("user_id", user_id)
        .eq("provider", PROVIDER)
        .limit(1)
        .execute()
    )
    if connection and connection.get("access_token"):
        try:
            resp = httpx.post(REVOKE_URL, params={"token": connection["access_token"]})
            if resp.status_code != 200:
                logger.warning("Google revoke returned %s for user %s", resp.status_code, user_id)
        except httpx.HTTPError as e:
            logger.warning("Google revoke failed for user %s: %s", user_id, e)

    db.table("calendar_connections").delete().eq("user_id", user_id).eq("provider", PROVIDER).execute()
    db.table("commitments").update({"google_event_id": None}).eq("user_id", user_id).execute()
    logger.info("Google Calendar disconnected for user %s", user_id)
    return {"success": True}


# ---------------------------------------------------------------------------
# Scheduled sweeps
# ---------------------------------------------------------------------------

def _active_connections() -> list[dict]:
    resp = (
        get_client().table("calendar_connections")
        .select("*")
        .eq("provider", PROVIDER)
        .eq("is_active", True)
        .execute()
    )
    return resp.data or []


def refresh_expiring_tokens(now: datetime | None = None) -> dict:
    """Renew every active token that expires within RENEW_WINDOW."""
    now = now or _now()
    horizon = now + RENEW_WINDOW
    expiring = [
        c for c in _active_connections()
        if not c.get("expires_at") or parse_timestamp(c["expires_at"]) <= horizon
    ]

    renewed = failed = 0
    for i, connection in enumerate(expiring):
        if i:
            time.sleep(SWEEP_DELAY_SECONDS)
        try:
            refresh_connection(connection)
            renewed += 1
        except ReconnectRequired as e:
            failed += 1
            logger.warning("User %s must reconnect Google Calendar (%s)", connection.get("user_id"), e.google_error)
        except Exception:
            failed += 1
            logger.exception("Error renewing token for user %s", connection.get("user_id"))

    logger.info("Token sweep: %d renewed, %d failed of %d", renewed, failed, len(expiring))
    return {
        "totalChecked": len(expiring),
        "renewed": renewed,
        "failed": failed,
        "timestamp": now.isoformat(),
    }


def sync_all_calendars(now: datetime | None = None) -> dict:
    """Import events for every active connection whose token has not expired."""
    now = now or _now()
    connections = [
        c for c in _active_connections()
        if c.get("expires_at") and parse_timestamp(c["expires_at"]) > now
    ]

    synced = errors = 0
    for i, connection in enumerate(connections):
        if i:
            time.sleep(SWEEP_DELAY_SECONDS)
        try:
            import_events(connection["user_id"])
            synced += 1
        except Exception:
            errors += 1
            logger.exception("Error syncing calendar for user %s", connection.get("user_id"))

    return {
        "totalConnections": len(connections),
        "synced": synced,
        "errors": errors,
        "timestamp": now.isoformat(),
    }
