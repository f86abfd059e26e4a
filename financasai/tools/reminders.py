"""Commitment reminder sweep, run by the scheduler every few minutes.

Each commitment carries scheduled_reminders = [{minutes_before, sent}]. A
reminder is due once its window opens (scheduled_at - minutes_before <= now)
and the event has not started. Commitments without that list fall back to
the single 24h reminder gated by reminder_sent.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from financasai.config import APP_TIMEZONE, WHATSAPP_REMINDER_TEMPLATE
from financasai.db import first, get_client
from financasai.whatsapp import send_message_with_template_fallback

logger = logging.getLogger(__name__)

DEFAULT_REMINDERS = [1440, 120, 60]  # minutes before the event
LEGACY_WINDOW = (timedelta(hours=23), timedelta(hours=24))
LOOKAHEAD = timedelta(days=7, hours=1)

CATEGORY_ICONS = {
    "payment": "💳",
    "meeting": "👥",
    "appointment": "🏥",
    "other": "📌",
}

_WEEKDAYS = ["segunda-feira", "terça-feira", "quarta-feira", "quinta-feira",
             "sexta-feira", "sábado", "domingo"]
_MONTHS = ["janeiro", "fevereiro", "março", "abril", "maio", "junho", "julho",
           "agosto", "setembro", "outubro", "novembro", "dezembro"]


# PostgREST trims trailing zeros; fromisoformat before 3.11 wants 3 or 6 digits
_FRACTION_RE = re.compile(r"\.(\d+)(?=[+-]\d{2}:?\d{2}$|$)")


def parse_timestamp(value: str) -> datetime:
    value = value.replace("Z", "+00:00")
    value = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def format_local_datetime(ts: datetime) -> str:
    """e.g. 'sexta-feira, 17 de outubro de 2026 às 14:30' in APP_TIMEZONE."""
    local = ts.astimezone(ZoneInfo(APP_TIMEZONE))
    return (
        f"{_WEEKDAYS[local.weekday()]}, {local.day} de {_MONTHS[local.month - 1]} "
        f"de {local.year} às {local:%H:%M}"
    )


def format_time_until(minutes: int) -> str:
    if minutes >= 1440 and minutes % 1440 == 0:
        days = minutes // 1440
        return "24 horas" if days == 1 else f"{days} dias"
    if minutes >= 60:
        hours = round(minutes / 60)
        return "1 hora" if hours == 1 else f"{hours} horas"
    return "1 minuto" if minutes == 1 else f"{minutes} minutos"


def build_default_reminders(minutes: list[int] | None = None) -> list[dict]:
    return [{"minutes_before": int(m), "sent": False} for m in (minutes or DEFAULT_REMINDERS)]


# ---------------------------------------------------------------------------
# Window computation
# ---------------------------------------------------------------------------

def due_reminders(commitment: dict, now: datetime) -> list[int]:
    """minutes_before values whose reminder window is open and not yet sent."""
    scheduled_at = parse_timestamp(commitment["scheduled_at"])
    if scheduled_at <= now:
        return []

    reminders = commitment.get("scheduled_reminders") or []
    if not reminders:
        if commitment.get("reminder_sent"):
            return []
        low, high = LEGACY_WINDOW
        if scheduled_at - high <= now <= scheduled_at - low:
            return [1440]
        return []

    due = []
    for reminder in reminders:
        if reminder.get("sent"):
            continue
        minutes = int(reminder.get("minutes_before", 0))
        if scheduled_at - timedelta(minutes=minutes) <= now:
            due.append(minutes)
    return due


def format_reminder(commitment: dict, minutes_before: int) -> str:
    icon = CATEGORY_ICONS.get(commitment.get("category") or "other", "📌")
    when = format_local_datetime(parse_timestamp(commitment["scheduled_at"]))
    description = commitment.get("description")
    return (
        "🔔 *Lembrete de Compromisso*\n\n"
        f"{icon} *{commitment['title']}*\n"
        f"🗓️ {when}\n"
        + (f"📝 {description}\n" if description else "")
        + "\n"
        f"⏰ Faltam aproximadamente {format_time_until(minutes_before)}!\n\n"
        'Para remarcar: "remarcar compromisso"'
    )


def _mark_sent(commitment: dict, sent_minutes: list[int]) -> None:
    reminders = commitment.get("scheduled_reminders") or []
    if reminders:
        updated = [
            {**r, "sent": True} if int(r.get("minutes_before", 0)) in sent_minutes else r
            for r in reminders
        ]
        updates = {"scheduled_reminders": updated}
        if 1440 in sent_minutes:
            updates["reminder_sent"] = True
    else:
        updates = {"reminder_sent": True}
    get_client().table("commitments").update(updates).eq("id", commitment["id"]).execute()


def _owner_phone(user_id: str) -> str | None:
    resp = (
        get_client().table("profiles")
        .select("phone_number, full_name")
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    profile = first(resp)
    return (profile or {}).get("phone_number") or None


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------

async def send_commitment_reminders(now: datetime | None = None) -> dict:
    """Send every reminder whose window is open. One failure never stops the sweep."""
    now = now or datetime.now(timezone.utc)
    resp = (
        get_client().table("commitments")
        .select("*")
        .gte("scheduled_at", now.isoformat())
        .lte("scheduled_at", (now + LOOKAHEAD).isoformat())
        .execute()
    )
    commitments = resp.data or []

    sent = 0
    errors = 0
    found = 0
    for commitment in commitments:
        try:
            due = due_reminders(commitment, now)
            if not due:
                continue
            found += 1
            phone = _owner_phone(commitment["user_id"])
            if not phone:
                logger.warning("No phone for commitment %s", commitment["id"])
                continue

            # Several windows can open at once (e.g. created late); send the closest one.
            minutes = min(due)
            message = format_reminder(commitment, minutes)
            when = format_local_datetime(parse_timestamp(commitment["scheduled_at"]))
            delivered = await send_message_with_template_fallback(
                phone, message, WHATSAPP_REMINDER_TEMPLATE, [commitment["title"], when]
            )
            if not delivered:
                errors += 1
                continue
            _mark_sent(commitment, due)
            sent += 1
            logger.info("Reminder (%d min) sent for commitment %s to %s", minutes, commitment["id"], phone)
        except Exception:
            errors += 1
            logger.exception("Error processing commitment %s", commitment.get("id"))

    logger.info("Reminders sent: %d/%d", sent, found)
    return {"success": True, "reminders_sent": sent, "total_found": found, "errors": errors}
