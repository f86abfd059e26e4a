"""Free trials: the 14-day app trial, 30-day coupon trials, and trial expiry."""

import logging
from datetime import datetime, timedelta, timezone

from financasai.db import first, get_client
from financasai.errors import NotFound, ValidationError
from financasai.tools.plans import get_plan, set_role
from financasai.tools.reminders import parse_timestamp

logger = logging.getLogger(__name__)

TRIAL_DAYS = 14
COUPON_TRIAL_DAYS = 30


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_not_subscribed(db, user_id: str) -> None:
    """Trials never replace a paid subscription."""
    current = first(
        db.table("user_subscriptions").select("id, status, billing_cycle")
        .eq("user_id", user_id).eq("status", "active").limit(1).execute()
    )
    if current and current.get("billing_cycle") != "trial":
        logger.info("User %s has an active paid subscription, trial refused", user_id)
        raise ValidationError("Você já possui uma assinatura ativa")


def activate_trial(user: dict, now: datetime | None = None) -> dict:
    """Start the one-per-user 14-day trial."""
    now = now or _now()
    plan = get_plan("trial")
    if not plan:
        raise NotFound("Plano trial não encontrado")

    db = get_client()
    used = db.table("user_subscriptions").select("id, status").eq("user_id", user["id"]).eq(
        "plan_id", plan["id"]
    ).execute()
    if used.data:
        logger.info("User %s already used the trial", user["id"])
        raise ValidationError("Trial já utilizado")
    _ensure_not_subscribed(db, user["id"])

    trial_end = (now + timedelta(days=TRIAL_DAYS)).isoformat()
    db.table("user_subscriptions").upsert({
        "user_id": user["id"],
        "plan_id": plan["id"],
        "status": "active",
        "current_period_start": now.isoformat(),
        "current_period_end": trial_end,
        "billing_cycle": "trial",
    }, on_conflict="user_id").execute()
    set_role(user["id"], "trial", expires_at=trial_end)

    logger.info("Trial activated for user %s until %s", user["id"], trial_end)
    return {"success": True, "message": "Trial ativado com sucesso!", "trial_end": trial_end}


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------

def validate_coupon(code: str, now: datetime | None = None) -> dict:
    """Return the active coupon for code or raise ValidationError."""
    if not code or not code.strip():
        raise ValidationError("couponCode is required")
    now = now or _now()
    coupon = first(
        get_client().table("discount_coupons").select("*")
        .eq("code", code.strip().upper()).eq("is_active", True).limit(1).execute()
    )
    if not coupon:
        raise ValidationError("Cupom inválido ou inativo")
    if coupon.get("expires_at") and parse_timestamp(coupon["expires_at"]) < now:
        raise ValidationError("Cupom expirado")
    if coupon.get("max_uses") and (coupon.get("current_uses") or 0) >= coupon["max_uses"]:
        raise ValidationError("Cupom atingiu limite de uso")
    return coupon


def activate_trial_coupon(user: dict, code: str, now: datetime | None = None) -> dict:
    """Redeem a coupon for 30 days of premium."""
    now = now or _now()
    coupon = validate_coupon(code, now)
    plan = get_plan("premium", active_only=True)
    if not plan:
        raise ValidationError("Plano premium não encontrado")

    db = get_client()
    _ensure_not_subscribed(db, user["id"])
    redeemed = first(
        db.table("user_coupons").select("id")
        .eq("user_id", user["id"]).eq("coupon_id", coupon["id"]).limit(1).execute()
    )
    if redeemed:
        raise ValidationError("Cupom já utilizado")

    expires_at = (now + timedelta(days=COUPON_TRIAL_DAYS)).isoformat()
    db.table("user_subscriptions").upsert({
        "user_id": user["id"],
        "plan_id": plan["id"],
        "status": "active",
        "billing_cycle": "trial",
        "current_period_start": now.isoformat(),
        "current_period_end": expires_at,
        "payment_gateway": "coupon",
    }, on_conflict="user_id").execute()
    set_role(user["id"], "trial", expires_at=expires_at)

    try:
        db.table("user_coupons").insert({"user_id": user["id"], "coupon_id": coupon["id"]}).execute()
        db.table("discount_coupons").update(
            {"current_uses": (coupon.get("current_uses") or 0) + 1}
        ).eq("id", coupon["id"]).execute()
    except Exception as e:
        logger.error("Failed to record coupon %s usage: %s", coupon["code"], e)

    logger.info("Coupon %s redeemed by %s until %s", coupon["code"], user["id"], expires_at)
    return {"success": True, "message": "Trial de 30 dias ativado com sucesso!", "expires_at": expires_at}


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------

def expire_trials(now: datetime | None = None) -> dict:
    """Expire active trial-plan subscriptions past their period end."""
    now = now or _now()
    plan = get_plan("trial")
    if not plan:
        raise NotFound("Plano trial não encontrado")

    db = get_client()
    # Trial-plan subscriptions, plus coupon trials that run on the premium plan
    expired_by_id: dict = {}
    for column, value in (("plan_id", plan["id"]), ("billing_cycle", "trial")):
        resp = (
            db.table("user_subscriptions").select("id, user_id, current_period_end")
            .eq(column, value).eq("status", "active")
            .lt("current_period_end", now.isoformat())
            .execute()
        )
        for row in resp.data or []:
            expired_by_id[row["id"]] = row
    expired = list(expired_by_id.values())
    if not expired:
        return {"success": True, "message": "Nenhum trial expirado", "count": 0, "processed_users": []}

    ids = [row["id"] for row in expired]
    user_ids = [row["user_id"] for row in expired]
    db.table("user_subscriptions").update({"status": "expired"}).in_("id", ids).execute()
    for user_id in user_ids:
        try:
            set_role(user_id, "free")
        except Exception:
            logger.exception("Failed to reset role for user %s", user_id)

    logger.info("Expired %d trial(s)", len(expired))
    return {
        "success": True,
        "message": f"{len(expired)} trial(s) expirado(s)",
        "count": len(expired),
        "processed_users": user_ids,
    }
