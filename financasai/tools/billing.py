"""Stripe billing: checkout sessions, subscription status sync, webhook events."""

import calendar
import logging
from datetime import datetime, timezone

from financasai.config import SITE_URL, STRIPE_WEBHOOK_SECRET
from financasai import stripe_api
from financasai.db import find_auth_user_by_email, first, get_client
from financasai.errors import ValidationError
from financasai.tools.plans import get_plan, is_protected, plan_for_price, plan_id, set_role

logger = logging.getLogger(__name__)

ACTIVE_STRIPE_STATUSES = ("active", "trialing")


def _ts_to_iso(value) -> str | None:
    """Stripe unix timestamp to ISO, None when missing or invalid."""
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
    return None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _local_status(stripe_status: str | None) -> str | None:
    return "active" if stripe_status in ACTIVE_STRIPE_STATUSES else stripe_status


def _add_interval(start: datetime, interval: str | None) -> datetime:
    if interval == "year":
        try:
            return start.replace(year=start.year + 1)
        except ValueError:  # 29 Feb
            return start.replace(year=start.year + 1, day=28)
    year = start.year + (start.month // 12)
    month = start.month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

def create_checkout(price_id: str | None = None, cycle: str | None = None, email: str | None = None,
                    user: dict | None = None, origin: str | None = None,
                    coupon_code: str | None = None) -> str:
    """Create a subscription checkout session and return its URL."""
    if user and user.get("email"):
        email = user["email"]

    if not price_id and cycle:
        plan = get_plan("premium")
        if plan:
            price_id = plan.get("stripe_price_id_yearly") if cycle == "yearly" else plan.get("stripe_price_id_monthly")
    if not price_id:
        raise ValidationError("priceId is required")

    customer_id = None
    if email:
        customers = stripe_api.list_customers(email)
        if customers:
            customer_id = customers[0]["id"]
            logger.info("Found existing Stripe customer %s", customer_id)

    origin = (origin or SITE_URL).rstrip("/")
    params = {
        "line_items": [{"price": price_id, "quantity": 1}],
        "mode": "subscription",
        "success_url": f"{origin}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{origin}/payment-cancelled",
        "allow_promotion_codes": True,
        "billing_address_collection": "required",
    }
    if customer_id:
        params["customer"] = customer_id
    else:
        params["customer_email"] = email
        params["customer_creation"] = "always"
    if user:
        params["client_reference_id"] = user["id"]
    if coupon_code:
        # Promotion codes are validated by Stripe on the checkout page
        logger.info("Coupon code %s provided for checkout", coupon_code)

    session = stripe_api.create_checkout_session(params)
    return session["url"]


# ---------------------------------------------------------------------------
# Subscription status
# ---------------------------------------------------------------------------

def _upsert_subscription(row: dict) -> None:
    get_client().table("user_subscriptions").upsert(row, on_conflict="user_id").execute()


def check_subscription(user: dict) -> dict:
    """Sync the user's Stripe state into user_subscriptions and report it."""
    customers = stripe_api.list_customers(user["email"])
    if not customers:
        logger.info("No Stripe customer for %s", user["email"])
        _upsert_subscription({
            "user_id": user["id"],
            "plan_id": plan_id("free"),
            "status": "inactive",
            "stripe_customer_id": None,
            "stripe_subscription_id": None,
        })
        return {"subscribed": False}

    customer_id = customers[0]["id"]
    subscriptions = stripe_api.list_subscriptions(customer_id, status="active")
    if not subscriptions:
        _upsert_subscription({
            "user_id": user["id"],
            "plan_id": plan_id("free"),
            "status": "inactive",
            "stripe_customer_id": customer_id,
        })
        return {
            "subscribed": False,
            "product_id": None,
            "subscription_end": None,
            "stripe_subscription_id": None,
            "stripe_customer_id": customer_id,
        }

    subscription = subscriptions[0]
    period_end = _ts_to_iso(subscription.get("current_period_end"))
    period_start = _ts_to_iso(subscription.get("current_period_start"))
    items = (subscription.get("items") or {}).get("data") or [{}]
    product_id = (items[0].get("price") or {}).get("product")

    _upsert_subscription({
        "user_id": user["id"],
        "plan_id": plan_id("premium"),
        "status": "active",
        "stripe_customer_id": customer_id,
        "stripe_subscription_id": subscription["id"],
        "current_period_start": period_start,
        "current_period_end": period_end,
    })
    if not is_protected(user["id"]):
        set_role(user["id"], "premium")

    logger.info("Active Stripe subscription %s for %s", subscription["id"], user["email"])
    return {
        "subscribed": True,
        "product_id": product_id,
        "subscription_end": period_end,
        "stripe_subscription_id": subscription["id"],
        "stripe_customer_id": customer_id,
    }


# ---------------------------------------------------------------------------
# Webhook events
# ---------------------------------------------------------------------------

def _find_or_invite_user(email: str, customer_id: str, source: str) -> tuple[str, bool]:
    user = find_auth_user_by_email(email)
    if user:
        return user["id"], False
    resp = get_client().auth.admin.invite_user_by_email(
        email,
        {
            "redirect_to": f"{SITE_URL}/set-password",
            "data": {"created_via": source, "stripe_customer_id": customer_id},
        },
    )
    logger.info("Invited new user %s after Stripe %s", email, source)
    return resp.user.id, True


def _subscription_period(subscription: dict) -> tuple[str, str | None]:
    items = (subscription.get("items") or {}).get("data") or [{}]
    interval = ((items[0].get("price") or {}).get("recurring") or {}).get("interval")
    start_ts = (subscription.get("current_period_start") or subscription.get("billing_cycle_anchor")
                or subscription.get("created"))
    end_ts = subscription.get("current_period_end")
    if not end_ts and start_ts:
        invoice = subscription.get("latest_invoice")
        if isinstance(invoice, dict) and invoice.get("period_end"):
            end_ts = invoice["period_end"]
        else:
            start = datetime.fromtimestamp(start_ts, tz=timezone.utc)
            end_ts = int(_add_interval(start, interval).timestamp())
    return _ts_to_iso(start_ts) or _now_iso(), _ts_to_iso(end_ts)


def setup_user_subscription(email: str, customer_id: str, subscription_id: str, source: str) -> dict:
    """Link a Stripe subscription to a (possibly new) user. Idempotent per subscription."""
    db = get_client()
    existing = first(
        db.table("user_subscriptions").select("id, user_id")
        .eq("stripe_subscription_id", subscription_id).limit(1).execute()
    )
    if existing:
        logger.info("Subscription %s already processed", subscription_id)
        return {"success": True, "skipped": True, "userId": existing["user_id"], "isNewUser": False}

    user_id, is_new = _find_or_invite_user(email, customer_id, source)

    if not is_new:
        current = first(
            db.table("user_subscriptions").select("id, status, stripe_customer_id")
            .eq("user_id", user_id).limit(1).execute()
        )
        if current and current.get("status") == "active":
            if current.get("stripe_customer_id") != customer_id:
                db.table("user_subscriptions").update(
                    {"stripe_customer_id": customer_id}
                ).eq("id", current["id"]).execute()
            logger.info("User %s already active, only customer id updated", user_id)
            return {"success": True, "skipped": False, "userId": user_id,
                    "isNewUser": False, "alreadyActive": True}

    subscription = stripe_api.retrieve_subscription(subscription_id, expand=["latest_invoice"])
    items = (subscription.get("items") or {}).get("data") or [{}]
    price = items[0].get("price") or {}
    price_id = price.get("id")
    billing_cycle = "yearly" if (price.get("recurring") or {}).get("interval") == "year" else "monthly"
    period_start, period_end = _subscription_period(subscription)
    plan = plan_for_price(price_id)

    _upsert_subscription({
        "user_id": user_id,
        "plan_id": plan["id"] if plan else None,
        "stripe_subscription_id": subscription_id,
        "stripe_customer_id": customer_id,
        "stripe_price_id": price_id,
        "status": _local_status(subscription.get("status")),
        "billing_cycle": billing_cycle,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "payment_gateway": "stripe",
        "cancelled_at": None,
    })

    if is_protected(user_id):
        logger.info("User %s is master/admin, role preserved", user_id)
    else:
        set_role(user_id, "premium")

    return {"success": True, "skipped": False, "userId": user_id,
            "isNewUser": is_new, "alreadyActive": False}


def _on_checkout_completed(session: dict) -> dict:
    email = session.get("customer_email") or (session.get("customer_details") or {}).get("email")
    if not email:
        raise ValidationError("No customer email in checkout session")
    if not session.get("subscription"):
        return {"success": True, "message": "No subscription to process"}
    return setup_user_subscription(email, session.get("customer"), session["subscription"], "stripe_checkout")


def _on_subscription_created(subscription: dict) -> dict:
    customer = stripe_api.retrieve_customer(subscription["customer"])
    if customer.get("deleted") or not customer.get("email"):
        logger.info("Customer %s deleted or without email, skipping", subscription["customer"])
        return {"success": True, "skipped": True}
    return setup_user_subscription(
        customer["email"], subscription["customer"], subscription["id"], "stripe_subscription_created"
    )


def _on_subscription_updated(subscription: dict) -> dict:
    get_client().table("user_subscriptions").update({
        "status": _local_status(subscription.get("status")),
        "current_period_start": _ts_to_iso(subscription.get("current_period_start")) or _now_iso(),
        "current_period_end": _ts_to_iso(subscription.get("current_period_end")),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
    }).eq("stripe_subscription_id", subscription["id"]).execute()
    logger.info("Subscription %s updated (%s)", subscription["id"], subscription.get("status"))
    return {"success": True}


def _on_subscription_deleted(subscription: dict) -> dict:
    db = get_client()
    db.table("user_subscriptions").update(
        {"status": "cancelled", "cancelled_at": _now_iso()}
    ).eq("stripe_subscription_id", subscription["id"]).execute()

    row = first(
        db.table("user_subscriptions").select("user_id")
        .eq("stripe_subscription_id", subscription["id"]).limit(1).execute()
    )
    if row and row.get("user_id"):
        if is_protected(row["user_id"]):
            logger.info("User %s is master/admin, role preserved on cancellation", row["user_id"])
        else:
            db.table("user_roles").update({"role": "free"}).eq("user_id", row["user_id"]).execute()
            logger.info("User %s role reverted to free", row["user_id"])
    return {"success": True}


def _on_invoice(invoice: dict, status: str) -> dict:
    subscription_id = invoice.get("subscription")
    if subscription_id:
        get_client().table("user_subscriptions").update(
            {"status": status}
        ).eq("stripe_subscription_id", subscription_id).execute()
        logger.info("Subscription %s marked %s from invoice %s", subscription_id, status, invoice.get("id"))
    return {"success": True}


EVENT_HANDLERS = {
    "checkout.session.completed": _on_checkout_completed,
    "customer.subscription.created": _on_subscription_created,
    "customer.subscription.updated": _on_subscription_updated,
    "customer.subscription.deleted": _on_subscription_deleted,
    "invoice.paid": lambda invoice: _on_invoice(invoice, "active"),
    "invoice.payment_failed": lambda invoice: _on_invoice(invoice, "past_due"),
}


def handle_event(event: dict) -> dict:
    handler = EVENT_HANDLERS.get(event.get("type"))
    logger.info("Stripe event %s", event.get("type"))
    if handler is None:
        return {"received": True}
    return handler(event["data"]["object"])


def handle_webhook(payload: bytes, signature: str) -> dict:
    """Verify (when a secret is configured) and dispatch a Stripe webhook body."""
    event = stripe_api.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    return handle_event(event)
