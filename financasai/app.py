"""FastAPI app: WhatsApp webhook, dashboard functions, Stripe webhook and scheduler sweeps."""

import hashlib
import hmac
import logging
import time
from collections import defaultdict

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from financasai.config import CRON_SECRET, WHATSAPP_APP_SECRET, WHATSAPP_VERIFY_TOKEN
from financasai.assistant import handle_message
from financasai.db import get_user_from_token
from financasai.errors import AuthError, FinancasError, ReconnectRequired
from financasai.tools import billing, calendar, reminders, reports, trials, users
from financasai.whatsapp import extract_message, send_message

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="FinançasAI")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FinancasError)
async def financas_error_handler(request: Request, exc: FinancasError):
    if isinstance(exc, ReconnectRequired):
        return JSONResponse(
            status_code=exc.status_code,
            content={"code": "reconnect_required", "message": exc.message, "googleError": exc.google_error},
        )
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


# ---------------------------------------------------------------------------
# Webhook signature verification (security)
# ---------------------------------------------------------------------------

def _verify_webhook_signature(payload_body: bytes, signature_header: str) -> bool:
    """Verify X-Hub-Signature-256 from Meta using HMAC-SHA256."""
    if not WHATSAPP_APP_SECRET:
        logger.warning("WHATSAPP_APP_SECRET not set, skipping signature verification")
        return True
    if not signature_header:
        return False
    expected = "sha256=" + hmac.new(
        WHATSAPP_APP_SECRET.encode(), payload_body, hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature_header)


# ---------------------------------------------------------------------------
# Per-phone rate limiting (security)
# ---------------------------------------------------------------------------

RATE_LIMIT_MAX = 10         # max messages per window
RATE_LIMIT_WINDOW = 60.0    # window in seconds

_rate_limit_log: dict[str, list[float]] = defaultdict(list)


def _check_rate_limit(phone: str) -> bool:
    """Return True if the phone is within rate limits, False if exceeded."""
    now = time.time()
    _rate_limit_log[phone] = [
        t for t in _rate_limit_log[phone] if now - t < RATE_LIMIT_WINDOW
    ]
    if len(_rate_limit_log[phone]) >= RATE_LIMIT_MAX:
        return False
    _rate_limit_log[phone].append(now)
    return True


# ---------------------------------------------------------------------------
# Auth dependencies
# ---------------------------------------------------------------------------

def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise AuthError("Authentication required")
    token = authorization.replace("Bearer ", "", 1).strip()
    if len(token) < 20:
        raise AuthError("Invalid authentication token")
    return token


async def get_current_user(authorization: str = Header(None)) -> dict:
    """Resolve the Supabase user behind the Authorization bearer token."""
    user = get_user_from_token(_bearer_token(authorization))
    if not user:
        raise AuthError("User not authenticated")
    return user


async def get_optional_user(authorization: str = Header(None)) -> dict | None:
    if not authorization:
        return None
    try:
        return get_user_from_token(_bearer_token(authorization))
    except AuthError:
        return None


async def verify_cron_auth(x_cron_secret: str = Header(None)):
    """Verify X-Cron-Secret header for scheduler-triggered sweeps."""
    if not CRON_SECRET:
        logger.error("CRON_SECRET not configured, rejecting request")
        raise HTTPException(status_code=503, detail="Cron authentication not configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, CRON_SECRET):
        raise HTTPException(status_code=401, detail="Invalid or missing X-Cron-Secret header")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CheckoutRequest(CamelModel):
    price_id: str | None = Field(None, alias="priceId")
    cycle: str | None = None
    email: str | None = None
    coupon_code: str | None = Field(None, alias="couponCode")


class CouponRequest(CamelModel):
    coupon_code: str | None = Field(None, alias="couponCode")


class CalendarAuthRequest(CamelModel):
    user_id: str | None = Field(None, alias="userId")
    app_origin: str | None = Field(None, alias="appOrigin")


class DeleteUserRequest(BaseModel):
    user_id: str | None = None


class ReportRequest(BaseModel):
    period: str = "month"
    question: str | None = None


# ---------------------------------------------------------------------------
# WhatsApp webhook
# ---------------------------------------------------------------------------

@app.get("/webhook")
async def verify_webhook(request: Request):
    """Handle Meta webhook verification challenge."""
    params = request.query_params
    mode = params.get("hub.mode")
    token = params.get("hub.verify_token")
    challenge = params.get("hub.challenge")

    if mode == "subscribe" and token and token == WHATSAPP_VERIFY_TOKEN:
        logger.info("Webhook verified successfully")
        return Response(content=challenge, media_type="text/plain")

    logger.warning("Webhook verification failed: invalid token")
    return Response(content="Forbidden", status_code=403)


@app.post("/webhook")
async def receive_message(request: Request, background_tasks: BackgroundTasks):
    """Handle incoming WhatsApp messages from Meta webhook."""
    body = await request.body()
    signature = request.headers.get("X-Hub-Signature-256", "")
    if not _verify_webhook_signature(body, signature):
        logger.warning("Invalid webhook signature, rejecting request")
        return Response(status_code=403, content="Invalid signature")

    payload = await request.json()
    parsed = extract_message(payload)
    if not parsed:
        return {"status": "ok"}

    phone = parsed["phone"]
    if not _check_rate_limit(phone):
        logger.warning("Rate limit exceeded for %s", phone)
        return {"status": "ok"}

    logger.info("Message from %s: %s", phone, parsed["text"][:100])
    background_tasks.add_task(_process_and_reply, phone, parsed["text"])
    return {"status": "ok"}


async def _process_and_reply(phone: str, text: str):
    """Run a text through the assistant and send the reply via WhatsApp."""
    start = time.time()
    try:
        reply = handle_message(phone, text)
        logger.info("Response generated in %.1fs (%d chars)", time.time() - start, len(reply))
        await send_message(phone, reply)
    except Exception:
        logger.exception("Error processing message from %s", phone)
        await send_message(phone, "Desculpe, ocorreu um erro. Tente novamente.")


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

@app.post("/functions/create-checkout")
def create_checkout(req: CheckoutRequest, request: Request, user: dict | None = Depends(get_optional_user)):
    url = billing.create_checkout(
        price_id=req.price_id,
        cycle=req.cycle,
        email=req.email,
        user=user,
        origin=request.headers.get("origin"),
        coupon_code=req.coupon_code,
    )
    return {"url": url}


@app.post("/functions/check-subscription")
def check_subscription(authorization: str = Header(None)):
    try:
        token = _bearer_token(authorization)
    except AuthError as e:
        return JSONResponse(status_code=401, content={"error": e.message, "subscribed": False})
    user = get_user_from_token(token)
    if not user or not user.get("email"):
        return JSONResponse(
            status_code=401,
            content={"error": "User not authenticated or email not available", "subscribed": False},
        )
    try:
        return billing.check_subscription(user)
    except Exception as e:
        logger.exception("check-subscription failed for %s", user["email"])
        return {"error": str(e), "subscribed": False, "product_id": None, "subscription_end": None}


@app.post("/functions/stripe-webhook")
async def stripe_webhook(request: Request):
    body = await request.body()
    signature = request.headers.get("stripe-signature", "")
    return billing.handle_webhook(body, signature)


# ---------------------------------------------------------------------------
# Trials
# ---------------------------------------------------------------------------

@app.post("/functions/activate-trial")
def activate_trial(user: dict = Depends(get_current_user)):
    return trials.activate_trial(user)


@app.post("/functions/activate-trial-coupon")
def activate_trial_coupon(req: CouponRequest, user: dict = Depends(get_current_user)):
    try:
        return trials.activate_trial_coupon(user, req.coupon_code or "")
    except FinancasError as e:
        return JSONResponse(status_code=400, content={"success": False, "error": e.message})


@app.post("/functions/check-expired-trials", dependencies=[Depends(verify_cron_auth)])
def check_expired_trials():
    return trials.expire_trials()


# ---------------------------------------------------------------------------
# Google Calendar
# ---------------------------------------------------------------------------

@app.post("/functions/google-calendar-auth")
async def google_calendar_auth(request: Request, user: dict | None = Depends(get_optional_user)):
    try:
        body = CalendarAuthRequest.model_validate(await request.json())
    except ValueError:
        body = CalendarAuthRequest()
    params = request.query_params
    # Popup flows open this without a session; then the caller passes the uid
    user_id = (user or {}).get("id") or body.user_id or params.get("uid")
    origin = body.app_origin or params.get("o") or request.headers.get("origin")
    if not user_id:
        raise AuthError("User ID is required")
    return {"authUrl": calendar.build_auth_url(user_id, origin)}


@app.get("/functions/google-calendar-callback")
def google_calendar_callback(code: str | None = None, state: str | None = None, error: str | None = None):
    return RedirectResponse(calendar.complete_oauth(code, state, error), status_code=302)


@app.post("/functions/google-calendar-import")
def google_calendar_import(user: dict = Depends(get_current_user)):
    return calendar.import_events(user["id"])


@app.post("/functions/google-calendar-disconnect")
def google_calendar_disconnect(user: dict = Depends(get_current_user)):
    return calendar.disconnect(user["id"])


@app.post("/functions/check-google-calendar-tokens", dependencies=[Depends(verify_cron_auth)])
def check_google_calendar_tokens():
    return calendar.refresh_expiring_tokens()


@app.post("/functions/sync-all-google-calendars", dependencies=[Depends(verify_cron_auth)])
def sync_all_google_calendars():
    return calendar.sync_all_calendars()


# ---------------------------------------------------------------------------
# Reminders, admin, reports
# ---------------------------------------------------------------------------

@app.post("/functions/send-commitment-reminders", dependencies=[Depends(verify_cron_auth)])
async def send_commitment_reminders():
    return await reminders.send_commitment_reminders()


@app.post("/functions/delete-user-admin")
def delete_user_admin(req: DeleteUserRequest, user: dict = Depends(get_current_user)):
    return users.delete_user(user, req.user_id)


@app.post("/functions/ai-reports")
def ai_reports(req: ReportRequest, user: dict = Depends(get_current_user)):
    return reports.build_report(user["id"], req.period, req.question)
