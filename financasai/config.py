"""Environment variable loading and validation."""

import os
import sys
from dotenv import load_dotenv

load_dotenv()

REQUIRED_VARS = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
]


def _load_env():
    missing = [v for v in REQUIRED_VARS if not os.getenv(v)]
    if missing:
        print(f"Missing required environment variables: {', '.join(missing)}", file=sys.stderr)
        print("Copy .env.example to .env and fill in all values.", file=sys.stderr)
        sys.exit(1)


_load_env()

# Supabase (service-role key bypasses RLS)
SUPABASE_URL: str = os.environ["SUPABASE_URL"]
SUPABASE_SERVICE_ROLE_KEY: str = os.environ["SUPABASE_SERVICE_ROLE_KEY"]

# WhatsApp (optional, only needed for the webhook and reminders)
WHATSAPP_PHONE_NUMBER_ID: str = os.environ.get("WHATSAPP_PHONE_NUMBER_ID", "")
WHATSAPP_ACCESS_TOKEN: str = os.environ.get("WHATSAPP_ACCESS_TOKEN", "")
WHATSAPP_VERIFY_TOKEN: str = os.environ.get("WHATSAPP_VERIFY_TOKEN", "")
WHATSAPP_APP_SECRET: str = os.environ.get("WHATSAPP_APP_SECRET", "")
WHATSAPP_REMINDER_TEMPLATE: str = os.environ.get("WHATSAPP_REMINDER_TEMPLATE", "lembrete_compromisso")

# Stripe
STRIPE_SECRET_KEY: str = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

# Google Calendar OAuth (web client)
GOOGLE_CLIENT_ID: str = os.environ.get("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET: str = os.environ.get("GOOGLE_CLIENT_SECRET", "")
GOOGLE_CALENDAR_REDIRECT_URI: str = os.environ.get("GOOGLE_CALENDAR_REDIRECT_URI", "")

# Anthropic (optional, free-form answers in reports)
ANTHROPIC_API_KEY: str = os.environ.get("ANTHROPIC_API_KEY", "")

# Scheduler auth for sweep endpoints
CRON_SECRET: str = os.environ.get("CRON_SECRET", "")

SITE_URL: str = os.environ.get("SITE_URL", "https://financasai.lovable.app").rstrip("/")
APP_TIMEZONE: str = os.environ.get("APP_TIMEZONE", "America/Sao_Paulo")
