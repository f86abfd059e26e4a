"""Free-text transaction parser for WhatsApp messages ("gasto 50 mercado").

Parsing is pure apart from the clock: the text is lower-cased, a date word
(hoje/ontem/amanhã or DD/MM[/AA]) is pulled out, currency noise is dropped,
and three patterns are tried in order:

    1. keyword   gasto 50 mercado / receita 1.000,00 salário
    2. signed    +100 freelance / -30 combustível
    3. bare      50 padaria            (always an expense)
"""

import logging
import re
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from financasai.config import APP_TIMEZONE
from financasai.db import get_client

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 500
MAX_AMOUNT = 50000.0
CONFIRMATION_THRESHOLD = 1000.0
MAX_TITLE_LENGTH = 100

INCOME_KEYWORDS = ("receita", "recebi", "entrada", "ganho")
EXPENSE_KEYWORDS = ("gasto", "gastei", "despesa", "paguei", "saida", "saída")

_AMOUNT = r"(\d+(?:[.,]\d{3})*(?:[.,]\d{1,2})?)"
_KEYWORD_RE = re.compile(
    r"^(" + "|".join(INCOME_KEYWORDS + EXPENSE_KEYWORDS) + r")\s+" + _AMOUNT + r"(?:\s+(.*))?$"
)
_SIGNED_RE = re.compile(r"^([+-])\s*" + _AMOUNT + r"(?:\s+(.*))?$")
_BARE_RE = re.compile(r"^" + _AMOUNT + r"\s+(.+)$")

_DATE_WORD_RE = re.compile(r"\b(hoje|hj|ontem|amanhã|amanha)\b")
_DATE_NUM_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{4}|\d{2}))?\b")
_CURRENCY_RE = re.compile(r"r\$\s*|\breais\b|\breal\b")
_LEADING_PREP_RE = re.compile(r"^(?:na|no|em|de|para|com|a|o|as|os)\s+")


@dataclass
class ParsedTransaction:
    amount: float
    type: str  # "income" | "expense"
    title: str
    date: str  # YYYY-MM-DD
    source: str = "whatsapp"
    requires_confirmation: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def local_today() -> date:
    return datetime.now(ZoneInfo(APP_TIMEZONE)).date()


# ---------------------------------------------------------------------------
# Normalisers
# ---------------------------------------------------------------------------

def parse_amount(raw: str) -> float | None:
    """Normalise Brazilian or plain number notation to a float.

    "1.000,50" and "1,000.50" use the last separator as the decimal mark.
    A comma alone is always decimal ("1,500" is 1.5). Dots alone followed by
    exactly three-digit groups are thousands ("1.000"), otherwise decimal.
    """
    if not raw:
        return None
    raw = raw.strip()
    if "." in raw and "," in raw:
        decimal = "," if raw.rfind(",") > raw.rfind(".") else "."
        thousands = "." if decimal == "," else ","
        normalised = raw.replace(thousands, "").replace(decimal, ".")
    elif "," in raw:
        head, _, tail = raw.rpartition(",")
        normalised = head.replace(",", "") + "." + tail
    elif "." in raw:
        if re.fullmatch(r"\d{1,3}(?:\.\d{3})+", raw):
            normalised = raw.replace(".", "")
        else:
            normalised = raw
    else:
        normalised = raw
    try:
        return round(float(normalised), 2)
    except ValueError:
        return None


def parse_date_token(token: str, today: date) -> str | None:
    """Resolve hoje/ontem/amanhã or DD/MM[/YY|YYYY] to an ISO date."""
    token = token.strip().lower()
    if token in ("hoje", "hj"):
        return today.isoformat()
    if token == "ontem":
        return (today - timedelta(days=1)).isoformat()
    if token in ("amanhã", "amanha"):
        return (today + timedelta(days=1)).isoformat()

    m = _DATE_NUM_RE.fullmatch(token)
    if not m:
        return None
    day, month, year = int(m.group(1)), int(m.group(2)), m.group(3)
    if year is None:
        year_num = today.year
    elif len(year) == 2:
        year_num = 2000 + int(year)
    else:
        year_num = int(year)
    try:
        return date(year_num, month, day).isoformat()
    except ValueError:
        return None


def _extract_date(text: str, today: date) -> tuple[str, str]:
    """Pull the first recognised date out of text. Returns (iso_date, remaining_text)."""
    for regex in (_DATE_WORD_RE, _DATE_NUM_RE):
        m = regex.search(text)
        if not m:
            continue
        iso = parse_date_token(m.group(0), today)
        if iso:
            return iso, (text[:m.start()] + " " + text[m.end():])
    return today.isoformat(), text


def _clean_title(raw: str | None, tx_type: str) -> str:
    title = (raw or "").strip()
    title = _LEADING_PREP_RE.sub("", title)
    title = title.replace("<", "").replace(">", "")
    title = title.rstrip(" .,;:!?-").strip()
    title = title[:MAX_TITLE_LENGTH].strip()
    if not title:
        return "Receita" if tx_type == "income" else "Despesa"
    return title[0].upper() + title[1:]


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def parse_transaction(text: str, today: date | None = None) -> ParsedTransaction | None:
    """Parse a free-text WhatsApp message into a transaction, or None."""
    if not text or not text.strip() or len(text) > MAX_TEXT_LENGTH:
        return None
    today = today or local_today()

    working = text.strip().lower()
    tx_date, working = _extract_date(working, today)
    working = _CURRENCY_RE.sub(" ", working)
    working = re.sub(r"\s+", " ", working).strip()

    tx_type = "expense"
    amount_raw = title_raw = None

    m = _KEYWORD_RE.match(working)
    if m:
        keyword, amount_raw, title_raw = m.groups()
        tx_type = "income" if keyword in INCOME_KEYWORDS else "expense"
    else:
        m = _SIGNED_RE.match(working)
        if m:
            sign, amount_raw, title_raw = m.groups()
            tx_type = "income" if sign == "+" else "expense"
        else:
            m = _BARE_RE.match(working)
            if m:
                amount_raw, title_raw = m.groups()

    if amount_raw is None:
        return None

    amount = parse_amount(amount_raw)
    if amount is None or amount <= 0 or amount > MAX_AMOUNT:
        logger.info("Rejected amount out of bounds: %s", amount_raw)
        return None

    return ParsedTransaction(
        amount=amount,
        type=tx_type,
        title=_clean_title(title_raw, tx_type),
        date=tx_date,
        requires_confirmation=amount > CONFIRMATION_THRESHOLD,
    )


# ---------------------------------------------------------------------------
# Formatting + persistence
# ---------------------------------------------------------------------------

def format_brl(value: float) -> str:
    """Format a number as Brazilian currency: R$ 1.234,56."""
    formatted = f"{abs(value):,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    sign = "-" if value < 0 else ""
    return f"{sign}R$ {formatted}"


def type_label(tx_type: str) -> str:
    return "Receita" if tx_type == "income" else "Despesa"


def format_confirmation(parsed: ParsedTransaction) -> str:
    return f"✅ {type_label(parsed.type)} de {format_brl(parsed.amount)} registrada: {parsed.title}"


def record_transaction(user_id: str, parsed: ParsedTransaction | dict) -> dict:
    """Insert a parsed transaction for the user and return the stored row."""
    data = parsed.to_dict() if isinstance(parsed, ParsedTransaction) else dict(parsed)
    row = {
        "user_id": user_id,
        "title": data["title"],
        "amount": data["amount"],
        "type": data["type"],
        "date": data["date"],
        "source": data.get("source", "whatsapp"),
    }
    resp = get_client().table("transactions").insert(row).execute()
    stored = (resp.data or [row])[0]
    logger.info("Recorded %s of %.2f for user %s", data["type"], data["amount"], user_id)
    return stored
