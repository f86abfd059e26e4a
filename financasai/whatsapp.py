"""Meta Cloud API client: free-form texts, approved templates, inbound parsing."""

import logging

import httpx

from financasai.config import WHATSAPP_ACCESS_TOKEN, WHATSAPP_PHONE_NUMBER_ID

logger = logging.getLogger(__name__)

GRAPH_API_URL = f"https://graph.facebook.com/v21.0/{WHATSAPP_PHONE_NUMBER_ID}/messages"
MAX_MESSAGE_LENGTH = 1600

# Meta error codes meaning "outside the 24h service window"
SERVICE_WINDOW_ERRORS = (131047, 131026)


def _recipient(to: str) -> str:
    return to.lstrip("+")


def _text_payload(to: str, body: str) -> dict:
    return {
        "messaging_product": "whatsapp",
        "to": _recipient(to),
        "type": "text",
        "text": {"body": body},
    }


def _template_payload(to: str, template_name: str, parameters: list[str] | None, language: str) -> dict:
    components = []
    if parameters:
        components.append({
            "type": "body",
            "parameters": [{"type": "text", "text": p} for p in parameters],
        })
    return {
        "messaging_product": "whatsapp",
        "to": _recipient(to),
        "type": "template",
        "template": {"name": template_name, "language": {"code": language}, "components": components},
    }


async def _post(client: httpx.AsyncClient, payload: dict) -> httpx.Response:
    return await client.post(
        GRAPH_API_URL,
        json=payload,
        headers={"Authorization": f"Bearer {WHATSAPP_ACCESS_TOKEN}"},
    )


def _error_code(resp: httpx.Response) -> int:
    try:
        return int(resp.json().get("error", {}).get("code", 0))
    except (ValueError, TypeError, AttributeError):
        return 0


def _split_message(text: str) -> list[str]:
    """Chunk text to MAX_MESSAGE_LENGTH, breaking at blank lines, then lines."""
    chunks: list[str] = []
    remaining = text
    while len(remaining) > MAX_MESSAGE_LENGTH:
        cut = remaining.rfind("\n\n", 0, MAX_MESSAGE_LENGTH)
        if cut == -1:
            cut = remaining.rfind("\n", 0, MAX_MESSAGE_LENGTH)
        if cut == -1:
            cut = MAX_MESSAGE_LENGTH
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining or not chunks:
        chunks.append(remaining)
    return chunks


async def send_message(to: str, text: str) -> bool:
    """Send a reply inside the service window. False if any chunk was refused."""
    delivered = True
    async with httpx.AsyncClient() as client:
        for chunk in _split_message(text):
            resp = await _post(client, _text_payload(to, chunk))
            if resp.status_code == 429:
                logger.warning("WhatsApp rate limit hit sending to %s", to)
                delivered = False
            elif resp.status_code != 200:
                logger.error("WhatsApp send failed: %s %s", resp.status_code, resp.text)
                delivered = False
    return delivered


async def send_template_message(
    to: str, template_name: str, parameters: list[str] | None = None, language: str = "pt_BR"
) -> bool:
    """Send a pre-approved template, the only thing Meta delivers after the 24h window."""
    async with httpx.AsyncClient() as client:
        resp = await _post(client, _template_payload(to, template_name, parameters, language))
    if resp.status_code != 200:
        logger.error("Template %s failed: %s %s", template_name, resp.status_code, resp.text)
        return False
    return True


async def send_message_with_template_fallback(
    to: str, text: str, template_name: str = "", template_params: list[str] | None = None
) -> bool:
    """Send text, switching to template_name when Meta reports a closed window."""
    async with httpx.AsyncClient() as client:
        for chunk in _split_message(text):
            resp = await _post(client, _text_payload(to, chunk))
            if resp.status_code == 200:
                continue
            if template_name and _error_code(resp) in SERVICE_WINDOW_ERRORS:
                logger.info("Outside 24h window for %s, using template %s", to, template_name)
                return await send_template_message(to, template_name, template_params)
            logger.error("WhatsApp send failed: %s %s", resp.status_code, resp.text)
            return False
    return True


def extract_message(payload: dict) -> dict | None:
    """Extract a text message from a Meta webhook payload.

    Returns {phone, name, type, text}, or None for status updates and
    non-text messages.
    """
    try:
        value = payload["entry"][0]["changes"][0]["value"]
        messages = value.get("messages")
        if not messages:
            return None
        msg = messages[0]
        if msg.get("type") != "text":
            return None
        phone = msg["from"]
        contacts = value.get("contacts", [])
        name = contacts[0]["profile"]["name"] if contacts else phone
        return {
            "phone": phone,
            "name": name,
            "type": "text",
            "text": msg["text"]["body"],
        }
    except (KeyError, IndexError, TypeError):
        return None
