"""Inbound WhatsApp message handling: commands, confirmations, transactions."""

import logging

from financasai.conversation import (
    STATE_WAITING_CONFIRMATION,
    clear_state,
    get_or_create_session,
    get_session,
    get_state,
    save_state,
)
from financasai.db import first, get_client, phone_variants
from financasai.tools.reports import monthly_balance_text
from financasai.tools.transactions import (
    ParsedTransaction,
    format_brl,
    format_confirmation,
    parse_transaction,
    record_transaction,
)

logger = logging.getLogger(__name__)

HELP_COMMANDS = {"ajuda", "help", "menu", "comandos"}
CANCEL_COMMANDS = {"cancelar", "cancel", "sair"}
BALANCE_COMMANDS = {"saldo", "resumo", "balanço", "balanco"}
YES_WORDS = {"sim", "s", "confirmar", "confirmo", "ok"}
NO_WORDS = {"não", "nao", "n", "cancelar"}

HELP_TEXT = (
    "🤖 *FinançasAI no WhatsApp*\n\n"
    "Registre transações escrevendo:\n"
    "• gasto 50 mercado\n"
    "• receita 1000 salario\n"
    "• +100 freelance\n"
    "• -30 combustível\n"
    "• gastei 25,90 no almoço ontem\n\n"
    "Comandos:\n"
    "• *saldo* resumo do mês\n"
    "• *cancelar* cancela a operação atual\n"
    "• *ajuda* mostra esta mensagem"
)

UNRECOGNIZED_TEXT = (
    'Mensagem não reconhecida. Use formatos como: "gasto 50 mercado", '
    '"receita 1000 salario", "+100 freelance" ou "-30 combustível"'
)

UNKNOWN_USER_TEXT = "Usuário não encontrado. Registre-se primeiro no app."


def find_user_id_by_phone(phone: str) -> str | None:
    """Match profiles.phone_number with and without the leading '+'."""
    resp = (
        get_client().table("profiles")
        .select("user_id")
        .in_("phone_number", phone_variants(phone))
        .limit(1)
        .execute()
    )
    row = first(resp)
    return row["user_id"] if row else None


def _confirmation_prompt(pending: dict) -> str:
    kind = "💰 Receita" if pending["type"] == "income" else "💸 Despesa"
    return (
        "⚠️ *Confirmação Necessária*\n\n"
        f"Transação de alto valor: {format_brl(pending['amount'])}\n"
        f"📝 {pending['title']}\n"
        f"{kind}\n\n"
        'Digite *"sim"* para confirmar ou *"não"* para cancelar.'
    )


def handle_message(phone: str, text: str) -> str:
    """Process one WhatsApp text and return the reply to send back."""
    session = get_session(phone)
    user_id = (session or {}).get("user_id") or find_user_id_by_phone(phone)
    if not user_id:
        logger.warning("Message from unregistered phone: %s", phone)
        return UNKNOWN_USER_TEXT
    if session is None or session.get("user_id") != user_id:
        session = get_or_create_session(phone, user_id)

    command = text.strip().lower()
    state, pending = get_state(session)

    if state == STATE_WAITING_CONFIRMATION and pending:
        if command in YES_WORDS:
            record_transaction(user_id, pending)
            clear_state(session)
            return format_confirmation(ParsedTransaction(**pending))
        if command in NO_WORDS:
            clear_state(session)
            return "❌ Transação cancelada."

    if command in HELP_COMMANDS:
        return HELP_TEXT
    if command in CANCEL_COMMANDS:
        clear_state(session)
        return "❌ Operação cancelada."
    if command in BALANCE_COMMANDS:
        return monthly_balance_text(user_id)

    parsed = parse_transaction(text)
    if parsed is None:
        return UNRECOGNIZED_TEXT

    if parsed.requires_confirmation:
        pending = parsed.to_dict()
        save_state(session, STATE_WAITING_CONFIRMATION, pending)
        logger.info("High-value transaction awaiting confirmation from %s", phone)
        return _confirmation_prompt(pending)

    record_transaction(user_id, parsed)
    if state == STATE_WAITING_CONFIRMATION:
        clear_state(session)
    return format_confirmation(parsed)
