"""Financial period reports (day/week/month/year) in pt-BR."""

import logging
from datetime import date, timedelta

from anthropic import Anthropic

from financasai.config import ANTHROPIC_API_KEY
from financasai.db import get_client
from financasai.errors import ValidationError
from financasai.tools.transactions import format_brl, local_today

logger = logging.getLogger(__name__)

PERIOD_LABELS = {
    "day": "do dia",
    "week": "da semana",
    "month": "do mês",
    "year": "do ano",
}
TOP_CATEGORIES = 3

_client: Anthropic | None = None


def _get_anthropic() -> Anthropic:
    global _client
    if _client is None:
        _client = Anthropic(api_key=ANTHROPIC_API_KEY)
    return _client


def period_range(period: str, today: date | None = None) -> tuple[date, date]:
    """Return (start, end) dates, inclusive, for a report period."""
    today = today or local_today()
    if period == "day":
        return today, today
    if period == "week":
        return today - timedelta(days=7), today
    if period == "month":
        return today.replace(day=1), today
    if period == "year":
        return today.replace(month=1, day=1), today
    raise ValidationError(f"Período inválido: {period}")


def fetch_transactions(user_id: str, start: date, end: date) -> list[dict]:
    resp = (
        get_client().table("transactions")
        .select("*, categories(name)")
        .eq("user_id", user_id)
        .gte("date", start.isoformat())
        .lte("date", end.isoformat())
        .order("date", desc=True)
        .execute()
    )
    return resp.data or []


def _category_name(tx: dict) -> str:
    category = tx.get("categories")
    if isinstance(category, dict) and category.get("name"):
        return category["name"]
    return "Outros"


def summarize(transactions: list[dict]) -> dict:
    """Totals plus the top income and expense categories."""
    income = sum(float(t["amount"]) for t in transactions if t.get("type") == "income")
    expenses = sum(float(t["amount"]) for t in transactions if t.get("type") == "expense")

    categories: dict[tuple[str, str], dict] = {}
    for t in transactions:
        key = (_category_name(t), t.get("type", "expense"))
        entry = categories.setdefault(key, {"name": key[0], "type": key[1], "total": 0.0, "count": 0})
        entry["total"] += float(t["amount"])
        entry["count"] += 1

    ranked = sorted(categories.values(), key=lambda c: c["total"], reverse=True)
    return {
        "income": round(income, 2),
        "expenses": round(expenses, 2),
        "profit": round(income - expenses, 2),
        "count": len(transactions),
        "categories": ranked,
        "top_expenses": [c for c in ranked if c["type"] == "expense"][:TOP_CATEGORIES],
        "top_incomes": [c for c in ranked if c["type"] == "income"][:TOP_CATEGORIES],
    }


def _rule_based_answer(question: str, summary: dict, label: str) -> str:
    q = question.lower()
    lines = []
    profit = summary["profit"]
    if "lucro" in q or "prejuízo" in q or "prejuizo" in q:
        kind = "lucro" if profit >= 0 else "prejuízo"
        lines.append(f"Com base nos dados {label}, você teve um {kind} de {format_brl(abs(profit))}.")
    if ("categoria" in q or "gasto" in q) and summary["top_expenses"]:
        top = summary["top_expenses"][0]
        lines.append(f'Sua maior categoria de gastos {label} foi "{top["name"]}" com {format_brl(top["total"])}.')
    if ("receita" in q or "entrada" in q) and summary["top_incomes"]:
        top = summary["top_incomes"][0]
        lines.append(f'Sua maior fonte de receita {label} foi "{top["name"]}" com {format_brl(top["total"])}.')
    return "\n".join(lines)


def _claude_answer(question: str, summary: dict, label: str) -> str:
    context = (
        f"Período: {label}\n"
        f"Receitas: {format_brl(summary['income'])}\n"
        f"Despesas: {format_brl(summary['expenses'])}\n"
        f"Resultado: {format_brl(summary['profit'])}\n"
        "Categorias: "
        + "; ".join(f"{c['name']} ({c['type']}): {format_brl(c['total'])}" for c in summary["categories"])
    )
    response = _get_anthropic().messages.create(
        model="claude-haiku-4-5-20251001",
        max_tokens=512,
        system=(
            "Você é um assistente financeiro pessoal. Responda em português do Brasil, "
            "em no máximo 3 frases, usando apenas os dados fornecidos."
        ),
        messages=[{"role": "user", "content": f"{context}\n\nPergunta: {question}"}],
    )
    return "".join(block.text for block in response.content if block.type == "text").strip()


def answer_question(question: str, summary: dict, label: str) -> str:
    if ANTHROPIC_API_KEY:
        try:
            return _claude_answer(question, summary, label)
        except Exception as e:
            logger.warning("Claude answer failed, using rules: %s", e)
    return _rule_based_answer(question, summary, label)


def render_report(summary: dict, period: str, question: str | None = None) -> str:
    label = PERIOD_LABELS[period]
    header = f"📊 *RELATÓRIO FINANCEIRO {label.upper()}*\n\n"

    if summary["count"] == 0:
        report = header + (
            "Não há transações registradas para este período.\n"
            "Adicione algumas transações para visualizar relatórios detalhados.\n"
        )
    else:
        profit = summary["profit"]
        report = header
        report += "💰 *RESUMO GERAL:*\n"
        report += f"• Receitas: {format_brl(summary['income'])}\n"
        report += f"• Despesas: {format_brl(summary['expenses'])}\n"
        report += f"• {'Lucro' if profit >= 0 else 'Prejuízo'}: {format_brl(abs(profit))}\n"
        report += f"• Total de transações: {summary['count']}\n\n"

        if profit >= 0:
            report += f"✅ *SITUAÇÃO POSITIVA!* Você teve um lucro de {format_brl(profit)} {label}.\n\n"
        else:
            report += f"⚠️ *ATENÇÃO!* Você teve um prejuízo de {format_brl(abs(profit))} {label}.\n\n"

        for title, items in (("📉 *MAIORES DESPESAS:*", summary["top_expenses"]),
                             ("📈 *MAIORES RECEITAS:*", summary["top_incomes"])):
            if not items:
                continue
            report += title + "\n"
            for i, cat in enumerate(items, 1):
                report += f"{i}. {cat['name']}: {format_brl(cat['total'])} ({cat['count']} transações)\n"
            report += "\n"

        report += "💡 *INSIGHTS E RECOMENDAÇÕES:*\n"
        if profit < 0:
            report += f"• Suas despesas estão {format_brl(abs(profit))} acima das receitas\n"
            report += "• Considere revisar os gastos nas categorias que mais consomem seu orçamento\n"
        else:
            report += f"• Parabéns! Você está no azul com {format_brl(profit)} de sobra\n"
            report += "• Considere investir esse valor ou criar uma reserva de emergência\n"

    if question:
        answer = answer_question(question, summary, label)
        report += f'\n🤖 *RESPOSTA À SUA PERGUNTA:* "{question}"\n'
        if answer:
            report += answer + "\n"
    return report


def build_report(user_id: str, period: str = "month", question: str | None = None,
                 today: date | None = None) -> dict:
    """Build the report for a user and period. Returns {report, data}."""
    start, end = period_range(period, today)
    transactions = fetch_transactions(user_id, start, end)
    summary = summarize(transactions)
    logger.info("Report %s for %s: %d transactions", period, user_id, summary["count"])
    return {
        "success": True,
        "report": render_report(summary, period, question),
        "data": {
            "summary": {k: summary[k] for k in ("income", "expenses", "profit")},
            "transactions": summary["count"],
            "categories": summary["categories"],
            "period": PERIOD_LABELS[period],
        },
    }


def monthly_balance_text(user_id: str) -> str:
    """Short month-to-date balance for the WhatsApp "saldo" command."""
    start, end = period_range("month")
    summary = summarize(fetch_transactions(user_id, start, end))
    return (
        "📊 *Resumo do mês*\n\n"
        f"💰 Receitas: {format_brl(summary['income'])}\n"
        f"💸 Despesas: {format_brl(summary['expenses'])}\n"
        f"📈 Saldo: {format_brl(summary['profit'])}"
    )
