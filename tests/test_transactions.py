"""Tests for the WhatsApp free-text transaction parser."""

from datetime import date

import pytest

from financasai.tools.transactions import (
    ParsedTransaction,
    format_brl,
    format_confirmation,
    parse_amount,
    parse_date_token,
    parse_transaction,
    record_transaction,
)

TODAY = date(2026, 10, 17)


def parse(text):
    return parse_transaction(text, today=TODAY)


class TestPatterns:
    def test_keyword_expense(self):
        tx = parse("gasto 50 mercado")
        assert tx.amount == 50.0
        assert tx.type == "expense"
        assert tx.title == "Mercado"
        assert tx.date == "2026-10-17"
        assert tx.source == "whatsapp"
        assert tx.requires_confirmation is False

    @pytest.mark.parametrize("keyword", ["receita", "recebi", "entrada", "ganho"])
    def test_income_keywords(self, keyword):
        tx = parse(f"{keyword} 1000 salario")
        assert tx.type == "income"
        assert tx.amount == 1000.0
        assert tx.title == "Salario"

    @pytest.mark.parametrize("keyword", ["gastei", "despesa", "paguei", "saida"])
    def test_expense_keywords(self, keyword):
        assert parse(f"{keyword} 20 uber").type == "expense"

    def test_signed_prefix(self):
        plus = parse("+100 freelance")
        minus = parse("-30 combustível")
        assert (plus.type, plus.amount, plus.title) == ("income", 100.0, "Freelance")
        assert (minus.type, minus.amount, minus.title) == ("expense", 30.0, "Combustível")

    def test_bare_amount_defaults_to_expense(self):
        tx = parse("45,90 padaria")
        assert tx.type == "expense"
        assert tx.amount == 45.90
        assert tx.title == "Padaria"

    def test_keyword_wins_over_bare(self):
        # "receita" would otherwise be ignored and the amount read as a bare expense
        assert parse("receita 200 aluguel").type == "income"

    def test_keyword_without_title_uses_default(self):
        assert parse("receita 300").title == "Receita"
        assert parse("gasto 12").title == "Despesa"

    def test_leading_preposition_removed(self):
        assert parse("gastei 25 no almoço").title == "Almoço"
        assert parse("paguei 80 para o encanador").title == "O encanador"

    def test_currency_noise_stripped(self):
        assert parse("gasto R$ 50 mercado").amount == 50.0
        assert parse("gastei 30 reais na farmácia").title == "Farmácia"

    def test_uppercase_input(self):
        tx = parse("GASTO 10 CAFÉ")
        assert tx.type == "expense"
        assert tx.title == "Café"


class TestRejections:
    @pytest.mark.parametrize("text", ["", "   ", "olá tudo bem?", "gasto mercado", "50"])
    def test_unparseable(self, text):
        assert parse(text) is None

    def test_too_long(self):
        assert parse("gasto 10 " + "a" * 500) is None

    def test_zero_amount(self):
        assert parse("gasto 0 nada") is None

    def test_above_limit(self):
        assert parse("gasto 50001 carro") is None

    def test_at_limit(self):
        tx = parse("gasto 50.000 carro")
        assert tx.amount == 50000.0
        assert tx.requires_confirmation is True


class TestTitle:
    def test_angle_brackets_removed(self):
        assert parse("gasto 10 <script>x").title == "Scriptx"

    def test_truncated(self):
        tx = parse("gasto 10 " + "b" * 150)
        assert len(tx.title) == 100

    def test_trailing_punctuation(self):
        assert parse("gasto 10 pizza!!").title == "Pizza"


class TestConfirmationThreshold:
    def test_exactly_1000_no_confirmation(self):
        assert parse("gasto 1000 tv").requires_confirmation is False

    def test_above_1000_needs_confirmation(self):
        assert parse("gasto 1.000,01 tv").requires_confirmation is True


class TestDates:
    def test_words(self):
        assert parse("gasto 10 pão ontem").date == "2026-10-16"
        assert parse("hoje gasto 10 pão").date == "2026-10-17"
        assert parse("gasto 10 pão amanhã").date == "2026-10-18"
        assert parse("gasto 10 pão hj").date == "2026-10-17"

    def test_date_removed_from_title(self):
        assert parse("gasto 10 pão ontem").title == "Pão"

    def test_numeric(self):
        assert parse("gasto 10 pão 05/10").date == "2026-10-05"
        assert parse("gasto 10 pão 05/10/25").date == "2025-10-05"
        assert parse("gasto 10 pão 05/10/2024").date == "2024-10-05"

    def test_invalid_numeric_date(self):
        assert parse_date_token("31/02", TODAY) is None
        assert parse_date_token("10/13", TODAY) is None

    def test_date_token_helper(self):
        assert parse_date_token("ontem", TODAY) == "2026-10-16"
        assert parse_date_token("Amanha", TODAY) == "2026-10-18"
        assert parse_date_token("qualquer", TODAY) is None


class TestAmounts:
    @pytest.mark.parametrize("raw,expected", [
        ("50", 50.0),
        ("50,90", 50.90),
        ("50.90", 50.90),
        ("50,5", 50.5),
        ("1.000", 1000.0),
        ("1.000,50", 1000.50),
        ("1,000.50", 1000.50),
        ("12.500", 12500.0),
        ("1,500", 1.5),
        ("12,500", 12.5),
        ("1.234.567,89", 1234567.89),
    ])
    def test_notations(self, raw, expected):
        assert parse_amount(raw) == expected

    def test_comma_is_decimal_in_messages(self):
        parsed = parse_transaction("gasto 1,500 pão", today=TODAY)
        assert parsed.amount == 1.5
        assert parsed.requires_confirmation is False

    def test_invalid(self):
        assert parse_amount("") is None
        assert parse_amount("abc") is None


class TestFormatting:
    def test_format_brl(self):
        assert format_brl(1234.5) == "R$ 1.234,50"
        assert format_brl(0) == "R$ 0,00"
        assert format_brl(-10) == "-R$ 10,00"

    def test_confirmation(self):
        tx = ParsedTransaction(amount=50, type="expense", title="Mercado", date="2026-10-17")
        assert format_confirmation(tx) == "✅ Despesa de R$ 50,00 registrada: Mercado"


def test_record_transaction_inserts_row(fake_db):
    tx = parse("receita 150 bico")
    row = record_transaction("user-1", tx)
    assert row["user_id"] == "user-1"
    stored = fake_db.rows("transactions")
    assert len(stored) == 1
    assert stored[0]["type"] == "income"
    assert stored[0]["amount"] == 150.0
    assert stored[0]["source"] == "whatsapp"
    assert "requires_confirmation" not in stored[0]
