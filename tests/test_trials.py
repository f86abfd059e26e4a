"""Tests for app trials, coupon trials and the expiry sweep."""

from datetime import datetime, timedelta, timezone

import pytest

from financasai.errors import NotFound, ValidationError
from financasai.tools.trials import activate_trial, activate_trial_coupon, expire_trials, validate_coupon

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
USER = {"id": "user-1", "email": "ana@example.com"}


@pytest.fixture
def plans(fake_db):
    fake_db.add("subscription_plans", {"id": "plan-trial", "name": "trial", "is_active": True})
    fake_db.add("subscription_plans", {"id": "plan-premium", "name": "premium", "is_active": True})


def _coupon(fake_db, **overrides):
    row = {"id": "coupon-1", "code": "BEMVINDO", "is_active": True, "max_uses": None,
           "current_uses": 0, "expires_at": None}
    row.update(overrides)
    return fake_db.add("discount_coupons", row)


def _paid_subscription(fake_db):
    fake_db.add("user_subscriptions", {
        "user_id": "user-1", "plan_id": "plan-premium", "status": "active", "billing_cycle": "monthly",
        "stripe_subscription_id": "sub_paid", "current_period_end": (NOW + timedelta(days=20)).isoformat(),
    })
    fake_db.add("user_roles", {"user_id": "user-1", "role": "premium"})


def _assert_still_paid(fake_db):
    [sub] = fake_db.rows("user_subscriptions")
    assert (sub["plan_id"], sub["billing_cycle"], sub["stripe_subscription_id"]) == ("plan-premium", "monthly", "sub_paid")
    assert [r["role"] for r in fake_db.rows("user_roles")] == ["premium"]


class TestActivateTrial:
    def test_activates_for_fourteen_days(self, fake_db, plans):
        result = activate_trial(USER, now=NOW)
        assert result["success"] is True
        assert result["trial_end"] == (NOW + timedelta(days=14)).isoformat()
        [sub] = fake_db.rows("user_subscriptions")
        assert (sub["plan_id"], sub["status"], sub["billing_cycle"]) == ("plan-trial", "active", "trial")
        [role] = fake_db.rows("user_roles")
        assert (role["role"], role["expires_at"]) == ("trial", result["trial_end"])

    def test_only_once(self, fake_db, plans):
        activate_trial(USER, now=NOW)
        with pytest.raises(ValidationError, match="Trial já utilizado"):
            activate_trial(USER, now=NOW)

    def test_paid_subscriber_keeps_subscription(self, fake_db, plans):
        _paid_subscription(fake_db)
        with pytest.raises(ValidationError, match="assinatura ativa"):
            activate_trial(USER, now=NOW)
        _assert_still_paid(fake_db)
        assert expire_trials(now=NOW + timedelta(days=15))["count"] == 0
        assert fake_db.rows("user_subscriptions")[0]["status"] == "active"

    def test_coupon_trial_user_may_start_app_trial(self, fake_db, plans):
        fake_db.add("user_subscriptions", {"user_id": "user-1", "plan_id": "plan-premium",
                                           "status": "active", "billing_cycle": "trial"})
        assert activate_trial(USER, now=NOW)["success"] is True

    def test_missing_trial_plan(self, fake_db):
        with pytest.raises(NotFound):
            activate_trial(USER, now=NOW)


class TestCoupons:
    def test_code_is_normalized(self, fake_db):
        _coupon(fake_db)
        assert validate_coupon("  bemvindo ", now=NOW)["id"] == "coupon-1"

    @pytest.mark.parametrize("code,overrides,message", [
        ("", {}, "couponCode is required"),
        ("OUTRO", {}, "Cupom inválido ou inativo"),
        ("BEMVINDO", {"is_active": False}, "Cupom inválido ou inativo"),
        ("BEMVINDO", {"expires_at": "2026-10-01T00:00:00+00:00"}, "Cupom expirado"),
        ("BEMVINDO", {"max_uses": 5, "current_uses": 5}, "Cupom atingiu limite de uso"),
    ])
    def test_rejections(self, fake_db, code, overrides, message):
        _coupon(fake_db, **overrides)
        with pytest.raises(ValidationError, match=message):
            validate_coupon(code, now=NOW)

    def test_redeem(self, fake_db, plans):
        _coupon(fake_db, max_uses=10, current_uses=2)
        result = activate_trial_coupon(USER, "BEMVINDO", now=NOW)
        assert result["expires_at"] == (NOW + timedelta(days=30)).isoformat()
        [sub] = fake_db.rows("user_subscriptions")
        assert (sub["plan_id"], sub["payment_gateway"], sub["billing_cycle"]) == ("plan-premium", "coupon", "trial")
        assert fake_db.rows("user_coupons")[0]["coupon_id"] == "coupon-1"
        assert fake_db.rows("discount_coupons")[0]["current_uses"] == 3
        assert fake_db.rows("user_roles")[0]["role"] == "trial"

    def test_usage_bookkeeping_failure_does_not_block(self, fake_db, plans):
        _coupon(fake_db)
        fake_db.fail_ops.add(("user_coupons", "insert"))
        result = activate_trial_coupon(USER, "BEMVINDO", now=NOW)
        assert result["success"] is True
        assert fake_db.rows("user_subscriptions")[0]["status"] == "active"

    def test_same_coupon_only_once(self, fake_db, plans):
        _coupon(fake_db)
        activate_trial_coupon(USER, "BEMVINDO", now=NOW)
        with pytest.raises(ValidationError, match="Cupom já utilizado"):
            activate_trial_coupon(USER, "BEMVINDO", now=NOW + timedelta(days=1))
        assert fake_db.rows("discount_coupons")[0]["current_uses"] == 1
        assert len(fake_db.rows("user_coupons")) == 1

    def test_paid_subscriber_cannot_redeem(self, fake_db, plans):
        _coupon(fake_db)
        _paid_subscription(fake_db)
        with pytest.raises(ValidationError, match="assinatura ativa"):
            activate_trial_coupon(USER, "BEMVINDO", now=NOW)
        _assert_still_paid(fake_db)
        assert fake_db.rows("discount_coupons")[0]["current_uses"] == 0

    def test_without_premium_plan(self, fake_db):
        _coupon(fake_db)
        with pytest.raises(ValidationError, match="Plano premium não encontrado"):
            activate_trial_coupon(USER, "BEMVINDO", now=NOW)


class TestExpireTrials:
    def _sub(self, fake_db, user_id, plan_id, end, billing_cycle="trial", status="active"):
        return fake_db.add("user_subscriptions", {
            "user_id": user_id, "plan_id": plan_id, "status": status,
            "billing_cycle": billing_cycle, "current_period_end": end.isoformat(),
        })

    def test_expires_past_trials(self, fake_db, plans):
        self._sub(fake_db, "u-trial", "plan-trial", NOW - timedelta(hours=1))
        self._sub(fake_db, "u-coupon", "plan-premium", NOW - timedelta(days=1))
        self._sub(fake_db, "u-current", "plan-trial", NOW + timedelta(days=3))
        self._sub(fake_db, "u-paid", "plan-premium", NOW - timedelta(days=1), billing_cycle="monthly")

        result = expire_trials(now=NOW)

        assert result["count"] == 2
        assert sorted(result["processed_users"]) == ["u-coupon", "u-trial"]
        statuses = {r["user_id"]: r["status"] for r in fake_db.rows("user_subscriptions")}
        assert statuses == {"u-trial": "expired", "u-coupon": "expired", "u-current": "active", "u-paid": "active"}
        assert {r["user_id"]: r["role"] for r in fake_db.rows("user_roles")} == {"u-trial": "free", "u-coupon": "free"}

    def test_nothing_to_expire(self, fake_db, plans):
        result = expire_trials(now=NOW)
        assert result == {"success": True, "message": "Nenhum trial expirado", "count": 0, "processed_users": []}
