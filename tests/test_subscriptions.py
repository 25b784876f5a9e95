# tests/test_subscriptions.py
from datetime import datetime, timedelta

import pytest

from ledger.errors import StateError, ValidationError
from ledger.services.payment_method_service import PaymentMethodService
from ledger.services.subscription_service import SubscriptionService, add_interval, slugify

NOW = datetime(2026, 1, 31, 12, 0)


@pytest.fixture
def subs(db, config, eur):
    return SubscriptionService(db, config)


@pytest.fixture
def plan(subs):
    return subs.create_type("Pro Monthly", "19.00", "eur", interval="month")


def test_add_interval_clamps_month_end():
    assert add_interval(NOW, "month") == datetime(2026, 2, 28, 12, 0)
    assert add_interval(NOW, "day", 3) == datetime(2026, 2, 3, 12, 0)
    assert add_interval(NOW, "year") == datetime(2027, 1, 31, 12, 0)
    with pytest.raises(ValidationError):
        add_interval(NOW, "fortnight")


def test_create_type_validates(subs):
    plan = subs.create_type("Team Plan!", "99", "usd", interval="year", trial_days=14)
    assert plan.slug == slugify("Team Plan!") == "team-plan"
    assert plan.currency == "USD"
    with pytest.raises(ValidationError) as exc:
        subs.create_type("Broken", "10", "EUR", interval="hour")
    assert exc.value.code == "invalid_interval"
    with pytest.raises(ValidationError):
        subs.create_type("Negative", "-1", "EUR")


def test_create_active_and_trialing(subs, plan):
    active = subs.create(1, plan.id, now=NOW)
    assert active.status == "active"
    assert active.current_period_end == datetime(2026, 2, 28, 12, 0)

    trialing = subs.create(2, plan.id, trial_days=7, now=NOW)
    assert trialing.status == "trialing"
    assert trialing.trial_end == trialing.current_period_end == NOW + timedelta(days=7)


def test_inactive_plan_rejected(subs, plan):
    subs.deactivate_type(plan.id)
    with pytest.raises(ValidationError) as exc:
        subs.create(1, plan.id, now=NOW)
    assert exc.value.code == "inactive_plan"


def test_foreign_payment_method_rejected(db, config, subs, plan):
    pm = PaymentMethodService(db, config).save(99, "stripe", "pm_other")
    with pytest.raises(ValidationError) as exc:
        subs.create(1, plan.id, payment_method_id=pm.id, now=NOW)
    assert exc.value.code == "invalid_payment_method"


def test_renew_advances_once_per_period(subs, plan):
    sub = subs.create(1, plan.id, trial_days=7, now=NOW)
    period_start = sub.current_period_end

    renewed = subs.renew(sub, period_start=period_start, now=period_start)
    assert renewed.status == "active"
    assert renewed.current_period_start == period_start
    assert renewed.current_period_end == add_interval(period_start, "month")

    again = subs.renew(sub, period_start=period_start, now=period_start)
    assert again.current_period_end == renewed.current_period_end


def test_past_due_grace_then_cancel(subs, plan, config):
    sub = subs.create(1, plan.id, now=NOW)
    failed_at = sub.current_period_end

    sub = subs.mark_past_due(sub, charge_id="ch_1", now=failed_at)
    assert sub.status == "past_due"
    assert sub.renewal_attempts == 1
    assert sub.grace_period_end == failed_at + timedelta(days=config.subscription_grace_days)

    # the same failed charge is counted once
    sub = subs.mark_past_due(sub, charge_id="ch_1", now=failed_at)
    assert sub.renewal_attempts == 1
    grace_end = sub.grace_period_end
    sub = subs.mark_past_due(sub, charge_id="ch_2", now=failed_at + timedelta(days=1))
    assert sub.renewal_attempts == 2
    assert sub.grace_period_end == grace_end

    assert subs.evaluate(sub, now=grace_end).status == "past_due"
    sub = subs.evaluate(sub, now=grace_end + timedelta(seconds=1))
    assert sub.status == "cancelled"
    assert sub.meta["cancel_reason"] == "grace period expired"

    with pytest.raises(StateError):
        subs.resolve_past_due(sub, now=grace_end + timedelta(days=1))
    with pytest.raises(StateError):
        subs.renew(sub, now=grace_end + timedelta(days=1))
    assert subs.get(sub.id).status == "cancelled"


def test_resolve_past_due(subs, plan):
    sub = subs.create(1, plan.id, now=NOW)
    period_start = sub.current_period_end
    subs.mark_past_due(sub, now=period_start)
    sub = subs.resolve_past_due(sub, period_start=period_start, now=period_start + timedelta(hours=5))
    assert sub.status == "active"
    assert sub.grace_period_end is None
    assert sub.renewal_attempts == 0
    assert sub.current_period_start == period_start


def test_pause_and_resume(subs, plan):
    sub = subs.create(1, plan.id, now=NOW)
    assert subs.pause(sub).status == "paused"
    with pytest.raises(StateError) as exc:
        subs.pause(sub)
    assert exc.value.code == "invalid_transition"
    assert subs.resume(sub).status == "active"
    with pytest.raises(StateError):
        subs.resume(sub)


def test_cancel_at_period_end(subs, plan):
    sub = subs.create(1, plan.id, now=NOW)
    sub = subs.cancel(sub)
    assert sub.status == "active"
    assert sub.cancel_at_period_end

    assert subs.evaluate(sub, now=NOW + timedelta(days=1)).status == "active"
    sub = subs.evaluate(sub, now=sub.current_period_end)
    assert sub.status == "cancelled"
    with pytest.raises(StateError):
        subs.cancel(sub, immediately=True)


def test_cancel_immediately_records_reason(subs, plan):
    sub = subs.cancel(subs.create(1, plan.id, now=NOW), immediately=True, reason="customer request", now=NOW)
    assert sub.status == "cancelled"
    assert sub.cancelled_at == NOW
    assert sub.meta["cancel_reason"] == "customer request"


def test_change_plan(subs, plan):
    yearly = subs.create_type("Pro Yearly", "190.00", "EUR", interval="year")
    sub = subs.create(1, plan.id, now=NOW)
    period_end = sub.current_period_end
    sub = subs.change_plan(sub, yearly.id)
    assert sub.subscription_type_id == yearly.id
    assert sub.current_period_end == period_end

    subs.deactivate_type(plan.id)
    with pytest.raises(ValidationError):
        subs.change_plan(sub, plan.id)
    subs.pause(sub)
    with pytest.raises(StateError):
        subs.change_plan(sub, yearly.id)


def test_delete_type(subs, plan):
    sub = subs.create(1, plan.id, now=NOW)
    with pytest.raises(StateError) as exc:
        subs.delete_type(plan.id)
    assert exc.value.code == "type_in_use"

    subs.cancel(sub, immediately=True, now=NOW)
    assert subs.delete_type(plan.id) is False
    assert subs.get_type(plan.id).active is False

    unused = subs.create_type("Unused", "5", "EUR")
    assert subs.delete_type(unused.id) is True
    assert [p.id for p in subs.list_types(active_only=False)] == [plan.id]
