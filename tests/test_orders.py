# tests/test_orders.py
from decimal import Decimal

import pytest

from ledger.collaborators import TaxTable
from ledger.config import BillingConfig
from ledger.errors import StateError, ValidationError
from ledger.services.billing_profile_service import BillingProfileService
from ledger.services.currency_service import CurrencyService
from ledger.services.order_service import OrderService, build_line_items, compute_totals


def test_order_totals_two_items_at_twenty_percent(db, config, eur):
    order = OrderService(db, config).create(
        1, [{"name": "Widget", "quantity": 2, "unit_price": "50.00"}], tax_rate="0.20"
    )
    assert order.subtotal == Decimal("100.00")
    assert order.tax_amount == Decimal("20.00")
    assert order.total == Decimal("120.00")
    assert order.status == "draft"
    assert order.order_number.startswith("ORD-")


def test_totals_invariant_after_update(db, config, eur):
    orders = OrderService(db, config)
    order = orders.create(1, [{"name": "A", "quantity": 1, "unit_price": "10.00"}], tax_rate="0.2")
    order = orders.update(order, line_items=[
        {"name": "A", "quantity": 3, "unit_price": "9.99"},
        {"name": "B", "quantity": "0.5", "unit_price": "1.01"},
    ])
    line_sum = sum(Decimal(li["quantity"]) * Decimal(li["unit_price"]) for li in order.line_items)
    assert order.subtotal == Decimal("30.48")
    assert order.subtotal == line_sum.quantize(Decimal("0.01"))
    assert order.total == order.subtotal + order.tax_amount


def test_subtotal_matches_stored_unit_prices(db, config, eur):
    order = OrderService(db, config).create(1, [
        {"name": "A", "quantity": 3, "unit_price": "9.99"},
        {"name": "B", "quantity": 7, "unit_price": "0.01"},
    ], tax_rate="0")
    line_sum = sum(Decimal(li["quantity"]) * Decimal(li["unit_price"]) for li in order.line_items)
    assert order.subtotal == line_sum == Decimal("30.04")


def test_sub_cent_unit_price_rejected(db, config, eur):
    with pytest.raises(ValidationError) as exc:
        OrderService(db, config).create(1, [{"name": "x", "quantity": 3, "unit_price": "0.005"}], tax_rate="0")
    assert exc.value.code == "invalid_line_item"


def test_unit_price_precision_follows_currency():
    items = build_line_items([{"name": "Yen", "quantity": 2, "unit_price": "150"}], places=0)
    assert items[0]["total"] == "300"
    with pytest.raises(ValidationError):
        build_line_items([{"name": "Yen", "quantity": 1, "unit_price": "150.5"}], places=0)


@pytest.mark.parametrize("item", [
    {"name": "X", "quantity": 0, "unit_price": "1"},
    {"name": "X", "quantity": -1, "unit_price": "1"},
    {"name": "X", "quantity": 1, "unit_price": "-0.01"},
    {"name": "", "quantity": 1, "unit_price": "1"},
])
def test_invalid_line_items_rejected(item):
    with pytest.raises(ValidationError) as exc:
        build_line_items([item])
    assert exc.value.code == "invalid_line_item"


def test_zero_price_line_is_allowed():
    items = build_line_items([{"name": "Free", "quantity": 1, "unit_price": 0}])
    assert compute_totals(items)["total"] == Decimal("0.00")


def test_disabled_currency_rejected(db, config, eur):
    currencies = CurrencyService(db, config)
    currencies.create("USD", "US Dollar")
    currencies.disable("USD")
    with pytest.raises(ValidationError) as exc:
        OrderService(db, config).create(1, [{"name": "A", "unit_price": 1}], currency="USD")
    assert exc.value.code == "invalid_currency"


def test_confirm_only_from_draft_or_pending(db, config, eur):
    orders = OrderService(db, config)
    order = orders.create(1, [{"name": "A", "unit_price": 5}])
    orders.submit(order)
    orders.confirm(order)
    with pytest.raises(StateError) as exc:
        orders.confirm(order)
    assert exc.value.code == "invalid_transition"


def test_mark_paid_requires_confirmed(db, config, eur):
    orders = OrderService(db, config)
    order = orders.create(1, [{"name": "A", "unit_price": 5}])
    with pytest.raises(StateError):
        orders.mark_paid(order)
    orders.confirm(order)
    assert orders.mark_paid(order).status == "paid"


def test_cancel_finalized_order_fails(db, config, eur):
    orders = OrderService(db, config)
    order = orders.create(1, [{"name": "A", "unit_price": 5}])
    orders.cancel(order, reason="customer changed mind")
    assert orders.get(order.id).status == "cancelled"
    assert "customer changed mind" in orders.get(order.id).internal_notes
    with pytest.raises(StateError) as exc:
        orders.cancel(order)
    assert exc.value.code == "already_finalized"


def test_confirmed_order_is_not_editable(db, config, eur):
    orders = OrderService(db, config)
    order = orders.create(1, [{"name": "A", "unit_price": 5}])
    orders.confirm(order)
    with pytest.raises(StateError):
        orders.update(order, notes="late edit")


def test_tax_rate_from_profile_country(db, eur):
    config = BillingConfig(tax_enabled=True, default_tax_rate="0.10")
    lookup = TaxTable({"EE": "0.22"})
    BillingProfileService(db, config, tax_lookup=lookup).create(
        7, first_name="Mari", last_name="Tamm", country="ee", email="mari@example.com"
    )
    order = OrderService(db, config, tax_lookup=lookup).create(7, [{"name": "A", "unit_price": "100"}])
    assert order.tax_rate == Decimal("0.22")
    assert order.total == Decimal("122.00")
    assert order.billing_snapshot["email"] == "mari@example.com"

    other = OrderService(db, config, tax_lookup=lookup).create(8, [{"name": "A", "unit_price": "100"}])
    assert other.tax_rate == Decimal("0.10")


def test_order_numbers_increase(db, config, eur):
    orders = OrderService(db, config)
    a = orders.create(1, [{"name": "A", "unit_price": 1}])
    b = orders.create(1, [{"name": "B", "unit_price": 1}])
    assert int(b.order_number.rsplit("-", 1)[1]) == int(a.order_number.rsplit("-", 1)[1]) + 1
