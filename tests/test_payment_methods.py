# tests/test_payment_methods.py
from datetime import date

import pytest

from ledger.errors import ProviderError, StateError
from ledger.providers import ProviderRegistry
from ledger.services.invoice_service import InvoiceService
from ledger.services.payment_method_service import PaymentMethodService, expired, usable
from tests.fakes import FakeProvider


@pytest.fixture
def fake(config):
    return FakeProvider(config.provider("stripe"))


@pytest.fixture
def registry(config, fake):
    return ProviderRegistry(config, providers={"stripe": fake})


def test_first_method_becomes_default(db, config):
    methods = PaymentMethodService(db, config)
    first = methods.save(1, "stripe", "pm_a", brand="visa", last4="4242")
    second = methods.save(1, "stripe", "pm_b", brand="mastercard", last4="5555")
    assert first.is_default
    assert not second.is_default

    methods.set_default(second)
    assert methods.get_default(1).id == second.id
    assert not methods.get(first.id).is_default


def test_save_refreshes_existing_method(db, config):
    methods = PaymentMethodService(db, config)
    pm = methods.save(1, "stripe", "pm_a", exp_month=1, exp_year=2026)
    again = methods.save(1, "stripe", "pm_a", exp_month=2, exp_year=2030)
    assert again.id == pm.id
    assert again.exp_year == 2030
    assert len(methods.list_payment_methods(1)) == 1

    with pytest.raises(StateError):
        methods.save(2, "stripe", "pm_a")


def test_remove_detaches_and_promotes_successor(db, config, registry, fake):
    methods = PaymentMethodService(db, config)
    first = methods.save(1, "stripe", "pm_a", provider_customer_id="cus_1")
    second = methods.save(1, "stripe", "pm_b", provider_customer_id="cus_1")

    removed = methods.remove(first, registry=registry)

    assert removed.status == "detached"
    assert fake.detached == ["pm_a"]
    assert methods.get_default(1).id == second.id
    assert [pm.id for pm in methods.list_payment_methods(1)] == [second.id]
    with pytest.raises(StateError):
        methods.set_default(first)


def test_remove_tolerates_provider_without_detach(db, config):
    methods = PaymentMethodService(db, config)
    pm = methods.save(1, "razorpay", "token_1")
    assert methods.remove(pm, registry=ProviderRegistry(config)).status == "detached"


def test_expiry_predicates(db, config):
    pm = PaymentMethodService(db, config).save(1, "stripe", "pm_a", exp_month=3, exp_year=2026)
    assert not expired(pm, date(2026, 3, 31))
    assert expired(pm, date(2026, 4, 1))
    assert usable(pm, date(2026, 3, 1))
    assert not usable(pm, date(2027, 1, 1))
    assert not usable(None)


def test_setup_session_reuses_known_customer(db, config, registry, fake):
    methods = PaymentMethodService(db, config)
    first = methods.setup_session(4, "stripe", "https://ok", "https://cancel", registry=registry)
    assert first["customer_id"] == "cus_4"
    assert fake.setups == [(4, None)]

    methods.save(4, "stripe", "pm_a", provider_customer_id="cus_known")
    methods.setup_session(4, "stripe", "https://ok", "https://cancel", registry=registry)
    assert fake.setups[-1] == (4, "cus_known")


def test_checkout_session_for_open_balance(db, config, registry, fake, make_invoice):
    from ledger.services.transaction_service import TransactionService

    invoice = make_invoice(unit_price="100.00")
    TransactionService(db, config).record_payment(invoice, "30.00")
    invoices = InvoiceService(db, config)

    session = invoices.checkout_session(invoice, "stripe", "https://ok", "https://cancel", registry=registry)

    assert session["id"] == f"cs_{invoice.id}"
    assert fake.checkouts[-1][1] == invoices.remaining_amount(invoice)

    with pytest.raises(ProviderError) as exc:
        invoices.checkout_session(invoice, "mollie", "https://ok", "https://cancel", registry=registry)
    assert exc.value.code == "not_configured"
