# tests/conftest.py

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import ledger.models  # noqa: F401
from ledger.collaborators import RecordingMailSender
from ledger.config import BillingConfig, ProviderConfig
from ledger.db import Base
from ledger.services.currency_service import CurrencyService
from ledger.services.invoice_service import InvoiceService
from ledger.services.order_service import OrderService

STRIPE_SECRET = "whsec_test_secret"
RAZORPAY_SECRET = "rzp_webhook_secret"


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, future=True, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def config():
    return BillingConfig(
        default_currency="EUR",
        invoice_due_days=14,
        subscription_grace_days=3,
        dunning_max_attempts=3,
        providers={
            "stripe": ProviderConfig(enabled=True, api_key="sk_test_123", webhook_secret=STRIPE_SECRET),
            "razorpay": ProviderConfig(
                enabled=True, api_key="rzp_test_key", api_secret="rzp_test_secret", webhook_secret=RAZORPAY_SECRET
            ),
        },
    )


@pytest.fixture
def eur(db, config):
    return CurrencyService(db, config).create("EUR", "Euro", symbol="€", precision=2)


@pytest.fixture
def mailer():
    return RecordingMailSender()


@pytest.fixture
def make_invoice(db, config, eur, mailer):
    """Confirmed order -> invoice for a single line item."""
    def _make(unit_price="100.00", quantity=1, tax_rate="0", owner_id=1, send=True, email="payer@example.com"):
        orders = OrderService(db, config)
        order = orders.create(
            owner_id,
            [{"name": "Consulting", "quantity": quantity, "unit_price": unit_price}],
            tax_rate=tax_rate,
            billing_snapshot={"name": "Test Payer", "email": email} if email else None,
        )
        orders.confirm(order)
        invoices = InvoiceService(db, config, mailer=mailer)
        invoice = invoices.create_from_order(order)
        if send:
            invoices.send(invoice)
        return invoice

    return _make
