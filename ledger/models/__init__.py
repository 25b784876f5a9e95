# ledger/models/__init__.py
"""
Models aggregator, so callers can `from ledger.models import Invoice, Transaction, ...`
and init_db() registers every table on Base.
"""
from ledger.models.base import _now
from ledger.models.currency_model import Currency
from ledger.models.billing_profile_model import BillingProfile
from ledger.models.order_model import Order, ORDER_STATUSES
from ledger.models.invoice_model import Invoice, AuditEntry, INVOICE_STATUSES
from ledger.models.transaction_model import Transaction
from ledger.models.subscription_model import (
    SubscriptionType,
    Subscription,
    PaymentMethod,
    SUBSCRIPTION_STATUSES,
    LIVE_STATUSES,
    INTERVALS,
)
from ledger.models.webhook_model import WebhookEvent
from ledger.models.settings_model import Setting, NumberSequence

__all__ = [
    "_now",
    "Currency",
    "BillingProfile",
    "Order",
    "ORDER_STATUSES",
    "Invoice",
    "AuditEntry",
    "INVOICE_STATUSES",
    "Transaction",
    "SubscriptionType",
    "Subscription",
    "PaymentMethod",
    "SUBSCRIPTION_STATUSES",
    "LIVE_STATUSES",
    "INTERVALS",
    "WebhookEvent",
    "Setting",
    "NumberSequence",
]
