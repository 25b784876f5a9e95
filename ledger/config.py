# ledger/config.py
import os
from decimal import Decimal
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

# =====================================================
# ENVIRONMENT
# =====================================================
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ledger.db").strip()
DB_ECHO = os.getenv("DB_ECHO", "false").lower() in ("1", "true", "yes")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "changeme_admin_key")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_ENABLED = os.getenv("STRIPE_ENABLED", "false").lower() in ("1", "true", "yes")

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
RAZORPAY_ENABLED = os.getenv("RAZORPAY_ENABLED", "false").lower() in ("1", "true", "yes")

PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "")
PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID", "")
PAYPAL_ENABLED = os.getenv("PAYPAL_ENABLED", "false").lower() in ("1", "true", "yes")
PAYPAL_MODE = os.getenv("PAYPAL_MODE", "sandbox").lower()

# Scheduler settings
BILLING_TIMEZONE = os.getenv("BILLING_TIMEZONE", "UTC")
RENEWAL_HOUR = int(os.getenv("RENEWAL_HOUR", "6"))
DUNNING_INTERVAL_MIN = int(os.getenv("DUNNING_INTERVAL_MIN", "60"))
OVERDUE_HOUR = int(os.getenv("OVERDUE_HOUR", "1"))
SCHEDULER_ENABLED = os.getenv("BILLING_SCHEDULER_ENABLED", "false").lower() in ("1", "true", "yes")

_ENV_PROVIDERS = {
    "stripe": (STRIPE_ENABLED, STRIPE_SECRET_KEY, "", STRIPE_WEBHOOK_SECRET),
    "razorpay": (RAZORPAY_ENABLED, RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET, RAZORPAY_WEBHOOK_SECRET),
    "paypal": (PAYPAL_ENABLED, PAYPAL_CLIENT_ID, PAYPAL_CLIENT_SECRET, PAYPAL_WEBHOOK_ID),
}


# =====================================================
# BILLING CONFIG
# =====================================================
class ProviderConfig(BaseModel):
    enabled: bool = False
    api_key: str = ""
    api_secret: str = ""
    webhook_secret: str = ""
    mode: str = "live"                     # paypal: sandbox / live


class BillingConfig(BaseModel):
    """
    Billing behaviour passed explicitly into every service.
    Build it with load_config() at a request/job boundary, or directly in tests.
    """
    default_currency: str = "EUR"
    tax_enabled: bool = False
    default_tax_rate: Decimal = Decimal("0")
    invoice_prefix: str = "INV"
    order_prefix: str = "ORD"
    receipt_prefix: str = "RCP"
    transaction_prefix: str = "TXN"
    invoice_due_days: int = 14
    payment_terms: Optional[str] = None
    bank_details: Dict[str, Any] = Field(default_factory=dict)
    subscription_grace_days: int = 3
    dunning_max_attempts: int = 3
    renewal_lookahead_hours: int = 24
    webhook_tolerance_seconds: int = 300
    provider_timeout_seconds: int = 30
    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)

    def provider(self, name: str) -> ProviderConfig:
        return self.providers.get(name) or ProviderConfig()


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def load_config(settings=None) -> BillingConfig:
    """
    Read billing settings once from the settings store (key/value),
    falling back to environment values for provider credentials.
    """
    def get(key, default=None):
        if settings is None:
            return default
        value = settings.get(key, default)
        return default if value in (None, "") else value

    providers = {}
    for name, (enabled, key, secret, webhook_secret) in _ENV_PROVIDERS.items():
        providers[name] = ProviderConfig(
            enabled=_as_bool(get(f"billing_{name}_enabled", enabled)),
            api_key=get(f"billing_{name}_api_key", key),
            api_secret=get(f"billing_{name}_api_secret", secret),
            webhook_secret=get(f"billing_{name}_webhook_secret", webhook_secret),
            mode=str(get(f"billing_{name}_mode", PAYPAL_MODE if name == "paypal" else "live")).lower(),
        )

    bank_details = get("billing_bank_details", {})
    if not isinstance(bank_details, dict):
        bank_details = {"details": str(bank_details)}

    return BillingConfig(
        default_currency=str(get("billing_default_currency", "EUR")).upper(),
        tax_enabled=_as_bool(get("billing_tax_enabled", False)),
        default_tax_rate=Decimal(str(get("billing_default_tax_rate", "0"))),
        invoice_prefix=get("billing_invoice_prefix", "INV"),
        order_prefix=get("billing_order_prefix", "ORD"),
        receipt_prefix=get("billing_receipt_prefix", "RCP"),
        transaction_prefix=get("billing_transaction_prefix", "TXN"),
        invoice_due_days=int(get("billing_invoice_due_days", 14)),
        payment_terms=get("billing_payment_terms", None),
        bank_details=bank_details,
        subscription_grace_days=int(get("billing_subscription_grace_days", 3)),
        dunning_max_attempts=int(get("billing_dunning_max_attempts", 3)),
        renewal_lookahead_hours=int(get("billing_renewal_lookahead_hours", 24)),
        webhook_tolerance_seconds=int(get("billing_webhook_tolerance_seconds", 300)),
        provider_timeout_seconds=int(get("billing_provider_timeout_seconds", 30)),
        providers=providers,
    )
