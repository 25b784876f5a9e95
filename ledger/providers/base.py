# -----------------------------------------------------------
# ledger/providers/base.py
# Uniform payment provider contract
# -----------------------------------------------------------
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ledger.config import ProviderConfig
from ledger.errors import ProviderError

# canonical event types produced by handle_webhook_event()
CHECKOUT_COMPLETED = "checkout.completed"
CHECKOUT_EXPIRED = "checkout.expired"
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
REFUND_CREATED = "refund.created"
SETUP_COMPLETED = "setup.completed"

EVENT_TYPES = (
    CHECKOUT_COMPLETED,
    CHECKOUT_EXPIRED,
    PAYMENT_SUCCEEDED,
    PAYMENT_FAILED,
    REFUND_CREATED,
    SETUP_COMPLETED,
)


class CanonicalEvent(BaseModel):
    """
    Provider-neutral webhook event.

    data keys (when present): mode, invoice_id, subscription_id, period_start,
    owner_id, amount_minor (or amount, major units as a decimal string), currency, provider_transaction_id, refund_id,
    payment_method_id, customer_id, error_code, card{brand,last4,exp_month,exp_year}
    """
    type: str
    provider_event_id: str
    data: Dict[str, Any] = Field(default_factory=dict)


class PaymentProvider(ABC):
    """
    One subclass per external provider. Amounts cross this boundary as Decimals;
    each implementation converts to its minor units with ledger.money.
    """
    name = "provider"
    signature_header = ""

    def __init__(self, config: Optional[ProviderConfig] = None, timeout: int = 30, tolerance: int = 300):
        self.config = config or ProviderConfig()
        self.timeout = timeout
        self.tolerance = tolerance

    # -------------------------------------------------
    # AVAILABILITY
    # -------------------------------------------------
    def is_available(self) -> bool:
        return bool(self.config.enabled and self.config.api_key)

    def require_available(self) -> None:
        if not self.is_available():
            raise ProviderError("not_configured", f"{self.name} is not configured")

    @property
    def webhook_secret(self) -> str:
        return self.config.webhook_secret or ""

    # -------------------------------------------------
    # OPERATIONS
    # -------------------------------------------------
    @abstractmethod
    def create_checkout_session(self, invoice, success_url: str, cancel_url: str, **opts) -> Dict[str, Any]:
        """-> {id, url, expires_at}"""

    @abstractmethod
    def create_setup_session(self, owner_id: int, success_url: str, cancel_url: str, **opts) -> Dict[str, Any]:
        """-> {id, url}"""

    @abstractmethod
    def charge_saved_method(self, payment_method, amount: Decimal, **opts) -> Dict[str, Any]:
        """-> {id, provider_transaction_id, status}; status is succeeded or pending."""

    @abstractmethod
    def create_refund(self, provider_transaction_id: str, amount: Optional[Decimal] = None,
                      reason: Optional[str] = None, **opts) -> Dict[str, Any]:
        """-> {id, status}"""

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        """True, or raises WebhookError(invalid_signature)."""

    @abstractmethod
    def handle_webhook_event(self, payload: Dict[str, Any]) -> Optional[CanonicalEvent]:
        """Canonical event, or None for event types this ledger does not act on."""

    @abstractmethod
    def get_payment_method_details(self, provider_payment_method_id: str, **opts) -> Dict[str, Any]:
        """-> {type, brand, last4, exp_month, exp_year}"""

    def detach_payment_method(self, provider_payment_method_id: str, **opts) -> None:
        raise ProviderError("not_supported", f"{self.name} cannot detach payment methods")

    def capture_checkout(self, session_id: str, **opts) -> Dict[str, Any]:
        raise ProviderError("not_supported", f"{self.name} captures checkout payments itself")

    def signature_from_headers(self, headers) -> Optional[str]:
        return headers.get(self.signature_header)
