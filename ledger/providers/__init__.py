# ledger/providers/__init__.py
"""
Provider registry: provider name -> PaymentProvider instance built from BillingConfig.
"""
import logging
from typing import Dict, List, Optional

from ledger.config import BillingConfig
from ledger.errors import ProviderError
from ledger.providers.base import CanonicalEvent, PaymentProvider
from ledger.providers.paypal_provider import PayPalProvider
from ledger.providers.razorpay_provider import RazorpayProvider
from ledger.providers.stripe_provider import StripeProvider

log = logging.getLogger("ledger.providers")

PROVIDERS = {
    StripeProvider.name: StripeProvider,
    RazorpayProvider.name: RazorpayProvider,
    PayPalProvider.name: PayPalProvider,
}


class ProviderRegistry:
    def __init__(self, config: Optional[BillingConfig] = None, providers: Optional[Dict[str, PaymentProvider]] = None):
        self.config = config or BillingConfig()
        self._instances: Dict[str, PaymentProvider] = dict(providers or {})

    def get(self, name: str) -> PaymentProvider:
        name = (name or "").lower()
        if name not in self._instances:
            cls = PROVIDERS.get(name)
            if cls is None:
                raise ProviderError("not_configured", f"unknown payment provider {name!r}")
            self._instances[name] = cls(
                self.config.provider(name),
                timeout=self.config.provider_timeout_seconds,
                tolerance=self.config.webhook_tolerance_seconds,
            )
        return self._instances[name]

    def available(self) -> List[str]:
        names = sorted(set(PROVIDERS) | set(self._instances))
        return [n for n in names if self.get(n).is_available()]


def get_provider(name: str, config: Optional[BillingConfig] = None) -> PaymentProvider:
    return ProviderRegistry(config).get(name)


def list_available_providers(config: Optional[BillingConfig] = None) -> List[str]:
    return ProviderRegistry(config).available()


def provider_enabled(name: str, config: Optional[BillingConfig] = None) -> bool:
    try:
        return get_provider(name, config).is_available()
    except ProviderError:
        return False


def available_payment_methods(config: Optional[BillingConfig] = None) -> List[str]:
    """Bank transfer is always offered; providers only when configured."""
    return ["bank"] + list_available_providers(config)


__all__ = [
    "CanonicalEvent",
    "PaymentProvider",
    "PayPalProvider",
    "ProviderRegistry",
    "RazorpayProvider",
    "StripeProvider",
    "PROVIDERS",
    "get_provider",
    "list_available_providers",
    "provider_enabled",
    "available_payment_methods",
]
