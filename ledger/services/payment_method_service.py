# -----------------------------------------------------------
# ledger/services/payment_method_service.py
# Saved provider payment methods (display data only)
# -----------------------------------------------------------
import logging
from datetime import date
from typing import List, Optional

from ledger.errors import ProviderError, StateError
from ledger.models import PaymentMethod
from ledger.services.base import BaseService, _id

log = logging.getLogger("ledger.payment_method_service")


def expired(pm: PaymentMethod, today: Optional[date] = None) -> bool:
    if not pm.exp_month or not pm.exp_year:
        return False
    today = today or date.today()
    return pm.exp_year < today.year or (pm.exp_year == today.year and pm.exp_month < today.month)


def usable(pm: Optional[PaymentMethod], today: Optional[date] = None) -> bool:
    return pm is not None and pm.status == "active" and not expired(pm, today)


class PaymentMethodService(BaseService):

    def get(self, payment_method_id: int) -> PaymentMethod:
        return self._get(PaymentMethod, payment_method_id, "payment method")

    def list_payment_methods(self, owner_id: int, include_inactive: bool = False) -> List[PaymentMethod]:
        q = self.db.query(PaymentMethod).filter(PaymentMethod.owner_id == owner_id)
        if not include_inactive:
            q = q.filter(PaymentMethod.status == "active")
        return q.order_by(PaymentMethod.is_default.desc(), PaymentMethod.id).all()

    def get_default(self, owner_id: int) -> Optional[PaymentMethod]:
        return (
            self.db.query(PaymentMethod)
            .filter(
                PaymentMethod.owner_id == owner_id,
                PaymentMethod.is_default.is_(True),
                PaymentMethod.status == "active",
            )
            .first()
        )

    def save(
        self,
        owner_id: int,
        provider: str,
        provider_payment_method_id: str,
        provider_customer_id: Optional[str] = None,
        type: str = "card",
        brand: Optional[str] = None,
        last4: Optional[str] = None,
        exp_month: Optional[int] = None,
        exp_year: Optional[int] = None,
        label: Optional[str] = None,
        make_default: bool = False,
    ) -> PaymentMethod:
        """Insert or refresh a saved method; the owner's first active method becomes default."""
        with self.atomic(f"save_payment_method owner={owner_id}"):
            pm = (
                self.db.query(PaymentMethod)
                .filter(
                    PaymentMethod.provider == provider,
                    PaymentMethod.provider_payment_method_id == provider_payment_method_id,
                )
                .first()
            )
            if pm is None:
                pm = PaymentMethod(
                    owner_id=owner_id,
                    provider=provider,
                    provider_payment_method_id=provider_payment_method_id,
                    is_default=False,
                )
                self.db.add(pm)
            elif pm.owner_id != owner_id:
                raise StateError("invalid_transition", "payment method belongs to another owner")
            pm.provider_customer_id = provider_customer_id or pm.provider_customer_id
            pm.type = type or pm.type or "card"
            pm.brand = brand or pm.brand
            pm.last4 = last4 or pm.last4
            pm.exp_month = exp_month or pm.exp_month
            pm.exp_year = exp_year or pm.exp_year
            pm.label = label or pm.label
            pm.status = "active"
            self.db.flush()
            if make_default or self.get_default(owner_id) is None:
                self._make_default(pm)
        log.info("Payment method %s saved for owner=%s (%s)", pm.id, owner_id, pm.display_name)
        return pm

    def set_default(self, payment_method) -> PaymentMethod:
        with self.atomic(f"set_default_payment_method {_id(payment_method)}"):
            pm = self.get(_id(payment_method))
            if pm.status != "active":
                raise StateError("invalid_transition", f"payment method {pm.id} is {pm.status}")
            self._make_default(pm)
        return pm

    def _make_default(self, pm: PaymentMethod) -> None:
        others = (
            self.db.query(PaymentMethod)
            .filter(
                PaymentMethod.owner_id == pm.owner_id,
                PaymentMethod.is_default.is_(True),
                PaymentMethod.id != pm.id,
            )
            .with_for_update()
            .all()
        )
        for other in others:
            other.is_default = False
        pm.is_default = True
        self.db.flush()

    def remove(self, payment_method, registry=None) -> PaymentMethod:
        """Detach at the provider when it supports it, then mark the method detached."""
        pm = self.get(_id(payment_method))
        if registry is not None:
            try:
                registry.get(pm.provider).detach_payment_method(
                    pm.provider_payment_method_id, customer_id=pm.provider_customer_id
                )
            except ProviderError as e:
                if e.code not in ("not_supported", "not_configured"):
                    raise
                log.info("Provider %s did not detach %s: %s", pm.provider, pm.provider_payment_method_id, e.code)

        with self.atomic(f"remove_payment_method {pm.id}"):
            pm = self._lock(PaymentMethod, pm.id, "payment method")
            was_default = pm.is_default
            pm.status = "detached"
            pm.is_default = False
            self.db.flush()
            if was_default:
                successor = (
                    self.db.query(PaymentMethod)
                    .filter(PaymentMethod.owner_id == pm.owner_id, PaymentMethod.status == "active")
                    .order_by(PaymentMethod.id)
                    .first()
                )
                if successor is not None:
                    successor.is_default = True
        log.info("Payment method %s detached", pm.id)
        return pm

    def setup_session(self, owner_id: int, provider_name: str, success_url: str, cancel_url: str,
                      registry=None, customer_email: Optional[str] = None) -> dict:
        """Hosted page that saves a method for later charges; the method arrives by webhook."""
        from ledger.providers import ProviderRegistry

        known = (
            self.db.query(PaymentMethod.provider_customer_id)
            .filter(
                PaymentMethod.owner_id == owner_id,
                PaymentMethod.provider == provider_name,
                PaymentMethod.provider_customer_id.isnot(None),
            )
            .first()
        )
        provider = (registry or ProviderRegistry(self.config)).get(provider_name)
        provider.require_available()
        session = provider.create_setup_session(
            owner_id,
            success_url,
            cancel_url,
            customer_id=known[0] if known else None,
            customer_email=customer_email,
        )
        log.info("Setup session %s opened for owner=%s via %s", session.get("id"), owner_id, provider.name)
        return session
