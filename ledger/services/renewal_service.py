# -----------------------------------------------------------
# ledger/services/renewal_service.py
# Recurring charges for subscriptions (renewal + dunning)
# -----------------------------------------------------------
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ledger.errors import ProviderError
from ledger.models import Invoice, Subscription, _now
from ledger.money import ZERO, to_decimal
from ledger.services.base import BaseService, _id
from ledger.services.invoice_service import InvoiceService
from ledger.services.payment_method_service import usable
from ledger.services.subscription_service import SubscriptionService, next_period_end
from ledger.services.transaction_service import TransactionService

log = logging.getLogger("ledger.renewal_service")

# process_renewal / process_dunning outcomes
SKIPPED = "skipped"
NOT_DUE = "not_due"
INVOICED = "invoiced"
RENEWED = "renewed"
PENDING = "pending"
PAST_DUE = "past_due"
CANCELLED = "cancelled"


class RenewalService(BaseService):
    """
    Drives the money side of the subscription lifecycle. Provider calls are made
    with no row lock held; the payment and the period advance commit together.
    """

    def __init__(self, db, config=None, autocommit=True, sequences=None, registry=None, mailer=None):
        super().__init__(db, config, autocommit, sequences)
        if registry is None:
            from ledger.providers import ProviderRegistry
            registry = ProviderRegistry(self.config)
        self.registry = registry
        self.mailer = mailer

    def _subscriptions(self) -> SubscriptionService:
        return SubscriptionService(self.db, self.config, self.autocommit, self.sequences)

    def _invoices(self) -> InvoiceService:
        return InvoiceService(self.db, self.config, self.autocommit, self.sequences, mailer=self.mailer)

    # -------------------------------------------------
    # SELECTION
    # -------------------------------------------------
    def due_subscriptions(self, now: Optional[datetime] = None) -> List[int]:
        now = now or _now()
        horizon = now + timedelta(hours=self.config.renewal_lookahead_hours)
        rows = (
            self.db.query(Subscription.id)
            .filter(
                Subscription.status.in_(("active", "trialing")),
                Subscription.current_period_end <= horizon,
            )
            .order_by(Subscription.current_period_end)
            .all()
        )
        return [r[0] for r in rows]

    def past_due_subscriptions(self) -> List[int]:
        rows = (
            self.db.query(Subscription.id)
            .filter(Subscription.status == "past_due")
            .order_by(Subscription.last_renewal_attempt_at)
            .all()
        )
        return [r[0] for r in rows]

    def open_invoice(self, sub: Subscription) -> Optional[Invoice]:
        return (
            self.db.query(Invoice)
            .filter(Invoice.subscription_id == sub.id, Invoice.period_start == sub.current_period_end)
            .first()
        )

    # -------------------------------------------------
    # RENEWAL
    # -------------------------------------------------
    def process_renewal(self, subscription, now: Optional[datetime] = None) -> str:
        """
        Renew one subscription whose period ends (or is about to end).

        The renewal invoice is created once per period, up to
        renewal_lookahead_hours early; the saved method is charged only once
        the period has ended.
        """
        now = now or _now()
        subs = self._subscriptions()
        sub = subs.get(_id(subscription))
        if sub.status not in ("active", "trialing"):
            return SKIPPED

        period_end = sub.current_period_end
        if sub.cancel_at_period_end:
            if now >= period_end:
                subs.evaluate(sub, now)
                return CANCELLED
            return NOT_DUE
        if period_end > now + timedelta(hours=self.config.renewal_lookahead_hours):
            return NOT_DUE

        plan = subs.get_type(sub.subscription_type_id)
        if to_decimal(plan.price) == ZERO:
            if period_end > now:
                return NOT_DUE
            subs.renew(sub, period_start=period_end, now=now)
            return RENEWED

        invoice = self._invoices().create_for_subscription(
            sub, plan, period_start=period_end, period_end=next_period_end(plan, period_end)
        )
        if period_end > now:
            return INVOICED
        return self._collect(sub, invoice, now)

    def process_dunning(self, subscription, now: Optional[datetime] = None) -> str:
        """Retry a past_due subscription; give up after max attempts or an expired grace period."""
        now = now or _now()
        subs = self._subscriptions()
        sub = subs.get(_id(subscription))
        if sub.status != "past_due":
            return SKIPPED

        grace_over = sub.grace_period_end is not None and now > sub.grace_period_end
        if grace_over or (sub.renewal_attempts or 0) >= self.config.dunning_max_attempts:
            reason = "grace period expired" if grace_over else "renewal attempts exhausted"
            subs.cancel(sub, immediately=True, reason=reason, now=now)
            self._void_open_invoice(sub, reason)
            return CANCELLED

        invoice = self.open_invoice(sub)
        if invoice is None:
            plan = subs.get_type(sub.subscription_type_id)
            invoice = self._invoices().create_for_subscription(
                sub, plan, period_start=sub.current_period_end,
                period_end=next_period_end(plan, sub.current_period_end),
            )
        return self._collect(sub, invoice, now)

    # -------------------------------------------------
    # INTERNALS
    # -------------------------------------------------
    def _collect(self, sub: Subscription, invoice: Invoice, now: datetime) -> str:
        invoices = self._invoices()
        remaining = invoices.remaining_amount(invoice)
        if remaining <= 0:
            self._settle(sub, invoice, now)
            return RENEWED

        pm = sub.payment_method
        if not usable(pm, now.date()):
            log.warning("Subscription %s has no usable payment method", sub.id)
            self._subscriptions().mark_past_due(sub, now=now)
            return PAST_DUE

        if self.autocommit:
            self.db.commit()
        provider = self.registry.get(pm.provider)
        try:
            provider.require_available()
            result = provider.charge_saved_method(
                pm,
                remaining,
                currency=invoice.currency,
                places=self.currency_places(invoice.currency),
                idempotency_key=f"renewal-{invoice.id}-{sub.renewal_attempts or 0}",
                metadata={
                    "invoice_id": invoice.id,
                    "subscription_id": sub.id,
                    "period_start": invoice.period_start.isoformat(),
                },
            )
        except ProviderError as e:
            log.warning("Renewal charge for subscription %s failed: %s (%s)", sub.id, e.code, e.message)
            self._subscriptions().mark_past_due(sub, charge_id=e.details.get("provider_transaction_id"), now=now)
            return PAST_DUE

        if result.get("status") != "succeeded":
            log.info("Renewal charge %s for subscription %s pending confirmation",
                     result.get("provider_transaction_id"), sub.id)
            return PENDING

        self._settle(sub, invoice, now, result, pm)
        return RENEWED

    def _settle(self, sub: Subscription, invoice: Invoice, now: datetime,
                result: Optional[Dict[str, Any]] = None, pm=None) -> None:
        with self.atomic(f"settle_renewal subscription={sub.id}"):
            if result is not None:
                self._record_charge(sub, invoice, result, pm)
            subs = self.child(SubscriptionService)
            current = subs.get(sub.id)
            if current.status == "past_due":
                subs.resolve_past_due(current, period_start=invoice.period_start, now=now)
            else:
                subs.renew(current, period_start=invoice.period_start, now=now)

    def _record_charge(self, sub: Subscription, invoice: Invoice, result: Dict[str, Any], pm) -> None:
        txns = self.child(TransactionService)
        charge_id = result.get("provider_transaction_id")
        remaining = self.child(InvoiceService).remaining_amount(invoice)
        if remaining <= 0 or txns.find_by_provider_id(pm.provider, charge_id) is not None:
            # webhook for the same charge landed first
            log.info("Renewal charge %s for subscription %s already recorded", charge_id, sub.id)
            return
        txns.record_payment(
            invoice,
            remaining,
            payment_method=pm.provider,
            description=f"Subscription renewal ({pm.display_name})",
            provider=pm.provider,
            provider_transaction_id=charge_id,
            provider_data=result,
        )

    def _void_open_invoice(self, sub: Subscription, reason: str) -> None:
        invoice = self.open_invoice(sub)
        if invoice is None or invoice.status in ("void", "paid"):
            return
        invoices = self._invoices()
        if invoices.net_paid(invoice) == ZERO:
            invoices.void(invoice, reason=reason)
