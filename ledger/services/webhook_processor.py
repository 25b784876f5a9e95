# -----------------------------------------------------------
# ledger/services/webhook_processor.py
# Signed provider callbacks -> ledger mutations, exactly once
# -----------------------------------------------------------
import hashlib
import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from ledger.errors import BillingError, ProviderError, ValidationError, WebhookError
from ledger.models import Invoice, Subscription, WebhookEvent, _now
from ledger.money import from_minor_units, to_decimal
from ledger.providers.base import (
    CHECKOUT_COMPLETED, CHECKOUT_EXPIRED, PAYMENT_FAILED, PAYMENT_SUCCEEDED,
    REFUND_CREATED, SETUP_COMPLETED, CanonicalEvent,
)
from ledger.services.base import BaseService
from ledger.services.invoice_service import InvoiceService
from ledger.services.payment_method_service import PaymentMethodService
from ledger.services.subscription_service import SubscriptionService
from ledger.services.transaction_service import TransactionService

log = logging.getLogger("ledger.webhook_processor")

PROCESSED = "processed"
DUPLICATE = "duplicate_event"
UNKNOWN = "unknown_event"

# handler results that acknowledge the event without changing the ledger
_NO_OP_RESULTS = {
    "already_paid",
    "invoice_void",
    "invoice_not_found",
    "subscription_not_found",
    "transaction_not_found",
    "refund_already_recorded",
    "awaiting_payment_method",
    "checkout_expired",
    "ignored",
}


class WebhookProcessor(BaseService):
    """
    process() runs, in order: secret lookup, signature check, payload parse,
    idempotency check, then event row + mutation in a single commit.

    Handlers only apply data carried by the event; they never call the provider.
    """

    def __init__(self, db, config=None, registry=None, sequences=None):
        super().__init__(db, config, autocommit=False, sequences=sequences)
        if registry is None:
            from ledger.providers import ProviderRegistry
            registry = ProviderRegistry(self.config)
        self.registry = registry

    def _seen(self, provider: str, event_id: str) -> Optional[WebhookEvent]:
        return (
            self.db.query(WebhookEvent)
            .filter(WebhookEvent.provider == provider, WebhookEvent.event_id == event_id)
            .first()
        )

    # =================================================
    # ENTRY POINT
    # =================================================
    def process(self, raw_body: bytes, signature_header: Optional[str], provider_name: str) -> Dict[str, Any]:
        provider = self.registry.get(provider_name)
        name = provider.name

        # 1) secret
        secret = provider.webhook_secret
        if not secret:
            raise ProviderError("not_configured", f"no webhook secret configured for {name}")

        # 2) signature
        try:
            provider.verify_webhook_signature(raw_body, signature_header or "", secret)
        except WebhookError as e:
            log.error("Rejected %s webhook: %s", name, e.message)
            raise

        # 3) canonical event
        if isinstance(raw_body, str):
            raw_body = raw_body.encode()
        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("invalid_payload", f"{name} webhook body is not JSON")
        if not isinstance(payload, dict):
            raise ValidationError("invalid_payload", f"{name} webhook body is not an object")

        event = provider.handle_webhook_event(payload)
        if event is None:
            log.info("Acknowledged unhandled %s event %s", name, payload.get("type") or payload.get("event"))
            return {"status": UNKNOWN, "event_id": payload.get("id"), "event_type": None, "result": None}

        # 4) idempotency
        if self._seen(name, event.provider_event_id) is not None:
            log.info("Duplicate %s event %s acknowledged", name, event.provider_event_id)
            return self._reply(DUPLICATE, event)

        # 5) record + apply as one unit
        try:
            row = WebhookEvent(
                provider=name,
                event_id=event.provider_event_id,
                event_type=event.type,
                payload_hash=hashlib.sha256(raw_body).hexdigest(),
                payload=payload,
                status="processing",
            )
            self.db.add(row)
            self.db.flush()

            result = self.dispatch(name, event)

            row.result = result
            row.status = "ignored" if result in _NO_OP_RESULTS else "processed"
            row.processed_at = _now()
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self._seen(name, event.provider_event_id) is not None:
                log.info("Concurrent duplicate %s event %s acknowledged", name, event.provider_event_id)
                return self._reply(DUPLICATE, event)
            log.exception("Integrity failure while applying %s event %s", name, event.provider_event_id)
            raise
        except BillingError as e:
            self.db.rollback()
            log.warning("%s event %s (%s) not applied: %s %s",
                        name, event.provider_event_id, event.type, e.code, e.message)
            raise
        except Exception:
            self.db.rollback()
            log.exception("Failed applying %s event %s", name, event.provider_event_id)
            raise

        log.info("%s event %s (%s) -> %s", name, event.provider_event_id, event.type, result)
        return self._reply(PROCESSED, event, result)

    @staticmethod
    def _reply(status: str, event: CanonicalEvent, result: Optional[str] = None) -> Dict[str, Any]:
        return {"status": status, "event_id": event.provider_event_id, "event_type": event.type, "result": result}

    # =================================================
    # DISPATCH
    # =================================================
    def dispatch(self, provider: str, event: CanonicalEvent) -> str:
        handler = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
            CHECKOUT_EXPIRED: self._on_checkout_expired,
            PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            PAYMENT_FAILED: self._on_payment_failed,
            REFUND_CREATED: self._on_refund_created,
            SETUP_COMPLETED: self._on_setup_completed,
        }.get(event.type)
        if handler is None:
            return "ignored"
        return handler(provider, event.data)

    # -------------------------------------------------
    # LOOKUPS
    # -------------------------------------------------
    def _invoice(self, data: Dict[str, Any]) -> Optional[Invoice]:
        invoice_id = data.get("invoice_id")
        if invoice_id in (None, ""):
            return None
        try:
            return self.db.get(Invoice, int(invoice_id))
        except (TypeError, ValueError):
            return None

    def _subscription(self, data: Dict[str, Any]) -> Optional[Subscription]:
        sub_id = data.get("subscription_id")
        if sub_id in (None, ""):
            return None
        try:
            return self.db.get(Subscription, int(sub_id))
        except (TypeError, ValueError):
            return None

    def _amount(self, data: Dict[str, Any], currency: str):
        if data.get("amount_minor") is not None:
            return from_minor_units(data["amount_minor"], self.currency_places(currency))
        if data.get("amount") is not None:
            return to_decimal(data["amount"])
        return None

    # -------------------------------------------------
    # HANDLERS
    # -------------------------------------------------
    def _apply_payment(self, provider: str, data: Dict[str, Any], description: str) -> str:
        invoice = self._invoice(data)
        if invoice is None:
            log.warning("%s payment %s references no known invoice", provider, data.get("provider_transaction_id"))
            return "invoice_not_found"

        # events may be stale: always re-check the invoice itself
        if invoice.status == "void":
            return "invoice_void"
        invoices = self.child(InvoiceService)
        remaining = invoices.remaining_amount(invoice)
        if invoice.status == "paid" or remaining <= 0:
            return "already_paid"

        amount = self._amount(data, invoice.currency)
        if amount is None:
            amount = remaining
        elif amount > remaining:
            log.error("%s captured %s %s for invoice %s but only %s remains; needs manual refund (payment %s)",
                      provider, amount, invoice.currency, invoice.invoice_number, remaining,
                      data.get("provider_transaction_id") or data.get("session_id"))
        self.child(TransactionService).record_payment(
            invoice,
            amount,
            payment_method=provider,
            description=description,
            provider=provider,
            provider_transaction_id=data.get("provider_transaction_id") or data.get("session_id"),
            provider_data=data,
        )
        return "payment_recorded"

    def _on_checkout_completed(self, provider: str, data: Dict[str, Any]) -> str:
        if data.get("mode") == "setup":
            return self._save_payment_method(provider, data)
        return self._apply_payment(provider, data, "Checkout payment")

    def _on_checkout_expired(self, provider: str, data: Dict[str, Any]) -> str:
        log.info("%s checkout %s expired (invoice %s)", provider, data.get("session_id"), data.get("invoice_id"))
        return "checkout_expired"

    def _on_payment_succeeded(self, provider: str, data: Dict[str, Any]) -> str:
        result = self._apply_payment(provider, data, "Payment")
        sub = self._subscription(data)
        invoice = self._invoice(data)
        if sub is None or invoice is None or invoice.period_start is None:
            return result
        if self.child(InvoiceService).remaining_amount(invoice) > 0:
            return result

        subs = self.child(SubscriptionService)
        if sub.status == "past_due":
            subs.resolve_past_due(sub, period_start=invoice.period_start)
            return "subscription_recovered"
        if sub.status in ("active", "trialing"):
            subs.renew(sub, period_start=invoice.period_start)
            return "subscription_renewed"
        return result

    def _on_payment_failed(self, provider: str, data: Dict[str, Any]) -> str:
        sub = self._subscription(data)
        if sub is None:
            log.info("%s payment %s failed (%s)", provider, data.get("provider_transaction_id"), data.get("error_code"))
            return "ignored" if not data.get("subscription_id") else "subscription_not_found"
        if sub.status not in ("active", "trialing", "past_due"):
            return "ignored"
        self.child(SubscriptionService).mark_past_due(sub, charge_id=data.get("provider_transaction_id"))
        return "subscription_past_due"

    def _on_refund_created(self, provider: str, data: Dict[str, Any]) -> str:
        txns = self.child(TransactionService)
        if txns.find_by_provider_id(provider, data.get("refund_id")) is not None:
            return "refund_already_recorded"
        original = txns.find_by_provider_id(provider, data.get("provider_transaction_id"))
        if original is None or not original.is_payment:
            log.warning("%s refund %s references unknown payment %s",
                        provider, data.get("refund_id"), data.get("provider_transaction_id"))
            return "transaction_not_found"

        invoice = self._get(Invoice, original.invoice_id, "invoice")
        amount = self._amount(data, invoice.currency)
        if amount is None:
            amount = original.amount
        txns.record_refund(
            invoice,
            amount,
            data.get("reason") or "Refunded at provider",
            payment_method=original.payment_method,
            provider=provider,
            provider_transaction_id=data.get("refund_id"),
            refunded_transaction_id=original.id,
            provider_data=data,
        )
        return "refund_recorded"

    def _on_setup_completed(self, provider: str, data: Dict[str, Any]) -> str:
        return self._save_payment_method(provider, data)

    def _save_payment_method(self, provider: str, data: Dict[str, Any]) -> str:
        owner_id = data.get("owner_id")
        pm_id = data.get("payment_method_id")
        if not pm_id or owner_id in (None, ""):
            return "awaiting_payment_method"
        card = data.get("card") or {}
        self.child(PaymentMethodService).save(
            int(owner_id),
            provider,
            pm_id,
            provider_customer_id=data.get("customer_id"),
            type=card.get("type") or "card",
            brand=card.get("brand"),
            last4=card.get("last4"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
        )
        return "payment_method_saved"
