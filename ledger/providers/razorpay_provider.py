# -----------------------------------------------------------
# ledger/providers/razorpay_provider.py
# Razorpay through the official SDK
# -----------------------------------------------------------
import hashlib
import hmac
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import razorpay
import requests
from razorpay.errors import BadRequestError, GatewayError, ServerError

from ledger.errors import ProviderError, WebhookError
from ledger.money import to_minor_units
from ledger.providers.base import (
    CHECKOUT_COMPLETED, CHECKOUT_EXPIRED, PAYMENT_FAILED, PAYMENT_SUCCEEDED,
    REFUND_CREATED, CanonicalEvent, PaymentProvider,
)

log = logging.getLogger("ledger.providers.razorpay")

CHECKOUT_TTL_SECONDS = 1800


def map_error(message: str) -> str:
    text = (message or "").lower()
    if "authentication failed" in text or "api key" in text:
        return "not_configured"
    if "expired" in text:
        return "payment_method_expired"
    if "authenticat" in text or "otp" in text or "3ds" in text:
        return "requires_action"
    if "already been fully refunded" in text or "fully refunded" in text:
        return "already_refunded"
    return "card_declined"


class RazorpayProvider(PaymentProvider):
    name = "razorpay"
    signature_header = "X-Razorpay-Signature"

    def __init__(self, config=None, timeout: int = 30, tolerance: int = 300, client=None):
        super().__init__(config, timeout, tolerance)
        self._client = client

    def is_available(self) -> bool:
        return bool(self.config.enabled and self.config.api_key and self.config.api_secret)

    @property
    def client(self):
        self.require_available()
        if self._client is None:
            self._client = razorpay.Client(auth=(self.config.api_key, self.config.api_secret))
        return self._client

    def _call(self, action: str, fn, *args, **kwargs) -> Dict[str, Any]:
        try:
            return fn(*args, timeout=self.timeout, **kwargs)
        except BadRequestError as e:
            code = map_error(str(e))
            log.warning("Razorpay %s rejected: %s", action, e)
            raise ProviderError(code, str(e))
        except (GatewayError, ServerError, requests.RequestException) as e:
            log.error("Razorpay %s failed: %s", action, e)
            raise ProviderError("provider_error", f"razorpay {action} failed: {e}")

    # -------------------------------------------------
    # SESSIONS
    # -------------------------------------------------
    def create_checkout_session(self, invoice, success_url: str, cancel_url: str, **opts) -> Dict[str, Any]:
        places = opts.get("places", 2)
        amount = opts.get("amount", invoice.total)
        expires_at = int(time.time()) + CHECKOUT_TTL_SECONDS
        link = self._call("payment_link.create", self.client.payment_link.create, {
            "amount": to_minor_units(amount, places),
            "currency": invoice.currency.upper(),
            "reference_id": invoice.invoice_number,
            "description": f"Invoice {invoice.invoice_number}",
            "expire_by": expires_at,
            "callback_url": success_url,
            "callback_method": "get",
            "customer": {"email": opts.get("customer_email")} if opts.get("customer_email") else {},
            "notes": {"invoice_id": str(invoice.id)},
        })
        log.info("Razorpay payment link %s created for invoice %s", link.get("id"), invoice.invoice_number)
        return {"id": link["id"], "url": link.get("short_url"), "expires_at": link.get("expire_by", expires_at)}

    def create_setup_session(self, owner_id: int, success_url: str, cancel_url: str, **opts) -> Dict[str, Any]:
        raise ProviderError("not_supported", "razorpay saves methods through recurring checkout only")

    # -------------------------------------------------
    # CHARGES / REFUNDS
    # -------------------------------------------------
    def charge_saved_method(self, payment_method, amount: Decimal, **opts) -> Dict[str, Any]:
        """
        Recurring charge on a saved token. Razorpay confirms asynchronously, so the
        result is pending and payment.captured settles it.
        """
        places = opts.get("places", 2)
        currency = (opts.get("currency") or "INR").upper()
        notes = {k: str(v) for k, v in (opts.get("metadata") or {}).items()}
        minor = to_minor_units(amount, places)
        order = self._call("order.create", self.client.order.create, {
            "amount": minor,
            "currency": currency,
            "payment_capture": 1,
            "notes": notes,
        })
        payment = self._call("payment.createRecurring", self.client.payment.createRecurring, {
            "email": opts.get("customer_email") or "",
            "contact": opts.get("customer_contact") or "",
            "amount": minor,
            "currency": currency,
            "order_id": order["id"],
            "customer_id": payment_method.provider_customer_id,
            "token": payment_method.provider_payment_method_id,
            "recurring": "1",
            "notes": notes,
        })
        ptid = payment.get("razorpay_payment_id") or payment.get("id")
        return {"id": order["id"], "provider_transaction_id": ptid, "status": "pending"}

    def create_refund(self, provider_transaction_id: str, amount: Optional[Decimal] = None,
                      reason: Optional[str] = None, **opts) -> Dict[str, Any]:
        data: Dict[str, Any] = {"notes": {"reason": reason or ""}}
        if amount is not None:
            data["amount"] = to_minor_units(amount, opts.get("places", 2))
        refund = self._call("payment.refund", self.client.payment.refund, provider_transaction_id, data)
        log.info("Razorpay refund %s created for %s", refund.get("id"), provider_transaction_id)
        return {"id": refund["id"], "status": refund.get("status")}

    # -------------------------------------------------
    # PAYMENT METHODS
    # -------------------------------------------------
    def get_payment_method_details(self, provider_payment_method_id: str, **opts) -> Dict[str, Any]:
        token = self._call("token.fetch", self.client.token.fetch, opts.get("customer_id"), provider_payment_method_id)
        return _token_details(token)

    def detach_payment_method(self, provider_payment_method_id: str, **opts) -> None:
        if not opts.get("customer_id"):
            raise ProviderError("not_supported", "razorpay needs the customer id to delete a token")
        self._call("token.delete", self.client.token.delete, opts["customer_id"], provider_payment_method_id)

    # -------------------------------------------------
    # WEBHOOKS
    # -------------------------------------------------
    def verify_webhook_signature(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        if not signature_header:
            raise WebhookError("invalid_signature", "missing X-Razorpay-Signature header")
        if isinstance(raw_body, str):
            raw_body = raw_body.encode()
        expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature_header.strip()):
            raise WebhookError("invalid_signature", "signature mismatch")
        return True

    def handle_webhook_event(self, payload: Dict[str, Any]) -> Optional[CanonicalEvent]:
        event = payload.get("event")
        body = payload.get("payload") or {}
        payment = (body.get("payment") or {}).get("entity") or {}
        refund = (body.get("refund") or {}).get("entity") or {}
        link = (body.get("payment_link") or {}).get("entity") or {}
        order = (body.get("order") or {}).get("entity") or {}

        entity_id = refund.get("id") or payment.get("id") or link.get("id") or order.get("id")
        event_id = payload.get("id") or f"{event}:{entity_id}"
        notes = _notes(link) or _notes(order) or _notes(payment)

        if event in ("payment.captured", "payment.failed"):
            data = _payment_data(payment, notes)
            if event == "payment.captured":
                return CanonicalEvent(type=PAYMENT_SUCCEEDED, provider_event_id=event_id, data=data)
            data["error_code"] = map_error(payment.get("error_description") or payment.get("error_code") or "")
            return CanonicalEvent(type=PAYMENT_FAILED, provider_event_id=event_id, data=data)

        if event in ("payment_link.paid", "order.paid"):
            data = _payment_data(payment, notes)
            data["mode"] = "payment"
            data["session_id"] = link.get("id") or order.get("id")
            if link.get("amount_paid") is not None:
                data["amount_minor"] = link.get("amount_paid")
            return CanonicalEvent(type=CHECKOUT_COMPLETED, provider_event_id=event_id, data=data)

        if event in ("payment_link.expired", "payment_link.cancelled"):
            return CanonicalEvent(type=CHECKOUT_EXPIRED, provider_event_id=event_id,
                                  data={"session_id": link.get("id"), "invoice_id": notes.get("invoice_id")})

        if event in ("refund.created", "refund.processed"):
            return CanonicalEvent(type=REFUND_CREATED, provider_event_id=event_id, data={
                "refund_id": refund.get("id"),
                "provider_transaction_id": refund.get("payment_id"),
                "amount_minor": refund.get("amount"),
                "currency": refund.get("currency"),
                "reason": _notes(refund).get("reason"),
            })

        log.debug("Razorpay event %s ignored", event)
        return None


def _notes(entity: Dict[str, Any]) -> Dict[str, Any]:
    notes = entity.get("notes")
    return notes if isinstance(notes, dict) else {}


def _payment_data(payment: Dict[str, Any], notes: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "provider_transaction_id": payment.get("id"),
        "amount_minor": payment.get("amount"),
        "currency": payment.get("currency"),
        "invoice_id": notes.get("invoice_id"),
        "subscription_id": notes.get("subscription_id"),
        "period_start": notes.get("period_start"),
        "payment_method_id": payment.get("token_id"),
        "customer_id": payment.get("customer_id"),
    }


def _token_details(token: Dict[str, Any]) -> Dict[str, Any]:
    card = token.get("card") or {}
    return {
        "type": "card" if token.get("method") == "card" else (token.get("method") or "card"),
        "brand": card.get("network"),
        "last4": card.get("last4"),
        "exp_month": int(card["expiry_month"]) if card.get("expiry_month") else None,
        "exp_year": int(card["expiry_year"]) if card.get("expiry_year") else None,
    }
