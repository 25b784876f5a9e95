# -----------------------------------------------------------
# ledger/providers/stripe_provider.py
# Stripe through the official SDK
# -----------------------------------------------------------
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from ledger.errors import ProviderError, WebhookError
from ledger.money import to_minor_units
from ledger.providers.base import (
    CHECKOUT_COMPLETED, CHECKOUT_EXPIRED, PAYMENT_FAILED, PAYMENT_SUCCEEDED,
    REFUND_CREATED, SETUP_COMPLETED, CanonicalEvent, PaymentProvider,
)

log = logging.getLogger("ledger.providers.stripe")

API_VERSION = "2023-10-16"

# stripe error / decline codes -> canonical codes
_ERROR_CODES = {
    "expired_card": "payment_method_expired",
    "card_declined": "card_declined",
    "insufficient_funds": "card_declined",
    "incorrect_cvc": "card_declined",
    "processing_error": "card_declined",
    "payment_intent_payment_attempt_failed": "card_declined",
    "requires_payment_method": "card_declined",
    "authentication_required": "requires_action",
    "payment_intent_authentication_failure": "requires_action",
    "charge_already_refunded": "already_refunded",
}

_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


def map_error(error: Dict[str, Any]) -> str:
    for key in ("decline_code", "code"):
        code = error.get(key)
        if code in _ERROR_CODES:
            return _ERROR_CODES[code]
    if error.get("type") == "card_error":
        return "card_declined"
    return "provider_error"


def _error_body(e: "stripe.StripeError") -> Dict[str, Any]:
    body = e.json_body if isinstance(e.json_body, dict) else {}
    error = dict(body.get("error") or {})
    if e.code and "code" not in error:
        error["code"] = e.code
    return error


class StripeProvider(PaymentProvider):
    name = "stripe"
    signature_header = "Stripe-Signature"

    def _opts(self, **extra) -> Dict[str, Any]:
        self.require_available()
        opts = {"api_key": self.config.api_key, "stripe_version": API_VERSION}
        opts.update({k: v for k, v in extra.items() if v is not None})
        return opts

    def _call(self, action: str, fn, *args, **params):
        try:
            return fn(*args, **params)
        except stripe.AuthenticationError:
            log.error("Stripe %s: API key rejected", action)
            raise ProviderError("not_configured", "stripe rejected the API key")
        except stripe.APIConnectionError as e:
            log.error("Stripe %s failed: %s", action, e)
            raise ProviderError("provider_error", f"stripe {action} failed: {e.user_message or e}")
        except stripe.StripeError as e:
            error = _error_body(e)
            code = map_error(error)
            log.warning("Stripe %s rejected: %s %s (%s)", action, e.http_status, error.get("code"), e.user_message)
            payment_intent = error.get("payment_intent") or {}
            raise ProviderError(
                code,
                e.user_message or error.get("message") or f"stripe {action} failed",
                stripe_code=error.get("code") or "",
                provider_transaction_id=payment_intent.get("id") if isinstance(payment_intent, dict) else None,
            )

    # -------------------------------------------------
    # SESSIONS
    # -------------------------------------------------
    def create_checkout_session(self, invoice, success_url: str, cancel_url: str, **opts) -> Dict[str, Any]:
        places = opts.get("places", 2)
        amount = opts.get("amount", invoice.total)
        payment_intent_data: Dict[str, Any] = {"metadata": {"invoice_id": invoice.id}}
        if opts.get("save_payment_method"):
            payment_intent_data["setup_future_usage"] = "off_session"
        params: Dict[str, Any] = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": invoice.invoice_number,
            "line_items": [{
                "quantity": 1,
                "price_data": {
                    "currency": invoice.currency.lower(),
                    "unit_amount": to_minor_units(amount, places),
                    "product_data": {"name": f"Invoice {invoice.invoice_number}"},
                },
            }],
            "metadata": {"invoice_id": invoice.id},
            "payment_intent_data": payment_intent_data,
        }
        if opts.get("customer_email"):
            params["customer_email"] = opts["customer_email"]
        session = self._call("checkout.create", stripe.checkout.Session.create, **params, **self._opts())
        log.info("Stripe checkout %s created for invoice %s", session.get("id"), invoice.invoice_number)
        return {"id": session["id"], "url": session.get("url"), "expires_at": session.get("expires_at")}

    def _ensure_customer(self, owner_id: int, customer_id: Optional[str], email: Optional[str]) -> str:
        if customer_id:
            return customer_id
        params: Dict[str, Any] = {"metadata": {"owner_id": owner_id}}
        if email:
            params["email"] = email
        customer = self._call("customer.create", stripe.Customer.create, **params, **self._opts())
        return customer["id"]

    def create_setup_session(self, owner_id: int, success_url: str, cancel_url: str, **opts) -> Dict[str, Any]:
        customer = self._ensure_customer(owner_id, opts.get("customer_id"), opts.get("customer_email"))
        session = self._call(
            "setup.create",
            stripe.checkout.Session.create,
            mode="setup",
            customer=customer,
            success_url=success_url,
            cancel_url=cancel_url,
            payment_method_types=["card"],
            metadata={"owner_id": owner_id},
            setup_intent_data={"metadata": {"owner_id": owner_id}},
            **self._opts(),
        )
        return {"id": session["id"], "url": session.get("url"), "customer_id": customer}

    # -------------------------------------------------
    # CHARGES / REFUNDS
    # -------------------------------------------------
    def charge_saved_method(self, payment_method, amount: Decimal, **opts) -> Dict[str, Any]:
        places = opts.get("places", 2)
        intent = self._call(
            "payment_intent.create",
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount, places),
            currency=(opts.get("currency") or "eur").lower(),
            customer=payment_method.provider_customer_id,
            payment_method=payment_method.provider_payment_method_id,
            off_session=True,
            confirm=True,
            metadata=opts.get("metadata") or {},
            **self._opts(idempotency_key=opts.get("idempotency_key")),
        )
        status = intent.get("status")
        if status == "succeeded":
            result_status = "succeeded"
        elif status == "processing":
            result_status = "pending"
        elif status == "requires_action":
            raise ProviderError("requires_action", "payment needs customer authentication",
                                provider_transaction_id=intent.get("id"))
        else:
            error = intent.get("last_payment_error") or {}
            raise ProviderError(map_error(error) if error else "card_declined",
                                error.get("message") or f"payment intent {status}",
                                provider_transaction_id=intent.get("id"))
        return {"id": intent["id"], "provider_transaction_id": intent["id"], "status": result_status}

    def create_refund(self, provider_transaction_id: str, amount: Optional[Decimal] = None,
                      reason: Optional[str] = None, **opts) -> Dict[str, Any]:
        params: Dict[str, Any] = {"payment_intent": provider_transaction_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount, opts.get("places", 2))
        params["reason"] = reason if reason in _REFUND_REASONS else "requested_by_customer"
        if reason and reason not in _REFUND_REASONS:
            params["metadata"] = {"reason": reason}
        refund = self._call("refund.create", stripe.Refund.create, **params, **self._opts())
        log.info("Stripe refund %s created for %s", refund.get("id"), provider_transaction_id)
        return {"id": refund["id"], "status": refund.get("status")}

    # -------------------------------------------------
    # PAYMENT METHODS
    # -------------------------------------------------
    def get_payment_method_details(self, provider_payment_method_id: str, **opts) -> Dict[str, Any]:
        pm = self._call("payment_method.retrieve", stripe.PaymentMethod.retrieve,
                        provider_payment_method_id, **self._opts())
        return _card_details(pm)

    def detach_payment_method(self, provider_payment_method_id: str, **opts) -> None:
        self._call("payment_method.detach", stripe.PaymentMethod.detach,
                   provider_payment_method_id, **self._opts())

    # -------------------------------------------------
    # WEBHOOKS
    # -------------------------------------------------
    def verify_webhook_signature(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        """`t=<unix>,v1=<hex hmac-sha256 of "t.body">`, rejected outside the tolerance window."""
        if not signature_header:
            raise WebhookError("invalid_signature", "missing Stripe-Signature header")
        if isinstance(raw_body, bytes):
            raw_body = raw_body.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(raw_body, signature_header, secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise WebhookError("invalid_signature", str(e))
        return True

    def handle_webhook_event(self, payload: Dict[str, Any]) -> Optional[CanonicalEvent]:
        event_type = payload.get("type")
        obj = (payload.get("data") or {}).get("object") or {}
        event_id = payload.get("id")
        meta = obj.get("metadata") or {}

        if event_type == "checkout.session.completed":
            data = {
                "mode": obj.get("mode"),
                "session_id": obj.get("id"),
                "invoice_id": meta.get("invoice_id"),
                "owner_id": meta.get("owner_id"),
                "amount_minor": obj.get("amount_total"),
                "currency": (obj.get("currency") or "").upper() or None,
                "provider_transaction_id": obj.get("payment_intent"),
                "customer_id": obj.get("customer"),
            }
            setup = obj.get("setup_intent")
            if isinstance(setup, dict):
                data["payment_method_id"] = _pm_id(setup.get("payment_method"))
                data["card"] = _card_details(setup.get("payment_method"))
            return CanonicalEvent(type=CHECKOUT_COMPLETED, provider_event_id=event_id, data=data)

        if event_type == "checkout.session.expired":
            return CanonicalEvent(type=CHECKOUT_EXPIRED, provider_event_id=event_id,
                                  data={"session_id": obj.get("id"), "invoice_id": meta.get("invoice_id")})

        if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
            data = {
                "provider_transaction_id": obj.get("id"),
                "amount_minor": obj["amount_received"] if obj.get("amount_received") is not None else obj.get("amount"),
                "currency": (obj.get("currency") or "").upper() or None,
                "invoice_id": meta.get("invoice_id"),
                "subscription_id": meta.get("subscription_id"),
                "period_start": meta.get("period_start"),
                "payment_method_id": _pm_id(obj.get("payment_method")),
                "customer_id": obj.get("customer"),
            }
            if event_type == "payment_intent.succeeded":
                return CanonicalEvent(type=PAYMENT_SUCCEEDED, provider_event_id=event_id, data=data)
            data["error_code"] = map_error(obj.get("last_payment_error") or {})
            return CanonicalEvent(type=PAYMENT_FAILED, provider_event_id=event_id, data=data)

        if event_type == "refund.created":
            return CanonicalEvent(type=REFUND_CREATED, provider_event_id=event_id, data=_refund_data(obj))

        if event_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            if not refunds:
                return None
            data = _refund_data(refunds[0])
            data["provider_transaction_id"] = data.get("provider_transaction_id") or obj.get("payment_intent")
            return CanonicalEvent(type=REFUND_CREATED, provider_event_id=event_id, data=data)

        if event_type == "setup_intent.succeeded":
            pm = obj.get("payment_method")
            return CanonicalEvent(type=SETUP_COMPLETED, provider_event_id=event_id, data={
                "owner_id": meta.get("owner_id"),
                "payment_method_id": _pm_id(pm),
                "customer_id": obj.get("customer"),
                "card": _card_details(pm),
            })

        log.debug("Stripe event %s (%s) ignored", event_id, event_type)
        return None


def _pm_id(pm) -> Optional[str]:
    if isinstance(pm, dict):
        return pm.get("id")
    return pm


def _card_details(pm) -> Dict[str, Any]:
    if not isinstance(pm, dict):
        return {}
    card = pm.get("card") or {}
    return {
        "type": "card" if card else pm.get("type", "card"),
        "brand": card.get("brand"),
        "last4": card.get("last4"),
        "exp_month": card.get("exp_month"),
        "exp_year": card.get("exp_year"),
    }


def _refund_data(refund: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "refund_id": refund.get("id"),
        "provider_transaction_id": refund.get("payment_intent"),
        "amount_minor": refund.get("amount"),
        "currency": (refund.get("currency") or "").upper() or None,
        "reason": refund.get("reason") or (refund.get("metadata") or {}).get("reason"),
    }
