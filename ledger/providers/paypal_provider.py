# -----------------------------------------------------------
# ledger/providers/paypal_provider.py
# PayPal REST (Orders v2, Vault v3) over requests
# -----------------------------------------------------------
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from dateutil import parser as dateparser

from ledger.errors import ProviderError, ValidationError, WebhookError
from ledger.money import quantize
from ledger.providers.base import (
    PAYMENT_FAILED, PAYMENT_SUCCEEDED, REFUND_CREATED, CanonicalEvent, PaymentProvider,
)

log = logging.getLogger("ledger.providers.paypal")

SANDBOX_URL = "https://api-m.sandbox.paypal.com"
LIVE_URL = "https://api-m.paypal.com"

# headers PayPal signs a webhook delivery with
TRANSMISSION_HEADERS = {
    "auth_algo": "PAYPAL-AUTH-ALGO",
    "cert_url": "PAYPAL-CERT-URL",
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
}

_ISSUES = {
    "INSTRUMENT_DECLINED": "card_declined",
    "TRANSACTION_REFUSED": "card_declined",
    "PAYER_CANNOT_PAY": "card_declined",
    "CARD_EXPIRED": "payment_method_expired",
    "PAYER_ACTION_REQUIRED": "requires_action",
    "CAPTURE_FULLY_REFUNDED": "already_refunded",
    "REFUND_AMOUNT_EXCEEDED": "already_refunded",
}


def map_error(status: int, body: Dict[str, Any]) -> str:
    if status in (401, 403):
        return "not_configured"
    for detail in body.get("details") or []:
        code = _ISSUES.get(detail.get("issue"))
        if code:
            return code
    if status == 422:
        return "card_declined"
    return "provider_error"


def _metadata(resource: Dict[str, Any]) -> Dict[str, Any]:
    raw = resource.get("custom_id")
    if not raw:
        units = resource.get("purchase_units") or [{}]
        raw = units[0].get("custom_id")
    try:
        meta = json.loads(raw) if raw else {}
    except ValueError:
        return {}
    return meta if isinstance(meta, dict) else {}


def _capture(order: Dict[str, Any]) -> Dict[str, Any]:
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return {}


def _link_id(links, rel: str) -> Optional[str]:
    for link in links or []:
        if link.get("rel") == rel and link.get("href"):
            return link["href"].rstrip("/").split("/")[-1]
    return None


class PayPalProvider(PaymentProvider):
    """
    Checkout is an Orders v2 order approved by the payer on PayPal. An approved
    order still has to be captured (capture_checkout); the ledger only moves on
    PAYMENT.CAPTURE.* webhooks.
    """
    name = "paypal"
    signature_header = "PAYPAL-TRANSMISSION-SIG"

    def __init__(self, config=None, timeout: int = 30, tolerance: int = 300, session=None):
        super().__init__(config, timeout, tolerance)
        self.http = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires = 0.0

    def is_available(self) -> bool:
        return bool(self.config.enabled and self.config.api_key and self.config.api_secret)

    @property
    def base_url(self) -> str:
        return LIVE_URL if self.config.mode == "live" else SANDBOX_URL

    # -------------------------------------------------
    # HTTP
    # -------------------------------------------------
    def _access_token(self) -> str:
        self.require_available()
        if self._token and time.monotonic() < self._token_expires:
            return self._token
        try:
            resp = self.http.request(
                "POST",
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.config.api_key, self.config.api_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.error("PayPal token request failed: %s", e)
            raise ProviderError("provider_error", f"paypal token request failed: {e}")
        if resp.status_code != 200:
            log.error("PayPal OAuth error: %s %s", resp.status_code, resp.text)
            raise ProviderError("not_configured", "paypal rejected the client credentials")
        body = resp.json()
        self._token = body["access_token"]
        # refresh a minute early
        self._token_expires = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
        return self._token

    def _request(self, action: str, method: str, path: str, body: Optional[Dict[str, Any]] = None,
                 request_id: Optional[str] = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
            "PayPal-Request-Id": request_id or uuid.uuid4().hex,
        }
        try:
            resp = self.http.request(method, f"{self.base_url}{path}", json=body, headers=headers,
                                     timeout=self.timeout)
        except requests.RequestException as e:
            log.error("PayPal %s failed: %s", action, e)
            raise ProviderError("provider_error", f"paypal {action} failed: {e}")

        if 200 <= resp.status_code < 300:
            return resp.json() if resp.content else {}
        try:
            error = resp.json()
        except ValueError:
            error = {}
        if not isinstance(error, dict):
            error = {}
        code = map_error(resp.status_code, error)
        message = error.get("message") or f"paypal {action} returned {resp.status_code}"
        log.warning("PayPal %s rejected (%s): %s", action, resp.status_code, message)
        raise ProviderError(code, message, status=resp.status_code)

    @staticmethod
    def _money(amount, currency: str, places: int) -> Dict[str, str]:
        return {"currency_code": currency.upper(), "value": str(quantize(amount, places))}

    # -------------------------------------------------
    # SESSIONS
    # -------------------------------------------------
    def create_checkout_session(self, invoice, success_url: str, cancel_url: str, **opts) -> Dict[str, Any]:
        places = opts.get("places", 2)
        amount = opts.get("amount", invoice.total)
        order = self._request("orders.create", "POST", "/v2/checkout/orders", {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": invoice.invoice_number,
                "description": f"Invoice {invoice.invoice_number}",
                "custom_id": json.dumps({"invoice_id": invoice.id}, separators=(",", ":")),
                "amount": self._money(amount, invoice.currency, places),
            }],
            "payment_source": {"paypal": {"experience_context": {
                "user_action": "PAY_NOW",
                "return_url": success_url,
                "cancel_url": cancel_url,
            }}},
        })
        approve = next((link["href"] for link in order.get("links") or []
                        if link.get("rel") in ("approve", "payer-action")), None)
        log.info("PayPal order %s created for invoice %s", order.get("id"), invoice.invoice_number)
        return {"id": order["id"], "url": approve, "expires_at": None}

    def create_setup_session(self, owner_id: int, success_url: str, cancel_url: str, **opts) -> Dict[str, Any]:
        raise ProviderError("not_supported", "paypal vault tokens are registered outside hosted setup")

    def capture_checkout(self, session_id: str, **opts) -> Dict[str, Any]:
        """Capture an approved order; the payment itself is recorded from the capture webhook."""
        order = self._request("orders.capture", "POST", f"/v2/checkout/orders/{session_id}/capture", {},
                              request_id=f"capture-{session_id}")
        capture = _capture(order)
        log.info("PayPal order %s captured as %s (%s)", session_id, capture.get("id"), capture.get("status"))
        return {"id": session_id, "provider_transaction_id": capture.get("id"),
                "status": "succeeded" if capture.get("status") == "COMPLETED" else "pending"}

    # -------------------------------------------------
    # CHARGES / REFUNDS
    # -------------------------------------------------
    def charge_saved_method(self, payment_method, amount: Decimal, **opts) -> Dict[str, Any]:
        places = opts.get("places", 2)
        key = opts.get("idempotency_key")
        order = self._request("orders.create", "POST", "/v2/checkout/orders", {
            "intent": "CAPTURE",
            "purchase_units": [{
                "description": opts.get("description") or "Subscription renewal",
                "custom_id": json.dumps(opts.get("metadata") or {}, separators=(",", ":"), default=str),
                "amount": self._money(amount, opts.get("currency") or "EUR", places),
            }],
            "payment_source": {"token": {"id": payment_method.provider_payment_method_id,
                                         "type": "PAYMENT_METHOD_TOKEN"}},
        }, request_id=key)
        if order.get("status") != "COMPLETED":
            order = self._request("orders.capture", "POST", f"/v2/checkout/orders/{order['id']}/capture", {},
                                  request_id=f"{key}-capture" if key else None)

        capture = _capture(order)
        status = capture.get("status")
        if status == "COMPLETED":
            return {"id": order["id"], "provider_transaction_id": capture["id"], "status": "succeeded"}
        if status == "PENDING":
            return {"id": order["id"], "provider_transaction_id": capture["id"], "status": "pending"}
        raise ProviderError("card_declined", f"paypal capture {status or 'missing'}",
                            provider_transaction_id=capture.get("id"))

    def create_refund(self, provider_transaction_id: str, amount: Optional[Decimal] = None,
                      reason: Optional[str] = None, **opts) -> Dict[str, Any]:
        body: Dict[str, Any] = {"note_to_payer": (reason or "Refund")[:255]}
        if amount is not None:
            body["amount"] = self._money(amount, opts.get("currency") or "EUR", opts.get("places", 2))
        refund = self._request("captures.refund", "POST", f"/v2/payments/captures/{provider_transaction_id}/refund",
                               body)
        log.info("PayPal refund %s created for %s", refund.get("id"), provider_transaction_id)
        return {"id": refund["id"], "status": (refund.get("status") or "").lower() or None}

    # -------------------------------------------------
    # PAYMENT METHODS
    # -------------------------------------------------
    def get_payment_method_details(self, provider_payment_method_id: str, **opts) -> Dict[str, Any]:
        token = self._request("payment_tokens.get", "GET", f"/v3/vault/payment-tokens/{provider_payment_method_id}")
        source = token.get("payment_source") or {}
        card = source.get("card")
        if card:
            year, _, month = (card.get("expiry") or "").partition("-")
            return {
                "type": "card",
                "brand": (card.get("brand") or "").lower() or None,
                "last4": card.get("last_digits"),
                "exp_month": int(month) if month else None,
                "exp_year": int(year) if year else None,
            }
        if "paypal" in source:
            return {"type": "paypal", "brand": "paypal", "last4": None, "exp_month": None, "exp_year": None}
        return {"type": "unknown", "brand": None, "last4": None, "exp_month": None, "exp_year": None}

    def detach_payment_method(self, provider_payment_method_id: str, **opts) -> None:
        self._request("payment_tokens.delete", "DELETE", f"/v3/vault/payment-tokens/{provider_payment_method_id}")

    # -------------------------------------------------
    # WEBHOOKS
    # -------------------------------------------------
    def signature_from_headers(self, headers) -> Optional[str]:
        values = {field: headers.get(name) for field, name in TRANSMISSION_HEADERS.items()}
        if not any(values.values()):
            return None
        return json.dumps(values)

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str, secret: str) -> bool:
        """
        signature_header carries the PAYPAL-TRANSMISSION-* headers as JSON;
        secret is the webhook id PayPal verifies the delivery against.
        """
        if not signature_header:
            raise WebhookError("invalid_signature", "missing PayPal transmission headers")
        try:
            fields = json.loads(signature_header)
        except ValueError:
            raise WebhookError("invalid_signature", "malformed PayPal transmission headers")
        if not isinstance(fields, dict) or not all(fields.get(f) for f in TRANSMISSION_HEADERS):
            raise WebhookError("invalid_signature", "incomplete PayPal transmission headers")

        try:
            sent = dateparser.isoparse(fields["transmission_time"])
        except ValueError:
            raise WebhookError("invalid_signature", "unreadable transmission time")
        if sent.tzinfo is None:
            sent = sent.replace(tzinfo=timezone.utc)
        if abs((datetime.now(timezone.utc) - sent).total_seconds()) > self.tolerance:
            raise WebhookError("invalid_signature", "transmission time outside tolerance")

        if isinstance(raw_body, bytes):
            raw_body = raw_body.decode("utf-8")
        try:
            event = json.loads(raw_body)
        except ValueError:
            raise ValidationError("invalid_payload", "paypal webhook body is not JSON")

        result = self._request("webhooks.verify", "POST", "/v1/notifications/verify-webhook-signature", {
            **{f: fields[f] for f in TRANSMISSION_HEADERS},
            "webhook_id": secret,
            "webhook_event": event,
        })
        if result.get("verification_status") != "SUCCESS":
            raise WebhookError("invalid_signature", "paypal did not verify the delivery")
        return True

    def handle_webhook_event(self, payload: Dict[str, Any]) -> Optional[CanonicalEvent]:
        event_type = payload.get("event_type")
        resource = payload.get("resource") or {}
        event_id = payload.get("id")
        amount = resource.get("amount") or {}

        if event_type in ("PAYMENT.CAPTURE.COMPLETED", "PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"):
            meta = _metadata(resource)
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            data = {
                "provider_transaction_id": resource.get("id"),
                "session_id": related.get("order_id"),
                "amount": amount.get("value"),
                "currency": amount.get("currency_code"),
                "invoice_id": meta.get("invoice_id"),
                "subscription_id": meta.get("subscription_id"),
                "period_start": meta.get("period_start"),
            }
            if event_type == "PAYMENT.CAPTURE.COMPLETED":
                return CanonicalEvent(type=PAYMENT_SUCCEEDED, provider_event_id=event_id, data=data)
            data["error_code"] = "card_declined"
            return CanonicalEvent(type=PAYMENT_FAILED, provider_event_id=event_id, data=data)

        if event_type == "PAYMENT.CAPTURE.REFUNDED":
            return CanonicalEvent(type=REFUND_CREATED, provider_event_id=event_id, data={
                "refund_id": resource.get("id"),
                "provider_transaction_id": _link_id(resource.get("links"), "up"),
                "amount": amount.get("value"),
                "currency": amount.get("currency_code"),
                "reason": resource.get("note_to_payer"),
            })

        if event_type == "CHECKOUT.ORDER.APPROVED":
            log.info("PayPal order %s approved, awaiting capture", resource.get("id"))
        else:
            log.debug("PayPal event %s ignored", event_type)
        return None
