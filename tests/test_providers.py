# tests/test_providers.py
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from ledger.config import BillingConfig, ProviderConfig
from ledger.errors import ProviderError, WebhookError
from ledger.providers import ProviderRegistry, available_payment_methods, provider_enabled
from ledger.providers.base import CHECKOUT_COMPLETED, PAYMENT_FAILED, PAYMENT_SUCCEEDED, REFUND_CREATED
from ledger.providers.paypal_provider import PayPalProvider
from ledger.providers.razorpay_provider import RazorpayProvider
from ledger.providers.stripe_provider import StripeProvider, map_error
from tests.conftest import RAZORPAY_SECRET, STRIPE_SECRET
from tests.fakes import PAYPAL_CONFIG, TOKEN, FakeHttp, FakeResponse


class Recorder:
    """Stands in for one stripe SDK call."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def __call__(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        if self.error is not None:
            raise self.error
        return self.result


def stripe_signature(body: bytes, ts: int, secret: str = STRIPE_SECRET) -> str:
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def card_pm():
    return SimpleNamespace(provider_customer_id="cus_1", provider_payment_method_id="pm_1")


# -------------------------------------------------
# registry
# -------------------------------------------------
def test_registry_availability(config):
    registry = ProviderRegistry(config)
    assert registry.available() == ["razorpay", "stripe"]
    assert registry.get("paypal").is_available() is False
    with pytest.raises(ProviderError) as exc:
        registry.get("mollie")
    assert exc.value.code == "not_configured"


def test_unconfigured_providers_not_offered():
    config = BillingConfig(providers={"razorpay": ProviderConfig(enabled=True, api_key="rzp_key")})
    assert available_payment_methods(config) == ["bank"]
    assert provider_enabled("razorpay", config) is False
    assert provider_enabled("nope", config) is False
    with pytest.raises(ProviderError) as exc:
        ProviderRegistry(config).get("stripe").require_available()
    assert exc.value.code == "not_configured"


# -------------------------------------------------
# stripe
# -------------------------------------------------
def test_map_error():
    assert map_error({"code": "card_declined", "decline_code": "insufficient_funds"}) == "card_declined"
    assert map_error({"code": "expired_card"}) == "payment_method_expired"
    assert map_error({"code": "authentication_required"}) == "requires_action"
    assert map_error({"type": "api_error"}) == "provider_error"


def test_stripe_signature_accepts_valid_header(config):
    provider = StripeProvider(config.provider("stripe"))
    body = b'{"id": "evt_1"}'
    header = stripe_signature(body, int(time.time()))
    assert provider.verify_webhook_signature(body, header, STRIPE_SECRET)


@pytest.mark.parametrize("header", [
    "",
    "t=1700000000",
    "v1=abc",
    "t=soon,v1=abc",
])
def test_stripe_signature_rejects_malformed(config, header):
    provider = StripeProvider(config.provider("stripe"))
    with pytest.raises(WebhookError):
        provider.verify_webhook_signature(b"{}", header, STRIPE_SECRET)


def test_stripe_signature_rejects_stale_and_tampered(config):
    provider = StripeProvider(config.provider("stripe"), tolerance=300)
    body = b'{"id": "evt_1"}'
    with pytest.raises(WebhookError):
        provider.verify_webhook_signature(body, stripe_signature(body, int(time.time()) - 600), STRIPE_SECRET)

    header = stripe_signature(body, int(time.time()))
    with pytest.raises(WebhookError):
        provider.verify_webhook_signature(b'{"id": "evt_2"}', header, STRIPE_SECRET)
    with pytest.raises(WebhookError):
        provider.verify_webhook_signature(body, header, "whsec_other")


def test_stripe_charge_succeeded(config, monkeypatch):
    create = Recorder({"id": "pi_9", "status": "succeeded"})
    monkeypatch.setattr(stripe.PaymentIntent, "create", create)
    provider = StripeProvider(config.provider("stripe"))

    result = provider.charge_saved_method(card_pm(), Decimal("19.99"), currency="EUR", places=2,
                                          metadata={"invoice_id": 4}, idempotency_key="renewal-4-0")

    assert result == {"id": "pi_9", "provider_transaction_id": "pi_9", "status": "succeeded"}
    _, params = create.calls[0]
    assert params["amount"] == 1999
    assert params["currency"] == "eur"
    assert params["customer"] == "cus_1"
    assert params["off_session"] is True
    assert params["api_key"] == "sk_test_123"
    assert params["idempotency_key"] == "renewal-4-0"


def test_stripe_charge_processing_is_pending(config, monkeypatch):
    monkeypatch.setattr(stripe.PaymentIntent, "create", Recorder({"id": "pi_9", "status": "processing"}))
    provider = StripeProvider(config.provider("stripe"))
    assert provider.charge_saved_method(card_pm(), Decimal("5"))["status"] == "pending"


@pytest.mark.parametrize("error, code", [
    (stripe.CardError("Your card was declined.", None, "card_declined", http_status=402,
                      json_body={"error": {"type": "card_error", "code": "card_declined"}}), "card_declined"),
    (stripe.CardError("Your card has expired.", None, "expired_card", http_status=402,
                      json_body={"error": {"type": "card_error", "code": "expired_card"}}), "payment_method_expired"),
    (stripe.AuthenticationError("Invalid API Key provided", http_status=401), "not_configured"),
    (stripe.APIConnectionError("timed out"), "provider_error"),
    (stripe.APIError("Something went wrong", http_status=500), "provider_error"),
])
def test_stripe_charge_errors(config, monkeypatch, error, code):
    monkeypatch.setattr(stripe.PaymentIntent, "create", Recorder(error=error))
    provider = StripeProvider(config.provider("stripe"))
    with pytest.raises(ProviderError) as exc:
        provider.charge_saved_method(card_pm(), Decimal("5"))
    assert exc.value.code == code


def test_stripe_charge_requires_action(config, monkeypatch):
    monkeypatch.setattr(stripe.PaymentIntent, "create", Recorder({"id": "pi_3ds", "status": "requires_action"}))
    provider = StripeProvider(config.provider("stripe"))
    with pytest.raises(ProviderError) as exc:
        provider.charge_saved_method(card_pm(), Decimal("5"))
    assert exc.value.code == "requires_action"
    assert exc.value.details["provider_transaction_id"] == "pi_3ds"


def test_stripe_refund_keeps_custom_reason_in_metadata(config, monkeypatch):
    create = Recorder({"id": "re_1", "status": "succeeded"})
    monkeypatch.setattr(stripe.Refund, "create", create)
    provider = StripeProvider(config.provider("stripe"))
    assert provider.create_refund("pi_1", Decimal("2.50"), "damaged item") == {"id": "re_1", "status": "succeeded"}
    _, params = create.calls[0]
    assert params["amount"] == 250
    assert params["reason"] == "requested_by_customer"
    assert params["metadata"] == {"reason": "damaged item"}


def test_stripe_checkout_session(config, monkeypatch, make_invoice):
    create = Recorder({"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1", "expires_at": 1700001800})
    monkeypatch.setattr(stripe.checkout.Session, "create", create)
    invoice = make_invoice(unit_price="42.50")
    provider = StripeProvider(config.provider("stripe"))

    session = provider.create_checkout_session(invoice, "https://ok", "https://cancel", amount=Decimal("42.50"),
                                               customer_email="payer@example.com")

    assert session == {"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1", "expires_at": 1700001800}
    _, params = create.calls[0]
    assert params["line_items"][0]["price_data"]["unit_amount"] == 4250
    assert params["metadata"] == {"invoice_id": invoice.id}


def test_stripe_checkout_event_mapping(config):
    provider = StripeProvider(config.provider("stripe"))
    event = provider.handle_webhook_event({
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_1", "mode": "payment", "amount_total": 12000, "currency": "eur",
            "payment_intent": "pi_1", "metadata": {"invoice_id": "7"},
        }},
    })
    assert event.type == CHECKOUT_COMPLETED
    assert event.provider_event_id == "evt_1"
    assert event.data["invoice_id"] == "7"
    assert event.data["amount_minor"] == 12000
    assert event.data["currency"] == "EUR"
    assert event.data["provider_transaction_id"] == "pi_1"


def test_stripe_failed_payment_and_refund_mapping(config):
    provider = StripeProvider(config.provider("stripe"))
    failed = provider.handle_webhook_event({
        "id": "evt_2",
        "type": "payment_intent.payment_failed",
        "data": {"object": {
            "id": "pi_2", "amount": 1900, "currency": "eur",
            "metadata": {"subscription_id": "3"},
            "last_payment_error": {"code": "card_declined"},
        }},
    })
    assert failed.type == PAYMENT_FAILED
    assert failed.data["error_code"] == "card_declined"
    assert failed.data["subscription_id"] == "3"

    refunded = provider.handle_webhook_event({
        "id": "evt_3",
        "type": "charge.refunded",
        "data": {"object": {
            "payment_intent": "pi_2",
            "refunds": {"data": [{"id": "re_2", "amount": 500, "currency": "eur", "reason": "duplicate"}]},
        }},
    })
    assert refunded.type == REFUND_CREATED
    assert refunded.data["refund_id"] == "re_2"
    assert refunded.data["provider_transaction_id"] == "pi_2"

    assert provider.handle_webhook_event({"id": "evt_4", "type": "customer.created", "data": {}}) is None


# -------------------------------------------------
# razorpay
# -------------------------------------------------
def test_razorpay_signature(config):
    provider = RazorpayProvider(config.provider("razorpay"))
    body = json.dumps({"event": "payment.captured"}).encode()
    good = hmac.new(RAZORPAY_SECRET.encode(), body, hashlib.sha256).hexdigest()
    assert provider.verify_webhook_signature(body, good, RAZORPAY_SECRET)
    with pytest.raises(WebhookError):
        provider.verify_webhook_signature(body + b" ", good, RAZORPAY_SECRET)
    with pytest.raises(WebhookError):
        provider.verify_webhook_signature(body, "", RAZORPAY_SECRET)


def test_razorpay_event_mapping(config):
    provider = RazorpayProvider(config.provider("razorpay"))
    captured = provider.handle_webhook_event({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {
            "id": "pay_1", "amount": 50000, "currency": "INR", "notes": {"invoice_id": "9"},
        }}},
    })
    assert captured.type == PAYMENT_SUCCEEDED
    assert captured.provider_event_id == "payment.captured:pay_1"
    assert captured.data["invoice_id"] == "9"
    assert captured.data["amount_minor"] == 50000

    paid = provider.handle_webhook_event({
        "id": "evt_link",
        "event": "payment_link.paid",
        "payload": {
            "payment_link": {"entity": {"id": "plink_1", "amount_paid": 50000, "notes": {"invoice_id": "9"}}},
            "payment": {"entity": {"id": "pay_1", "amount": 50000, "currency": "INR"}},
        },
    })
    assert paid.type == CHECKOUT_COMPLETED
    assert paid.provider_event_id == "evt_link"
    assert paid.data["mode"] == "payment"
    assert paid.data["session_id"] == "plink_1"

    refund = provider.handle_webhook_event({
        "event": "refund.processed",
        "payload": {"refund": {"entity": {
            "id": "rfnd_1", "payment_id": "pay_1", "amount": 1000, "currency": "INR", "notes": {"reason": "late"},
        }}},
    })
    assert refund.type == REFUND_CREATED
    assert refund.data["reason"] == "late"
    assert provider.handle_webhook_event({"event": "invoice.issued", "payload": {}}) is None


def test_razorpay_recurring_charge_is_pending(config):
    from razorpay.errors import BadRequestError

    client = SimpleNamespace(
        order=SimpleNamespace(create=Recorder({"id": "order_1"})),
        payment=SimpleNamespace(createRecurring=Recorder({"razorpay_payment_id": "pay_7"})),
    )
    provider = RazorpayProvider(config.provider("razorpay"), client=client)
    result = provider.charge_saved_method(card_pm(), Decimal("499.00"), currency="inr", metadata={"invoice_id": 3})
    assert result == {"id": "order_1", "provider_transaction_id": "pay_7", "status": "pending"}
    order_args, order_kwargs = client.order.create.calls[0]
    assert order_args[0]["amount"] == 49900
    assert order_args[0]["notes"] == {"invoice_id": "3"}
    assert order_kwargs["timeout"] == provider.timeout

    client.payment.createRecurring = Recorder(error=BadRequestError("Card has expired"))
    with pytest.raises(ProviderError) as exc:
        provider.charge_saved_method(card_pm(), Decimal("499.00"), currency="INR")
    assert exc.value.code == "payment_method_expired"


def test_razorpay_setup_session_not_supported(config):
    with pytest.raises(ProviderError) as exc:
        RazorpayProvider(config.provider("razorpay")).create_setup_session(1, "https://ok", "https://cancel")
    assert exc.value.code == "not_supported"


# -------------------------------------------------
# paypal
# -------------------------------------------------
def paypal(*responses):
    return PayPalProvider(PAYPAL_CONFIG, timeout=7, session=FakeHttp(TOKEN, *responses))


def completed_order(capture_id="CAP-1", status="COMPLETED"):
    return {"id": "ORD-9", "status": status, "purchase_units": [
        {"payments": {"captures": [{"id": capture_id, "status": status}]}},
    ]}


def transmission_headers(when=None):
    when = when or datetime.now(timezone.utc)
    return {
        "PAYPAL-AUTH-ALGO": "SHA256withRSA",
        "PAYPAL-CERT-URL": "https://api.paypal.com/v1/notifications/certs/CERT-1",
        "PAYPAL-TRANSMISSION-ID": "tx-1",
        "PAYPAL-TRANSMISSION-SIG": "sig==",
        "PAYPAL-TRANSMISSION-TIME": when.isoformat(),
    }


def test_paypal_checkout_creates_order(db, config, make_invoice):
    invoice = make_invoice(unit_price="100.00")
    provider = paypal(FakeResponse(201, {"id": "ORD-1", "status": "PAYER_ACTION_REQUIRED", "links": [
        {"rel": "self", "href": "https://api-m.sandbox.paypal.com/v2/checkout/orders/ORD-1"},
        {"rel": "payer-action", "href": "https://www.sandbox.paypal.com/checkoutnow?token=ORD-1"},
    ]}))

    session = provider.create_checkout_session(invoice, "https://ok", "https://cancel", amount=Decimal("60"))

    assert session == {"id": "ORD-1", "url": "https://www.sandbox.paypal.com/checkoutnow?token=ORD-1",
                       "expires_at": None}
    token_call, order_call = provider.http.calls
    assert token_call[1] == "https://api-m.sandbox.paypal.com/v1/oauth2/token"
    assert token_call[2]["auth"] == ("client", "secret")
    method, url, kwargs = order_call
    assert (method, url) == ("POST", "https://api-m.sandbox.paypal.com/v2/checkout/orders")
    assert kwargs["headers"]["Authorization"] == "Bearer A21"
    assert kwargs["timeout"] == 7
    unit = kwargs["json"]["purchase_units"][0]
    assert unit["amount"] == {"currency_code": "EUR", "value": "60.00"}
    assert json.loads(unit["custom_id"]) == {"invoice_id": invoice.id}


def test_paypal_access_token_is_cached():
    provider = paypal(FakeResponse(200, {"id": "TOK-1", "payment_source": {"paypal": {}}}),
                      FakeResponse(204))
    assert provider.get_payment_method_details("TOK-1")["type"] == "paypal"
    provider.detach_payment_method("TOK-1")
    methods = [c[0] for c in provider.http.calls]
    assert methods == ["POST", "GET", "DELETE"]


def test_paypal_bad_credentials_not_configured():
    provider = PayPalProvider(PAYPAL_CONFIG, session=FakeHttp(FakeResponse(401, {"error": "invalid_client"})))
    with pytest.raises(ProviderError) as exc:
        provider.create_refund("CAP-1")
    assert exc.value.code == "not_configured"


def test_paypal_saved_method_charge(config):
    provider = paypal(FakeResponse(201, completed_order()))
    result = provider.charge_saved_method(SimpleNamespace(provider_payment_method_id="TOK-7"), Decimal("19.00"),
                                          currency="eur", idempotency_key="renewal-4-0",
                                          metadata={"invoice_id": 4, "subscription_id": 2})
    assert result == {"id": "ORD-9", "provider_transaction_id": "CAP-1", "status": "succeeded"}
    kwargs = provider.http.calls[1][2]
    assert kwargs["headers"]["PayPal-Request-Id"] == "renewal-4-0"
    assert kwargs["json"]["payment_source"]["token"] == {"id": "TOK-7", "type": "PAYMENT_METHOD_TOKEN"}


def test_paypal_charge_captures_created_order_and_maps_declines():
    created = {"id": "ORD-9", "status": "CREATED"}
    provider = paypal(FakeResponse(201, created), FakeResponse(201, completed_order(status="PENDING")))
    result = provider.charge_saved_method(SimpleNamespace(provider_payment_method_id="TOK-7"), Decimal("5"),
                                          idempotency_key="renewal-1-0")
    assert result["status"] == "pending"
    capture_call = provider.http.calls[2]
    assert capture_call[1].endswith("/v2/checkout/orders/ORD-9/capture")
    assert capture_call[2]["headers"]["PayPal-Request-Id"] == "renewal-1-0-capture"

    declined = FakeResponse(422, {"name": "UNPROCESSABLE_ENTITY", "message": "declined",
                                  "details": [{"issue": "INSTRUMENT_DECLINED"}]})
    provider = paypal(declined)
    with pytest.raises(ProviderError) as exc:
        provider.charge_saved_method(SimpleNamespace(provider_payment_method_id="TOK-7"), Decimal("5"))
    assert exc.value.code == "card_declined"


def test_paypal_partial_refund():
    provider = paypal(FakeResponse(201, {"id": "RF-1", "status": "COMPLETED"}))
    refund = provider.create_refund("CAP-1", Decimal("10.5"), "late delivery", currency="eur")
    assert refund == {"id": "RF-1", "status": "completed"}
    method, url, kwargs = provider.http.calls[1]
    assert url.endswith("/v2/payments/captures/CAP-1/refund")
    assert kwargs["json"] == {"note_to_payer": "late delivery",
                              "amount": {"currency_code": "EUR", "value": "10.50"}}


def test_paypal_signature_verified_through_api():
    provider = paypal(FakeResponse(200, {"verification_status": "SUCCESS"}))
    body = json.dumps({"id": "WH-EVT-1", "event_type": "PAYMENT.CAPTURE.COMPLETED"}).encode()
    header = provider.signature_from_headers(transmission_headers())

    assert provider.verify_webhook_signature(body, header, "WH-1")
    sent = provider.http.calls[1][2]["json"]
    assert sent["webhook_id"] == "WH-1"
    assert sent["transmission_id"] == "tx-1"
    assert sent["webhook_event"]["id"] == "WH-EVT-1"


def test_paypal_signature_rejections():
    provider = paypal(FakeResponse(200, {"verification_status": "FAILURE"}))
    body = b'{"id": "WH-EVT-1"}'
    assert provider.signature_from_headers({}) is None
    with pytest.raises(WebhookError):
        provider.verify_webhook_signature(body, "", "WH-1")
    partial = transmission_headers()
    del partial["PAYPAL-CERT-URL"]
    with pytest.raises(WebhookError):
        provider.verify_webhook_signature(body, provider.signature_from_headers(partial), "WH-1")
    stale = transmission_headers(datetime.now(timezone.utc) - timedelta(hours=1))
    with pytest.raises(WebhookError):
        provider.verify_webhook_signature(body, provider.signature_from_headers(stale), "WH-1")
    assert provider.http.calls == []

    with pytest.raises(WebhookError):
        provider.verify_webhook_signature(body, provider.signature_from_headers(transmission_headers()), "WH-1")


def test_paypal_event_mapping():
    provider = PayPalProvider(PAYPAL_CONFIG, session=FakeHttp())
    captured = provider.handle_webhook_event({
        "id": "WH-1", "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAP-1", "status": "COMPLETED",
            "amount": {"currency_code": "EUR", "value": "100.00"},
            "custom_id": '{"invoice_id":12}',
            "supplementary_data": {"related_ids": {"order_id": "ORD-1"}},
        },
    })
    assert captured.type == PAYMENT_SUCCEEDED
    assert captured.data["invoice_id"] == 12
    assert captured.data["amount"] == "100.00"
    assert captured.data["session_id"] == "ORD-1"

    denied = provider.handle_webhook_event({
        "id": "WH-2", "event_type": "PAYMENT.CAPTURE.DENIED",
        "resource": {"id": "CAP-2", "custom_id": '{"subscription_id":3}'},
    })
    assert denied.type == PAYMENT_FAILED
    assert denied.data["subscription_id"] == 3

    refunded = provider.handle_webhook_event({
        "id": "WH-3", "event_type": "PAYMENT.CAPTURE.REFUNDED",
        "resource": {"id": "RF-1", "amount": {"currency_code": "EUR", "value": "10.00"}, "links": [
            {"rel": "self", "href": "https://api.paypal.com/v2/payments/refunds/RF-1"},
            {"rel": "up", "href": "https://api.paypal.com/v2/payments/captures/CAP-1"},
        ]},
    })
    assert refunded.type == REFUND_CREATED
    assert refunded.data["provider_transaction_id"] == "CAP-1"

    assert provider.handle_webhook_event({"id": "WH-4", "event_type": "CHECKOUT.ORDER.APPROVED",
                                          "resource": {"id": "ORD-1"}}) is None


def test_capture_checkout_only_for_paypal(config):
    provider = paypal(FakeResponse(201, completed_order(capture_id="CAP-5")))
    assert provider.capture_checkout("ORD-9") == {"id": "ORD-9", "provider_transaction_id": "CAP-5",
                                                 "status": "succeeded"}
    with pytest.raises(ProviderError) as exc:
        StripeProvider(config.provider("stripe")).capture_checkout("cs_1")
    assert exc.value.code == "not_supported"
