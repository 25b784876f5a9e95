# tests/test_webhook_routes.py
import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient

from ledger.deps import get_config, get_db
from ledger.main import app
from ledger.models import WebhookEvent
from tests.conftest import STRIPE_SECRET


@pytest.fixture
def client(db, config):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_config] = lambda: config
    yield TestClient(app)
    app.dependency_overrides.clear()


def stripe_request(payload, secret=STRIPE_SECRET):
    body = json.dumps(payload).encode()
    ts = int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return body, {"Stripe-Signature": f"t={ts},v1={digest}", "Content-Type": "application/json"}


def test_webhook_ok_and_duplicate(client, make_invoice):
    invoice = make_invoice(unit_price="25.00")
    body, headers = stripe_request({
        "id": "evt_route",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_9", "mode": "payment", "amount_total": 2500, "currency": "eur",
                            "payment_intent": "pi_route", "metadata": {"invoice_id": str(invoice.id)}}},
    })

    resp = client.post("/api/webhooks/stripe", content=body, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert resp.json()["result"] == "payment_recorded"

    again = client.post("/api/webhooks/stripe", content=body, headers=headers)
    assert again.status_code == 200
    assert again.json()["status"] == "duplicate_event"


def test_webhook_bad_signature_is_401(client, db):
    body, headers = stripe_request({"id": "evt_bad", "type": "checkout.session.completed"}, secret="whsec_wrong")
    resp = client.post("/api/webhooks/stripe", content=body, headers=headers)
    assert resp.status_code == 401
    assert db.query(WebhookEvent).count() == 0


def test_webhook_unknown_provider_is_400(client):
    resp = client.post("/api/webhooks/mollie", content=b"{}")
    assert resp.status_code == 400


def test_admin_routes_need_api_key(client):
    assert client.get("/api/invoices").status_code == 401


def test_invoice_payment_flow_over_http(client, eur):
    from decimal import Decimal

    from ledger.config import ADMIN_API_KEY

    headers = {"X-API-Key": ADMIN_API_KEY}
    order = client.post("/api/orders", headers=headers, json={
        "owner_id": 3,
        "line_items": [{"name": "Audit", "quantity": "2", "unit_price": "50.00"}],
        "tax_rate": "0.20",
    }).json()
    assert Decimal(str(order["total"])) == Decimal("120.00")
    assert client.post(f"/api/orders/{order['id']}/confirm", headers=headers).status_code == 200

    invoice = client.post("/api/invoices", headers=headers, json={"order_id": order["id"]}).json()
    payments = f"/api/invoices/{invoice['id']}/payments"

    too_much = client.post(payments, headers=headers, json={"amount": "120.01"})
    assert too_much.status_code == 422
    assert too_much.json()["error"] == "exceeds_remaining"

    assert client.post(payments, headers=headers, json={"amount": "120.00"}).status_code == 200
    balance = client.get(f"/api/invoices/{invoice['id']}/balance", headers=headers).json()
    assert balance["status"] == "paid"
    assert Decimal(str(balance["remaining"])) == Decimal("0")

    again = client.post(payments, headers=headers, json={"amount": "1.00"})
    assert again.status_code == 409
    assert again.json()["error"] == "not_payable"

    missing = client.get("/api/invoices/9999", headers=headers)
    assert missing.status_code == 404
