import base64
import json

import httpx
import pytest

from storefront import models, payments, schemas
from storefront.errors import GatewayError, GatewayUnavailable
from conftest import login

HEADERS = {"x-callback-token": "callback-token"}


@pytest.fixture
def shopper(make_client, make_user, make_product):
    make_user("shopper@example.com")
    product = make_product(50000, stock=10)
    c = make_client()
    login(c, "shopper@example.com")
    order = c.post("/checkout", json={"items": [{"product_id": product.id, "quantity": 2}]}).json()
    return c, order


def start_invoice(c, order_id, **customer):
    body = {"order_id": order_id}
    if customer:
        body["customer"] = customer
    return c.post("/payments/invoice", json=body)


def test_create_invoice_records_reference(shopper, gateway, db_session):
    c, order = shopper
    r = start_invoice(c, order["id"], name="Budi <b>Santoso</b>", phone="+62 812-3456-7890")
    assert r.status_code == 200
    body = r.json()
    assert body["external_id"].startswith(f"ORDER-{order['id']}-")
    assert body["payment_url"] == "https://checkout.example/inv_1"

    sent = gateway.created[0]
    assert sent["amount"] == 1150
    assert sent["payer_email"] == "shopper@example.com"
    assert sent["customer"]["given_names"] == "Budi"
    assert sent["customer"]["surname"] == "Santoso"
    assert sent["customer"]["mobile_number"] == "6281234567890"
    assert sent["fees"] == [{"type": "Shipping", "value": 150}]
    assert sent["success_redirect_url"] == f"http://shop.test/checkout/success?order_id={order['id']}"

    stored = db_session.get(models.Order, order["id"])
    db_session.refresh(stored)
    assert stored.payment_invoice_number == body["external_id"]
    assert stored.payment_gateway_id == "inv_1"
    assert stored.payment_status == "pending"
    assert stored.status == "pending"


def test_create_invoice_is_not_repeated(shopper, gateway):
    c, order = shopper
    first = start_invoice(c, order["id"]).json()
    second = start_invoice(c, order["id"]).json()
    assert first["external_id"] == second["external_id"]
    assert len(gateway.created) == 1


def test_invoice_duration_comes_from_settings(shopper, gateway, db_session):
    from storefront import crud
    crud.upsert_setting(db_session, "payment_invoice_duration", "3600")
    c, order = shopper
    start_invoice(c, order["id"])
    assert gateway.created[0]["invoice_duration"] == 3600


def test_invoice_minimum_amount(make_client, make_user, make_product):
    make_user("cheap@example.com")
    p = make_product(100)
    c = make_client()
    login(c, "cheap@example.com")
    order = c.post("/checkout", json={"items": [{"product_id": p.id, "quantity": 1}]}).json()
    # 100 + 7000 cents is 71 units, below the configured minimum
    assert start_invoice(c, order["id"]).status_code == 400


def test_invoice_for_someone_elses_order(shopper, make_client, make_user):
    _, order = shopper
    make_user("intruder@example.com")
    intruder = make_client()
    login(intruder, "intruder@example.com")
    assert start_invoice(intruder, order["id"]).status_code == 404


def test_gateway_outage_leaves_order_untouched(shopper, gateway, db_session):
    c, order = shopper
    gateway.error = GatewayUnavailable("payment gateway timed out")
    r = start_invoice(c, order["id"])
    assert r.status_code == 502
    stored = db_session.get(models.Order, order["id"])
    db_session.refresh(stored)
    assert stored.payment_invoice_number is None


def webhook_body(invoice: schemas.GatewayInvoice, **overrides):
    body = json.loads(invoice.model_dump_json())
    body.update(overrides)
    return body


def test_webhook_requires_callback_token(shopper, gateway, client):
    c, order = shopper
    start_invoice(c, order["id"])
    paid = gateway.set_status("inv_1", "PAID")

    assert client.post("/payments/webhook", json=webhook_body(paid)).status_code == 401
    r = client.post("/payments/webhook", json=webhook_body(paid), headers={"x-callback-token": "wrong"})
    assert r.status_code == 401
    assert c.get(f"/orders/{order['id']}/payment-status").json()["status"] == "pending"


def test_webhook_marks_order_paid_idempotently(shopper, gateway, client):
    c, order = shopper
    start_invoice(c, order["id"])
    paid = gateway.set_status("inv_1", "PAID", paid_amount=1150, payment_channel="BCA")

    for _ in range(2):
        r = client.post("/payments/webhook", json=webhook_body(paid), headers=HEADERS)
        assert r.status_code == 200
        assert r.json()["order_status"] == "paid"

    status = c.get(f"/orders/{order['id']}/payment-status").json()
    assert status == {"order_id": order["id"], "status": "paid", "payment_status": "paid"}
    assert c.get(f"/orders/{order['id']}").json()["payment_channel"] == "BCA"


def test_webhook_for_unknown_invoice(client):
    body = {"id": "inv_x", "external_id": "ORDER-404-1", "status": "PAID"}
    assert client.post("/payments/webhook", json=body, headers=HEADERS).status_code == 404


def test_refresh_pulls_status_from_gateway(shopper, gateway):
    c, order = shopper
    start_invoice(c, order["id"])
    gateway.set_status("inv_1", "PAID")

    r = c.post(f"/orders/{order['id']}/payment/refresh")
    assert r.status_code == 200
    assert r.json()["status"] == "paid"


def test_refresh_without_invoice(shopper):
    c, order = shopper
    assert c.post(f"/orders/{order['id']}/payment/refresh").status_code == 400


def test_refresh_timeout_is_retryable(shopper, gateway):
    c, order = shopper
    start_invoice(c, order["id"])
    gateway.set_status("inv_1", "PAID")
    gateway.error = GatewayUnavailable("payment gateway timed out")

    assert c.post(f"/orders/{order['id']}/payment/refresh").status_code == 502
    assert c.get(f"/orders/{order['id']}/payment-status").json()["status"] == "pending"

    gateway.error = None
    assert c.post(f"/orders/{order['id']}/payment/refresh").json()["status"] == "paid"


def test_refresh_with_mismatched_invoice(shopper, gateway):
    c, order = shopper
    start_invoice(c, order["id"])
    gateway.set_status("inv_1", "PAID", external_id="ORDER-someone-else")

    assert c.post(f"/orders/{order['id']}/payment/refresh").status_code == 500
    assert c.get(f"/orders/{order['id']}/payment-status").json()["status"] == "pending"


# -------------------- gateway client --------------------

INVOICE_JSON = {
    "id": "579c8d61f23fa4ca35e52da4",
    "external_id": "ORDER-1-1",
    "user_id": "5781d19b2e2385880609791c",
    "status": "PENDING",
    "amount": 1150,
    "invoice_url": "https://checkout.xendit.co/web/579c8d61f23fa4ca35e52da4",
    "expiry_date": "2025-01-02T03:04:05.000Z",
}


def make_client_with(handler, secret="xnd_development_key"):
    return payments.XenditClient("https://api.xendit.test", secret, timeout=1.0,
                                 transport=httpx.MockTransport(handler))


def test_client_create_invoice():
    seen = {}

    def handler(request: httpx.Request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=INVOICE_JSON)

    invoice = make_client_with(handler).create_invoice({"external_id": "ORDER-1-1", "amount": 1150})
    assert seen["method"] == "POST"
    assert seen["path"] == "/v2/invoices"
    expected = base64.b64encode(b"xnd_development_key:").decode()
    assert seen["auth"] == f"Basic {expected}"
    assert seen["body"]["amount"] == 1150
    assert invoice.id == INVOICE_JSON["id"]
    assert invoice.expiry_date.year == 2025


def test_client_get_invoice():
    def handler(request):
        assert request.url.path == "/v2/invoices/579c8d61f23fa4ca35e52da4"
        return httpx.Response(200, json={**INVOICE_JSON, "status": "PAID", "paid_amount": 1150})

    invoice = make_client_with(handler).get_invoice("579c8d61f23fa4ca35e52da4")
    assert invoice.status == "PAID"
    assert invoice.paid_amount == 1150


def test_client_error_response():
    def handler(request):
        return httpx.Response(400, json={"error_code": "API_VALIDATION_ERROR", "message": "amount is too small"})

    with pytest.raises(GatewayError) as exc:
        make_client_with(handler).create_invoice({})
    assert "amount is too small" in str(exc.value)
    assert exc.value.details["error_code"] == "API_VALIDATION_ERROR"
    assert not isinstance(exc.value, GatewayUnavailable)


def test_client_timeout_and_connection_errors():
    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GatewayUnavailable):
        make_client_with(timeout).get_invoice("x")
    with pytest.raises(GatewayUnavailable):
        make_client_with(refused).get_invoice("x")


def test_client_bad_payload_and_missing_key():
    def handler(request):
        return httpx.Response(200, json={"unexpected": True})

    with pytest.raises(GatewayError):
        make_client_with(handler).get_invoice("x")
    with pytest.raises(GatewayError):
        make_client_with(handler, secret=None).get_invoice("x")


def test_verify_callback_token():
    assert payments.verify_callback_token("abc", "abc")
    assert not payments.verify_callback_token("abc", "abd")
    assert not payments.verify_callback_token("abc", None)
    assert not payments.verify_callback_token(None, "abc")
