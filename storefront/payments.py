"""Payment gateway client and order/payment reconciliation.

The gateway (Xendit invoices API) reports invoice status asynchronously and
at least once. `reconcile` folds any such report into the order row using a
conditional update, so duplicate, stale or racing reports converge on the
same final state.
"""
import hmac
import logging
import time
from typing import Any

import httpx
from fastapi import Depends
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from . import crud, models, orders, schemas
from .config import ConfigState, get_config
from .errors import ConflictError, GatewayError, GatewayUnavailable, IntegrityError, ValidationError
from .models import OrderStatus, PaymentStatus, utcnow
from .utils import sanitize_input, to_major_units

logger = logging.getLogger(__name__)

PAYMENT_METHOD = "xendit"
DEFAULT_INVOICE_DURATION = 86400  # 24 hours
INVOICE_DURATION_SETTING = "payment_invoice_duration"

GATEWAY_STATUSES = {
    "PENDING": PaymentStatus.pending,
    "PAID": PaymentStatus.paid,
    "SETTLED": PaymentStatus.paid,
    "EXPIRED": PaymentStatus.expired,
}

# payment_status only ever moves up this ranking
PAYMENT_RANK = {
    PaymentStatus.unpaid: 0,
    PaymentStatus.pending: 1,
    PaymentStatus.expired: 2,
    PaymentStatus.paid: 3,
}

ORDER_STATUS_FOR_PAYMENT = {
    PaymentStatus.paid: OrderStatus.paid,
    PaymentStatus.expired: OrderStatus.cancelled,
}


class XenditClient:
    """Minimal client for the invoice endpoints the store uses."""

    def __init__(self, base_url: str, secret_key: str | None, timeout: float = 10.0,
                 transport: httpx.BaseTransport | None = None):
        self.base_url = base_url
        self.secret_key = secret_key
        self.timeout = timeout
        self.transport = transport

    def _get_client(self) -> httpx.Client:
        if not self.secret_key:
            raise GatewayError("payment gateway not configured")
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            auth=(self.secret_key, ""),
            transport=self.transport,
        )

    def _handle_response(self, response: httpx.Response) -> schemas.GatewayInvoice:
        if response.is_success:
            try:
                return schemas.GatewayInvoice.model_validate(response.json())
            except (ValueError, PydanticValidationError) as e:
                raise GatewayError("unexpected invoice payload from payment gateway") from e

        try:
            error_data = response.json()
        except ValueError:
            error_data = {"message": response.text or response.reason_phrase}
        message = error_data.get("message") or response.reason_phrase
        logger.error("payment gateway error %s: %s", response.status_code, error_data)
        raise GatewayError(f"payment gateway error: {message}", details=error_data)

    def _send(self, method: str, path: str, **kwargs) -> schemas.GatewayInvoice:
        try:
            with self._get_client() as client:
                response = client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("payment gateway timed out on %s %s", method, path)
            raise GatewayUnavailable("payment gateway timed out") from e
        except httpx.RequestError as e:
            logger.warning("payment gateway unreachable: %s", e)
            raise GatewayUnavailable("payment gateway unavailable") from e
        return self._handle_response(response)

    def create_invoice(self, payload: dict[str, Any]) -> schemas.GatewayInvoice:
        return self._send("POST", "/v2/invoices", json=payload)

    def get_invoice(self, invoice_id: str) -> schemas.GatewayInvoice:
        return self._send("GET", f"/v2/invoices/{invoice_id}")


def get_gateway(config: ConfigState = Depends(get_config)) -> XenditClient:
    return XenditClient(config.gateway_base_url, config.gateway_secret_key, config.gateway_timeout)


def verify_callback_token(expected: str | None, supplied: str | None) -> bool:
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def map_gateway_status(status: str) -> PaymentStatus:
    try:
        return GATEWAY_STATUSES[(status or "").upper()]
    except KeyError:
        raise GatewayError(f"unknown invoice status from payment gateway: {status!r}")


def reconcile(db: Session, order: models.Order, invoice: schemas.GatewayInvoice) -> models.Order:
    """Apply the gateway's view of an invoice to an order.

    Safe to call repeatedly with the same or an older snapshot: only a
    pending order moves, and payment_status never moves down PAYMENT_RANK.
    """
    if invoice.external_id != order.payment_invoice_number:
        logger.error(
            "invoice %s does not belong to order %s (expected %s)",
            invoice.external_id, order.id, order.payment_invoice_number,
        )
        raise IntegrityError("payment invoice does not match order")

    payment_status = map_gateway_status(invoice.status)
    if order.status != OrderStatus.pending.value:
        if payment_status == PaymentStatus.paid and order.status == OrderStatus.cancelled.value:
            logger.warning("order %s is cancelled but invoice %s reports payment", order.id, invoice.external_id)
        else:
            logger.info("order %s already %s; %s notice ignored", order.id, order.status, invoice.status)
        return order

    target = ORDER_STATUS_FOR_PAYMENT.get(payment_status)
    if target == OrderStatus.paid and invoice.paid_amount is not None:
        expected = to_major_units(order.total_cents)
        if invoice.paid_amount < expected:
            logger.error(
                "order %s: invoice %s reports %s paid, expected %s",
                order.id, invoice.external_id, invoice.paid_amount, expected,
            )
            raise GatewayError("paid amount does not cover the order total")
    current_payment = PaymentStatus(order.payment_status)
    if target is None and PAYMENT_RANK[payment_status] <= PAYMENT_RANK[current_payment]:
        return order

    values = {
        "payment_status": payment_status.value,
        "payment_status_date": invoice.paid_at or invoice.updated or utcnow(),
    }
    if invoice.payment_channel:
        values["payment_channel"] = invoice.payment_channel
    if target is not None:
        values["status"] = target.value

    won = orders.update_if_status(db, order.id, OrderStatus.pending, **values)
    db.commit()
    db.refresh(order)
    if not won:
        logger.info("order %s changed concurrently; now %s", order.id, order.status)
        return order

    if target is not None:
        logger.info("order %s: pending -> %s (invoice %s)", order.id, target.value, invoice.external_id)
    return order


def _invoice_duration(db: Session) -> int:
    raw = crud.get_setting(db, INVOICE_DURATION_SETTING)
    try:
        return int(raw) if raw else DEFAULT_INVOICE_DURATION
    except ValueError:
        logger.warning("ignoring invalid %s setting: %r", INVOICE_DURATION_SETTING, raw)
        return DEFAULT_INVOICE_DURATION


def build_invoice_request(order: models.Order, external_id: str, email: str,
                          customer: schemas.CustomerInfo | None, duration: int,
                          base_url: str | None) -> dict[str, Any]:
    customer = customer or schemas.CustomerInfo()
    name = sanitize_input(customer.name, max_length=255) or "Customer"
    given_names, _, surname = name.partition(" ")

    payload: dict[str, Any] = {
        "external_id": external_id,
        "amount": to_major_units(order.total_cents),
        "currency": "IDR",
        "payer_email": email,
        "description": f"Payment for order #{order.id}",
        "invoice_duration": duration,
        "customer": {"given_names": given_names, "email": email},
        "items": [
            {
                "name": sanitize_input(item.product_name, max_length=255) or "Product",
                "quantity": item.quantity,
                "price": to_major_units(item.price_cents),
            }
            for item in order.items
        ],
    }
    if order.shipping_cost_cents:
        payload["fees"] = [{"type": "Shipping", "value": to_major_units(order.shipping_cost_cents)}]
    if surname:
        payload["customer"]["surname"] = surname
    phone = "".join(ch for ch in (customer.phone or "") if ch.isdigit())
    if len(phone) >= 10:
        payload["customer"]["mobile_number"] = phone[:20]
    address = sanitize_input(customer.address, max_length=200)
    if address:
        entry = {"street_line1": address, "country": "ID"}
        if customer.city:
            entry["city"] = sanitize_input(customer.city, max_length=100)
        if customer.postal:
            entry["postal_code"] = sanitize_input(customer.postal, max_length=20)
        payload["customer"]["addresses"] = [entry]
    if base_url:
        payload["success_redirect_url"] = f"{base_url}/checkout/success?order_id={order.id}"
        payload["failure_redirect_url"] = f"{base_url}/checkout?error=payment_failed"
    return payload


def start_payment(db: Session, gateway: XenditClient, order: models.Order, user: models.User,
                  customer: schemas.CustomerInfo | None, config: ConfigState) -> schemas.InvoiceCreated:
    """Create a gateway invoice for a pending order and record it on the order."""
    if order.status != OrderStatus.pending.value:
        raise ConflictError("order is not pending")
    if order.payment_gateway_id and order.payment_status == PaymentStatus.pending.value:
        # an open invoice already exists; hand it back instead of issuing a second one
        return schemas.InvoiceCreated(
            order_id=order.id,
            payment_url=order.payment_url,
            invoice_id=order.payment_gateway_id,
            external_id=order.payment_invoice_number,
            status="PENDING",
            expiry_date=order.payment_expires_at,
        )

    amount = to_major_units(order.total_cents)
    if amount < config.min_invoice_amount:
        raise ValidationError(f"minimum payment amount is {config.min_invoice_amount}")
    email = (customer.email if customer and customer.email else user.email).strip()
    if not email:
        raise ValidationError("customer email is required")

    external_id = f"ORDER-{order.id}-{int(time.time() * 1000)}"[:64]
    payload = build_invoice_request(order, external_id, email, customer, _invoice_duration(db), config.base_url)
    invoice = gateway.create_invoice(payload)

    won = orders.update_if_status(
        db, order.id, OrderStatus.pending,
        payment_method=PAYMENT_METHOD,
        payment_invoice_number=external_id,
        payment_gateway_id=invoice.id,
        payment_url=invoice.invoice_url,
        payment_status=PaymentStatus.pending.value,
        payment_expires_at=invoice.expiry_date,
    )
    db.commit()
    db.refresh(order)
    if not won:
        logger.warning("order %s left pending before invoice %s was recorded", order.id, invoice.id)
        raise ConflictError("order is not pending")
    logger.info("invoice %s created for order %s", external_id, order.id)
    return schemas.InvoiceCreated(
        order_id=order.id,
        payment_url=invoice.invoice_url,
        invoice_id=invoice.id,
        external_id=external_id,
        status=invoice.status,
        expiry_date=invoice.expiry_date,
    )


def refresh_payment(db: Session, gateway: XenditClient, order: models.Order) -> models.Order:
    """Explicit reconciliation: ask the gateway for the invoice, then reconcile.

    Gateway timeouts propagate as GatewayUnavailable with the order untouched.
    """
    if not order.payment_gateway_id:
        raise ValidationError("no payment invoice found for this order")
    invoice = gateway.get_invoice(order.payment_gateway_id)
    return reconcile(db, order, invoice)
