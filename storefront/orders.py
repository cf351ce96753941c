"""Order storage and the order status state machine.

Status changes never read-modify-write: every transition is a conditional
UPDATE keyed on the status the caller expects, and the row count tells the
caller whether its transition was the one that took effect.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Iterable, List

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from . import models, schemas
from .errors import ConflictError, NotFoundError, ValidationError
from .models import OrderStatus, utcnow
from .shipping import shipping_cost

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.paid, OrderStatus.cancelled},
    OrderStatus.paid: {OrderStatus.fulfilled, OrderStatus.cancelled},
    OrderStatus.cancelled: set(),
    OrderStatus.fulfilled: set(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def _merge_lines(items: Iterable[schemas.CartItem]) -> "OrderedDict[int, int]":
    merged: "OrderedDict[int, int]" = OrderedDict()
    for item in items:
        if item.quantity < 1:
            raise ValidationError("invalid quantity")
        merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity
    return merged


def create_order(db: Session, user_id: int, items: List[schemas.CartItem]) -> models.Order:
    """Create an order with its items, totals and stock decrement in one commit."""
    if not items:
        raise ValidationError("items required")
    lines = _merge_lines(items)

    products = {
        p.id: p
        for p in db.execute(select(models.Product).where(models.Product.id.in_(list(lines)))).scalars()
    }
    for product_id, quantity in lines.items():
        product = products.get(product_id)
        if product is None:
            raise NotFoundError(f"product not found: {product_id}")
        if product.stock < quantity:
            raise ConflictError(f"insufficient stock for product {product_id}")

    order = models.Order(
        user_id=user_id,
        status=OrderStatus.pending.value,
        payment_status=models.PaymentStatus.unpaid.value,
    )
    subtotal = 0
    total_quantity = 0
    for product_id, quantity in lines.items():
        product = products[product_id]
        order.items.append(models.OrderItem(
            product_id=product_id,
            product_name=product.name,
            quantity=quantity,
            price_cents=product.price_cents,
        ))
        subtotal += quantity * product.price_cents
        total_quantity += quantity

    try:
        for product_id, quantity in lines.items():
            taken = db.execute(
                update(models.Product)
                .where(models.Product.id == product_id, models.Product.stock >= quantity)
                .values(stock=models.Product.stock - quantity, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if taken.rowcount != 1:
                raise ConflictError(f"insufficient stock for product {product_id}")

        order.shipping_cost_cents = shipping_cost(total_quantity)
        order.total_cents = subtotal + order.shipping_cost_cents
        db.add(order)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    logger.info("order %s created for user %s: total=%s", order.id, user_id, order.total_cents)
    return order


def _with_items(stmt):
    return stmt.options(selectinload(models.Order.items))


def get_order(db: Session, order_id: int) -> models.Order:
    order = db.execute(_with_items(select(models.Order).where(models.Order.id == order_id))).scalar_one_or_none()
    if order is None:
        raise NotFoundError("order not found")
    return order


def get_order_for_user(db: Session, order_id: int, user_id: int) -> models.Order:
    # orders owned by someone else look exactly like missing ones
    stmt = select(models.Order).where(models.Order.id == order_id, models.Order.user_id == user_id)
    order = db.execute(_with_items(stmt)).scalar_one_or_none()
    if order is None:
        raise NotFoundError("order not found")
    return order


def list_orders_for_user(db: Session, user_id: int) -> List[models.Order]:
    stmt = select(models.Order).where(models.Order.user_id == user_id).order_by(models.Order.id.desc())
    return list(db.execute(_with_items(stmt)).scalars())


def list_orders(db: Session, status: str | None = None, limit: int = 1000) -> List[models.Order]:
    stmt = select(models.Order)
    if status:
        try:
            stmt = stmt.where(models.Order.status == OrderStatus(status).value)
        except ValueError:
            raise ValidationError("invalid status")
    stmt = stmt.order_by(models.Order.id.desc()).limit(limit)
    return list(db.execute(_with_items(stmt)).scalars())


def find_order_by_invoice(db: Session, invoice_number: str) -> models.Order | None:
    if not invoice_number:
        return None
    stmt = select(models.Order).where(models.Order.payment_invoice_number == invoice_number)
    return db.execute(_with_items(stmt)).scalar_one_or_none()


def _release_stock(db: Session, order_id: int):
    rows = db.execute(
        select(models.OrderItem.product_id, models.OrderItem.quantity).where(models.OrderItem.order_id == order_id)
    ).all()
    for product_id, quantity in rows:
        db.execute(
            update(models.Product)
            .where(models.Product.id == product_id)
            .values(stock=models.Product.stock + quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )


def update_if_status(db: Session, order_id: int, expected: OrderStatus, **values) -> bool:
    """Conditionally update an order row. Does not commit.

    Applies `values` only while the stored status still equals `expected`.
    If `values` moves the order to cancelled, the caller that wins the update
    also returns the items to stock, so restocking happens at most once.
    """
    values.setdefault("updated_at", utcnow())
    result = db.execute(
        update(models.Order)
        .where(models.Order.id == order_id, models.Order.status == expected.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    won = result.rowcount == 1
    if won and values.get("status") == OrderStatus.cancelled.value:
        _release_stock(db, order_id)
    return won


def transition_order(db: Session, order: models.Order, target: str | OrderStatus) -> models.Order:
    """Administrative status change following the order state machine."""
    try:
        target = OrderStatus(target)
    except ValueError:
        raise ValidationError("invalid status")
    current = OrderStatus(order.status)
    if current == target:
        return order
    if not can_transition(current, target):
        raise ConflictError(f"cannot change order status from {current.value} to {target.value}")

    values = {"status": target.value}
    if target == OrderStatus.paid:
        values["payment_status"] = models.PaymentStatus.paid.value
        values["payment_status_date"] = utcnow()
    won = update_if_status(db, order.id, current, **values)
    db.commit()
    db.refresh(order)
    if not won:
        if order.status == target.value:
            return order
        raise ConflictError("order status changed concurrently")
    logger.info("order %s: %s -> %s", order.id, current.value, target.value)
    return order


# -------------------- reporting --------------------

STATS_RECENT_DAYS = 7
STATS_MONTHS = 6
ANALYTICS_DAYS = 30
ANALYTICS_MONTHS = 12
TOP_PRODUCTS_LIMIT = 10


def _not_cancelled():
    return models.Order.status != OrderStatus.cancelled.value


def _month_start(now: datetime, months_back: int) -> datetime:
    """First instant of the calendar month `months_back` months before `now`."""
    year, month = now.year, now.month - months_back
    while month < 1:
        month += 12
        year -= 1
    return now.replace(year=year, month=month, day=1, hour=0, minute=0, second=0, microsecond=0)


def _revenue_by_period(db: Session, since: datetime, fmt: str) -> List[dict]:
    # bucketed in Python so the same code works on SQLite and PostgreSQL
    rows = db.execute(
        select(models.Order.created_at, models.Order.total_cents)
        .where(_not_cancelled(), models.Order.created_at >= since)
    ).all()
    buckets: dict[str, list[int]] = {}
    for created_at, total_cents in rows:
        bucket = buckets.setdefault(created_at.strftime(fmt), [0, 0])
        bucket[0] += total_cents
        bucket[1] += 1
    return [
        {"period": period, "revenue_cents": revenue, "orders": count,
         "avg_order_value_cents": revenue // count}
        for period, (revenue, count) in sorted(buckets.items())
    ]


def order_stats(db: Session, now: datetime | None = None) -> dict:
    """Dashboard totals. Revenue and order counts leave cancelled orders out."""
    now = now or utcnow()
    revenue, total_orders = db.execute(
        select(func.coalesce(func.sum(models.Order.total_cents), 0), func.count(models.Order.id))
        .where(_not_cancelled())
    ).one()
    recent_orders = db.execute(
        select(func.count(models.Order.id))
        .where(_not_cancelled(), models.Order.created_at >= now - timedelta(days=STATS_RECENT_DAYS))
    ).scalar_one()
    by_status = db.execute(
        select(models.Order.status, func.count(models.Order.id)).group_by(models.Order.status)
    ).all()
    return {
        "revenue_cents": int(revenue),
        "total_orders": total_orders,
        "total_customers": db.execute(select(func.count(func.distinct(models.Order.user_id)))).scalar_one(),
        "total_products": db.execute(select(func.count(models.Product.id))).scalar_one(),
        "recent_orders": recent_orders,
        "orders_by_status": {status: count for status, count in by_status},
        "monthly_revenue": _revenue_by_period(db, _month_start(now, STATS_MONTHS - 1), "%Y-%m"),
    }


def order_analytics(db: Session, now: datetime | None = None) -> dict:
    now = now or utcnow()
    revenue = func.coalesce(func.sum(models.Order.total_cents), 0)

    by_status = db.execute(
        select(models.Order.status, revenue, func.count(models.Order.id))
        .group_by(models.Order.status)
        .order_by(revenue.desc(), models.Order.status)
    ).all()

    by_method = db.execute(
        select(models.Order.payment_method, revenue, func.count(models.Order.id))
        .where(_not_cancelled())
        .group_by(models.Order.payment_method)
    ).all()

    line_revenue = func.sum(models.OrderItem.price_cents * models.OrderItem.quantity)
    top_products = db.execute(
        select(
            models.OrderItem.product_id,
            func.max(models.OrderItem.product_name),
            line_revenue,
            func.sum(models.OrderItem.quantity),
            func.count(func.distinct(models.OrderItem.order_id)),
        )
        .join(models.Order, models.Order.id == models.OrderItem.order_id)
        .where(_not_cancelled())
        .group_by(models.OrderItem.product_id)
        .order_by(line_revenue.desc(), models.OrderItem.product_id)
        .limit(TOP_PRODUCTS_LIMIT)
    ).all()

    return {
        "daily_revenue": _revenue_by_period(db, now - timedelta(days=ANALYTICS_DAYS), "%Y-%m-%d"),
        "monthly_revenue": _revenue_by_period(db, _month_start(now, ANALYTICS_MONTHS - 1), "%Y-%m"),
        "revenue_by_status": [
            {"status": status, "revenue_cents": int(total), "orders": count}
            for status, total, count in by_status
        ],
        "revenue_by_payment_method": [
            {"payment_method": name or "unknown", "revenue_cents": int(total), "orders": count}
            for name, total, count in sorted(by_method, key=lambda row: (-row[1], row[0] or ""))
        ],
        "top_products": [
            {"product_id": product_id, "name": name, "revenue_cents": int(total),
             "quantity_sold": int(quantity), "orders": count}
            for product_id, name, total, quantity, count in top_products
        ],
    }
