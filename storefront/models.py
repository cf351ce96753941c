import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, CheckConstraint
from sqlalchemy.orm import relationship
from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, enum.Enum):
    user = "user"
    admin = "admin"


class OrderStatus(str, enum.Enum):
    pending = "pending"
    paid = "paid"
    cancelled = "cancelled"
    fulfilled = "fulfilled"


class PaymentStatus(str, enum.Enum):
    unpaid = "unpaid"
    pending = "pending"
    paid = "paid"
    expired = "expired"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # stored lower-cased and trimmed; see utils.normalize_email
    email = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    # role column for simple RBAC: 'user' or 'admin'
    role = Column(String, nullable=False, default=Role.user.value, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    orders = relationship("Order", back_populates="user")


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="chk_products_price"),
        CheckConstraint("stock >= 0", name="chk_products_stock"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    price_cents = Column(Integer, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total_cents >= 0", name="chk_orders_total"),
        CheckConstraint("shipping_cost_cents >= 0", name="chk_orders_shipping"),
        CheckConstraint(
            "status in ('pending', 'paid', 'cancelled', 'fulfilled')", name="chk_orders_status"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    total_cents = Column(Integer, nullable=False, default=0)
    shipping_cost_cents = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=OrderStatus.pending.value, index=True)

    # Payment fields, written by the reconciler or invoice creation
    payment_status = Column(String, nullable=False, default=PaymentStatus.unpaid.value)
    payment_method = Column(String, nullable=True)
    payment_channel = Column(String, nullable=True)
    payment_invoice_number = Column(String, nullable=True, unique=True, index=True)
    payment_gateway_id = Column(String, nullable=True, index=True)
    payment_url = Column(String, nullable=True)
    payment_expires_at = Column(DateTime(timezone=True), nullable=True)
    payment_status_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    user = relationship("User", back_populates="orders")
    items = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_order_items_quantity"),
        CheckConstraint("price_cents >= 0", name="chk_order_items_price"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    # name snapshot at checkout time
    product_name = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")

    @property
    def subtotal_cents(self) -> int:
        return self.quantity * self.price_cents


class Setting(Base):
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String, nullable=False, unique=True, index=True)
    value = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    # sha256 hex digest; the plaintext token is only ever handed to the mailer
    token_hash = Column(String, nullable=False, unique=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
