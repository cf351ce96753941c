from datetime import datetime
from pydantic import BaseModel, Field, PositiveInt, field_validator
from pydantic.config import ConfigDict
from typing import Optional


# -------------------- auth --------------------

class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1)
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    def looks_like_email(cls, v: str):
        if "@" not in v:
            raise ValueError("invalid email")
        return v


class LoginRequest(BaseModel):
    email: str
    password: str


class ChangePasswordRequest(BaseModel):
    email: str
    old_password: str
    new_password: str


class ChangeEmailRequest(BaseModel):
    new_email: str = Field(..., min_length=3, max_length=320)
    password: str


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str


class UserRead(BaseModel):
    id: int
    email: str
    name: Optional[str] = None
    role: str = "user"

    model_config = ConfigDict(from_attributes=True)


class SessionResponse(BaseModel):
    user: UserRead


# -------------------- orders --------------------

class CartItem(BaseModel):
    product_id: PositiveInt
    quantity: PositiveInt


class CheckoutRequest(BaseModel):
    items: list[CartItem] = []


class OrderItemRead(BaseModel):
    id: int
    product_id: int
    product_name: Optional[str] = None
    quantity: int
    price_cents: int

    model_config = ConfigDict(from_attributes=True)


class OrderRead(BaseModel):
    id: int
    user_id: int
    items: list[OrderItemRead] = []
    shipping_cost_cents: int
    total_cents: int
    status: str
    payment_status: str
    payment_method: Optional[str] = None
    payment_channel: Optional[str] = None
    payment_invoice_number: Optional[str] = None
    payment_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentStatusRead(BaseModel):
    order_id: int
    status: str
    payment_status: str


class OrderStatusUpdate(BaseModel):
    status: str


# -------------------- payments --------------------

class CustomerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal: Optional[str] = None


class InvoiceCreateRequest(BaseModel):
    order_id: PositiveInt
    customer: Optional[CustomerInfo] = None


class InvoiceCreated(BaseModel):
    order_id: int
    payment_url: Optional[str] = None
    invoice_id: str
    external_id: str
    status: str
    expiry_date: Optional[datetime] = None


class GatewayInvoice(BaseModel):
    """The gateway's view of an invoice (API response or webhook payload)."""

    id: str
    external_id: str
    status: str
    amount: Optional[float] = None
    paid_amount: Optional[float] = None
    payment_channel: Optional[str] = None
    payment_method: Optional[str] = None
    invoice_url: Optional[str] = None
    expiry_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    updated: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")


# -------------------- admin --------------------

class RoleUpdate(BaseModel):
    email: str
    role: str


class AdminCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str


class SettingWrite(BaseModel):
    key: str = Field(..., min_length=1, max_length=200)
    value: Optional[str] = None


# -------------------- reporting --------------------

class CustomerRead(BaseModel):
    id: int
    email: str
    name: Optional[str] = None
    created_at: datetime
    total_orders: int
    total_spent_cents: int


class CustomerList(BaseModel):
    customers: list[CustomerRead]


class PeriodRevenue(BaseModel):
    period: str
    revenue_cents: int
    orders: int
    avg_order_value_cents: int


class StatsRead(BaseModel):
    revenue_cents: int
    total_orders: int
    total_customers: int
    total_products: int
    recent_orders: int
    orders_by_status: dict[str, int]
    monthly_revenue: list[PeriodRevenue]


class StatusRevenue(BaseModel):
    status: str
    revenue_cents: int
    orders: int


class PaymentMethodRevenue(BaseModel):
    payment_method: str
    revenue_cents: int
    orders: int


class ProductRevenue(BaseModel):
    product_id: int
    name: Optional[str] = None
    revenue_cents: int
    quantity_sold: int
    orders: int


class AnalyticsRead(BaseModel):
    daily_revenue: list[PeriodRevenue]
    monthly_revenue: list[PeriodRevenue]
    revenue_by_status: list[StatusRevenue]
    revenue_by_payment_method: list[PaymentMethodRevenue]
    top_products: list[ProductRevenue]
