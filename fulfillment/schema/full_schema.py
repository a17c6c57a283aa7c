import enum
import uuid
from sqlalchemy import JSON, BigInteger, Boolean, DateTime, ForeignKey, Integer, Text, UniqueConstraint, Uuid
from uuid6 import uuid7
from datetime import datetime
from typing import Any, Dict, Optional
from sqlmodel import Column, SQLModel, Field, String
from fulfillment.common.utils import now

# catalog / inventory ------------------------------------------------------------------------------------

class Product(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: str = Field(sa_column=Column(String(64), unique=True, index=True, nullable=False))  # catalog key
    name: str = Field(sa_column=Column(String(255), nullable=False))
    price: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))  # paise
    image: Optional[str] = Field(default=None, sa_column=Column(String(1024), nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    created_at: datetime = Field(default_factory=now,
        sa_column=Column(DateTime(timezone=True), nullable=False,default=now))
    updated_at: datetime = Field(default_factory=now,
        sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))


# one row per (product, size); quantity is signed since oversell is tolerated
class ProductStock(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: str = Field(sa_column=Column(ForeignKey("product.product_id", ondelete="CASCADE"), index=True, nullable=False))
    size: str = Field(sa_column=Column(String(8), nullable=False))
    quantity: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    updated_at: datetime = Field(default_factory=now,
        sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))

    __table_args__ = (UniqueConstraint("product_id", "size", name="uq_product_stock_size"),)

# carts ---------------------------------------------------------------------------------------------------

class Cart(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(sa_column=Column(String(64), nullable=False, index=True, unique=True))
    total_items: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    total_price: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, default=0))  # paise
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now,sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))


class CartItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    cart_id: int = Field(sa_column=Column(ForeignKey("cart.id", ondelete="CASCADE"), index=True, nullable=False))
    product_id: str = Field(sa_column=Column(String(64), nullable=False))
    product_name: str = Field(sa_column=Column(String(255), nullable=False))
    size: str = Field(sa_column=Column(String(8), nullable=False))
    quantity: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))
    price: int = Field(sa_column=Column(BigInteger, nullable=False))  # paise
    image: Optional[str] = Field(default=None, sa_column=Column(String(1024), nullable=True))
    saved_for_later: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

    __table_args__ = (
        UniqueConstraint("cart_id", "product_id", "size", "saved_for_later", name="uq_cart_product_size"),
    )

# coupons -------------------------------------------------------------------------------------------------

class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Coupon(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(sa_column=Column(String(64), unique=True, index=True, nullable=False))  # stored upper-cased
    name: str = Field(sa_column=Column(String(255), nullable=False))
    description: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    discount_type: str = Field(default=DiscountType.PERCENTAGE.value, sa_column=Column(String(16), nullable=False))
    discount_value: int = Field(sa_column=Column(BigInteger, nullable=False))  # percent for percentage, paise for fixed
    min_purchase_amount: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, default=0))
    max_discount_amount: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    usage_limit: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    used_count: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    valid_from: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    valid_until: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    first_time_purchase_only: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    once_per_account: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))


class CouponUsage(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    coupon_id: int = Field(sa_column=Column(ForeignKey("coupon.id", ondelete="CASCADE"), index=True, nullable=False))
    user_id: str = Field(sa_column=Column(String(64), index=True, nullable=False))
    order_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    used_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

# orders --------------------------------------------------------------------------------------------------

class OrderStatus(str, enum.Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURN_REQUESTED = "return_requested"
    RETURNED = "returned"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, enum.Enum):
    RAZORPAY = "razorpay"
    COD = "cod"
    COD_TOKEN = "cod_token"


class HistoryActor(str, enum.Enum):
    USER = "user"
    SYSTEM = "system"
    ADMIN = "admin"


class RefundStatus(str, enum.Enum):
    PROCESSING = "processing"   # claimed locally, gateway call in flight
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class Orders(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(as_uuid=True), unique=True, index=True, nullable=False))
    order_id: str = Field(sa_column=Column(String(64), unique=True, index=True, nullable=False))  # COD_... / order_... / recon_...
    user_id: str = Field(sa_column=Column(String(64), index=True, nullable=False))

    # gateway linkage; intent_id is the idempotency boundary for online verification
    intent_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, unique=True))
    payment_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, unique=True))
    payment_signature: Optional[str] = Field(default=None, sa_column=Column(String(256), nullable=True))

    subtotal: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))  # paise
    discount: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    amount: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    currency: str = Field(default="INR", sa_column=Column(String(8), nullable=False))
    coupon: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    shipping_address: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    payment_method: str = Field(sa_column=Column(String(16), nullable=False))
    payment_status: str = Field(default=PaymentStatus.PENDING.value, sa_column=Column(String(16), nullable=False, index=True))
    status: str = Field(default=OrderStatus.CREATED.value, sa_column=Column(String(32), nullable=False, index=True))
    cod_token_amount: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))  # paise

    vendor_order_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True, index=True))
    vendor_shipment_id: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    awb_code: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    courier_name: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    tracking_url: Optional[str] = Field(default=None, sa_column=Column(String(512), nullable=True))

    cancellation_window_ends_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    delivered_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    cancelled_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    cancellation_reason: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    return_requested_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    return_reason: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    return_comments: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))

    # refund sub-record
    refund_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, unique=True))
    refund_amount: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    refund_status: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))
    refund_reason: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    refund_notes: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    refunded_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now,sa_column=Column(DateTime(timezone=True), nullable=False,default=now, onupdate=now))


# immutable line-item snapshot taken at checkout
class OrderItem(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False))
    product_id: str = Field(sa_column=Column(String(64), nullable=False))
    product_name: str = Field(sa_column=Column(String(255), nullable=False))
    size: str = Field(sa_column=Column(String(8), nullable=False))
    quantity: int = Field(sa_column=Column(Integer, nullable=False))
    price: int = Field(sa_column=Column(BigInteger, nullable=False))  # paise per unit
    image: Optional[str] = Field(default=None, sa_column=Column(String(1024), nullable=True))


class OrderStatusHistory(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False))
    status: str = Field(sa_column=Column(String(32), nullable=False))
    actor: str = Field(default=HistoryActor.SYSTEM.value, sa_column=Column(String(16), nullable=False))
    reason: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))


# free-text operator diagnostics, append only
class OrderNote(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False))
    note: str = Field(sa_column=Column(Text(), nullable=False))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

# payments ------------------------------------------------------------------------------------------------

class PaymentEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    INCONSISTENT = "inconsistent"


class PaymentWebhookEvent(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(default="razorpay", sa_column=Column(String(64), nullable=False, index=True))
    provider_event_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    event: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    intent_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, index=True))
    payment_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    payload: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    status: str = Field(default=PaymentEventStatus.RECEIVED.value, sa_column=Column(String(16), nullable=False))
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    processed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True, index=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_webhook_provider_event"),
    )
