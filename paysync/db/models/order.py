from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship
from paysync.db.base import Base
from paysync.db.models.mixins import TimestampMixin


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending-payment"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    ON_HOLD = "on-hold"
    PENDING_CANCEL = "pending-cancel"
    EXPIRED = "expired"
    ACTIVE = "active"


class OrderType(str, Enum):
    ORDER = "order"
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"


# meta keys written by the checkout flow
META_CHECKOUT_SESSION_ID = "_dodo_checkout_session_id"
META_CHECKOUT_URL = "_dodo_checkout_url"


class Order(Base, TimestampMixin):
    """
    Order or subscription aggregate.

    Subscriptions are stored as orders with order_type=SUBSCRIPTION whose
    parent_id points at the order that created them. Renewal orders point
    at the subscription they renew.
    """
    __tablename__ = "orders"
    __table_args__ = (
        # one renewal per (subscription, remote payment)
        UniqueConstraint("parent_id", "transaction_id", name="uq_orders_parent_transaction"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    order_type: Mapped[OrderType] = mapped_column(
        SAEnum(OrderType, native_enum=False, length=16), default=OrderType.ORDER, nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(OrderStatus, native_enum=False, length=32), default=OrderStatus.PENDING_PAYMENT, nullable=False)
    payment_method: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    billing_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    coupon_codes: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    date_paid: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    stock_reduced: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("orders.id"), nullable=True, index=True)

    items: Mapped[List["OrderItem"]] = relationship(
        cascade="all, delete-orphan", lazy="selectin")

    @property
    def is_paid(self) -> bool:
        return self.date_paid is not None

    def get_coupon_codes(self) -> List[str]:
        if not self.coupon_codes:
            return []
        return [code.strip() for code in self.coupon_codes.split(",") if code.strip()]


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)


class OrderNote(Base, TimestampMixin):
    """Append-only audit trail shown to the merchant."""
    __tablename__ = "order_notes"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    note: Mapped[str] = mapped_column(Text, nullable=False)


class OrderMeta(Base):
    __tablename__ = "order_meta"
    __table_args__ = (
        UniqueConstraint("order_id", "meta_key", name="uq_order_meta_key"),
    )
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    meta_key: Mapped[str] = mapped_column(String(128), nullable=False)
    meta_value: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True, index=True)
