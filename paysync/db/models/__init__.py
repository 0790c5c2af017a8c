from .mixins import TimestampMixin as TimestampMixin
from .catalog import Product as Product, Coupon as Coupon, BillingPeriod as BillingPeriod, DiscountType as DiscountType
from .order import Order as Order, OrderItem as OrderItem, OrderNote as OrderNote, OrderMeta as OrderMeta
from .order import OrderStatus as OrderStatus, OrderType as OrderType
from .mapping import ProductMapping as ProductMapping, PaymentMapping as PaymentMapping
from .mapping import CouponMapping as CouponMapping, SubscriptionMapping as SubscriptionMapping
from .webhook_event import WebhookEvent as WebhookEvent, WebhookOutcome as WebhookOutcome

__all__ = [
    "TimestampMixin",
    "Product", "Coupon", "BillingPeriod", "DiscountType",
    "Order", "OrderItem", "OrderNote", "OrderMeta", "OrderStatus", "OrderType",
    "ProductMapping", "PaymentMapping", "CouponMapping", "SubscriptionMapping",
    "WebhookEvent", "WebhookOutcome",
]
