from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column
from paysync.db.base import Base
from paysync.db.models.mixins import TimestampMixin


class MappingMixin(TimestampMixin):
    """(local integer id) <-> (remote provider id) pair, one row per local id."""
    local_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    remote_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)


class ProductMapping(Base, MappingMixin):
    __tablename__ = "dodo_payments_products"


class PaymentMapping(Base, MappingMixin):
    # no unique index on remote_id: checkout and webhook writers may race, last write wins
    __tablename__ = "dodo_payments_payments"


class CouponMapping(Base, MappingMixin):
    __tablename__ = "dodo_payments_coupons"


class SubscriptionMapping(Base, MappingMixin):
    __tablename__ = "dodo_payments_subscriptions"
