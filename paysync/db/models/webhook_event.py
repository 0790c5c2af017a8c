from enum import Enum
from typing import Optional
from sqlalchemy import BigInteger, Integer, String, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column
from paysync.db.base import Base
from paysync.db.models.mixins import TimestampMixin


class WebhookOutcome(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    UNRESOLVED = "unresolved"
    IGNORED = "ignored"
    FAILED = "failed"


class WebhookEvent(Base, TimestampMixin):
    """
    Delivery log for inbound webhooks.
    If event_id exists, the delivery was already handled.
    """
    __tablename__ = "webhook_events"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    event_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[WebhookOutcome] = mapped_column(
        SAEnum(WebhookOutcome, native_enum=False, length=16), default=WebhookOutcome.RECEIVED, nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
