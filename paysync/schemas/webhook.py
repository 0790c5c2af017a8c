from typing import Any, Dict, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator
from paysync.core.exceptions import MalformedPayloadError


class WebhookData(BaseModel):
    """
    The event's data object. Every field is optional and an unusable value
    reads as missing, only the event type decides whether a payload is
    malformed.
    """
    model_config = ConfigDict(extra="allow")

    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    refund_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("payment_id", "subscription_id", "refund_id", "checkout_session_id", mode="before")
    @classmethod
    def id_or_none(cls, value: Any) -> Optional[str]:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return str(value)
        return value if isinstance(value, str) else None

    @field_validator("metadata", mode="before")
    @classmethod
    def metadata_or_none(cls, value: Any) -> Optional[Dict[str, Any]]:
        return value if isinstance(value, dict) else None

    @property
    def wc_order_id(self) -> Optional[int]:
        """Local order id embedded at checkout, if it is usable as an int."""
        value = (self.metadata or {}).get("wc_order_id")
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    data: WebhookData = Field(default_factory=WebhookData)

    @field_validator("data", mode="before")
    @classmethod
    def data_or_empty(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, WebhookData)) else {}

    def split_type(self) -> Tuple[str, str]:
        """Split e.g. "payment.succeeded" into ("payment", "succeeded")."""
        parts = self.type.split(".")
        if len(parts) != 2 or not all(parts):
            raise MalformedPayloadError(f"Invalid webhook event type format: {self.type!r}")
        return parts[0], parts[1]
