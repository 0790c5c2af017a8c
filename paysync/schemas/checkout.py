from typing import Optional
from pydantic import BaseModel
from paysync.db.models.order import OrderStatus


class CheckoutResponse(BaseModel):
    result: str = "success"
    redirect: str


class ReturnCaptureResponse(BaseModel):
    order_id: int
    payment_mapping_saved: bool = False
    subscription_mapping_saved: bool = False


class SubscriptionStatusRequest(BaseModel):
    new_status: OrderStatus
    old_status: Optional[OrderStatus] = None


class SubscriptionStatusResponse(BaseModel):
    subscription_id: int
    action: Optional[str] = None
