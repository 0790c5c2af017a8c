from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from paysync.api.deps import get_subscription_sync
from paysync.core.exceptions import OrderNotFoundError
from paysync.crud.order import crud_order
from paysync.db.session import get_db_session
from paysync.schemas.checkout import SubscriptionStatusRequest, SubscriptionStatusResponse
from paysync.services.subscription import SubscriptionSync

router = APIRouter(prefix="/subscriptions")


@router.post("/{subscription_id}/status", response_model=SubscriptionStatusResponse)
async def subscription_status_updated(subscription_id: int,
                                      request: SubscriptionStatusRequest,
                                      sync: SubscriptionSync = Depends(get_subscription_sync),
                                      db_session: AsyncSession = Depends(get_db_session)):
    subscription = await crud_order.get_subscription(db_session, subscription_id)
    if subscription is None:
        raise OrderNotFoundError(subscription_id)
    action = await sync.on_status_updated(db_session, subscription, request.new_status, request.old_status)
    return SubscriptionStatusResponse(subscription_id=subscription_id, action=action)
