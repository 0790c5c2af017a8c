from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from paysync.api.deps import get_checkout_service
from paysync.db.session import get_db_session
from paysync.schemas.checkout import CheckoutResponse, ReturnCaptureResponse
from paysync.services.checkout import CheckoutService

router = APIRouter(prefix="/checkout")


@router.post("/{order_id}", response_model=CheckoutResponse)
async def process_payment(order_id: int,
                          service: CheckoutService = Depends(get_checkout_service),
                          db_session: AsyncSession = Depends(get_db_session)):
    return await service.process_payment(db_session, order_id)


@router.get("/{order_id}/return", response_model=ReturnCaptureResponse)
async def capture_return(order_id: int,
                         payment_id: Optional[str] = None,
                         subscription_id: Optional[str] = None,
                         service: CheckoutService = Depends(get_checkout_service),
                         db_session: AsyncSession = Depends(get_db_session)):
    return await service.capture_return(db_session, order_id, payment_id, subscription_id)
