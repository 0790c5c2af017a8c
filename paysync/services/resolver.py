import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from paysync.crud.mapping import payment_mappings, subscription_mappings
from paysync.crud.order import crud_order
from paysync.db.models.order import META_CHECKOUT_SESSION_ID, Order
from paysync.schemas.webhook import WebhookData

logger = logging.getLogger(__name__)

Strategy = Callable[[AsyncSession, WebhookData], Awaitable[Optional[Order]]]


class EventResolver:
    """
    Finds the local order or subscription a webhook refers to.

    Each event kind has an ordered tuple of strategies and the first one that
    returns a record wins. Payment events try, in order:

    1. metadata.wc_order_id embedded when the payment was created. Most
       reliable, it is present even when the webhook beats the return URL.
    2. the Payment mapping table.
    3. orders whose checkout session meta equals data.checkout_session_id.

    Subscription events only use the Subscription mapping and refund events
    only the Payment mapping.
    """

    def __init__(self, gateway_id: str):
        self.gateway_id = gateway_id
        self.strategies: Dict[str, Tuple[Strategy, ...]] = {
            "payment": (self.by_metadata, self.by_payment_mapping, self.by_checkout_session),
            "refund": (self.by_payment_mapping,),
            "subscription": (self.by_subscription_mapping,),
        }

    async def resolve(self, session: AsyncSession, data: WebhookData, kind: str) -> Optional[Order]:
        for strategy in self.strategies.get(kind, ()):
            order = await strategy(session, data)
            if order is not None:
                logger.debug("resolved %s event to #%s via %s", kind, order.id, strategy.__name__)
                return order
        logger.warning(
            "could not resolve %s event (payment_id=%s, subscription_id=%s, checkout_session_id=%s, wc_order_id=%s)",
            kind, data.payment_id, data.subscription_id, data.checkout_session_id, data.wc_order_id)
        return None

    async def resolve_subscription(self, session: AsyncSession, remote_subscription_id: Optional[str]) -> Optional[Order]:
        local_id = await subscription_mappings.get_local_id(session, remote_subscription_id)
        if local_id is None:
            return None
        return await crud_order.get_subscription(session, local_id)

    async def by_metadata(self, session: AsyncSession, data: WebhookData) -> Optional[Order]:
        order_id = data.wc_order_id
        if order_id is None:
            return None
        order = await crud_order.get_order(session, order_id)
        if order is None:
            logger.info("metadata points at no order %s", order_id)
            return None
        if order.payment_method != self.gateway_id:
            logger.warning("order %s is paid with %r, ignoring metadata", order_id, order.payment_method)
            return None
        if data.payment_id:
            await payment_mappings.save_mapping_if_absent(session, order.id, data.payment_id)
        return order

    async def by_payment_mapping(self, session: AsyncSession, data: WebhookData) -> Optional[Order]:
        order_id = await payment_mappings.get_local_id(session, data.payment_id)
        if order_id is None:
            return None
        return await crud_order.get(session, order_id)

    async def by_checkout_session(self, session: AsyncSession, data: WebhookData) -> Optional[Order]:
        if not data.checkout_session_id:
            return None
        logger.info("payment mapping for %s not found, trying session %s", data.payment_id, data.checkout_session_id)
        order = await crud_order.find_by_meta(session, META_CHECKOUT_SESSION_ID, data.checkout_session_id)
        if order is None:
            return None
        if data.payment_id:
            await payment_mappings.save_mapping(session, order.id, data.payment_id)
            logger.info("found order %s via session %s, saved payment mapping", order.id, data.checkout_session_id)
        return order

    async def by_subscription_mapping(self, session: AsyncSession, data: WebhookData) -> Optional[Order]:
        return await self.resolve_subscription(session, data.subscription_id)
