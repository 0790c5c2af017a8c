import logging
from typing import Optional
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession
from paysync.core.config import Settings
from paysync.core.exceptions import CartError, ConfigError, OrderNotFoundError, ProviderAPIError
from paysync.crud.mapping import payment_mappings, subscription_mappings
from paysync.crud.order import crud_order
from paysync.db.models.order import META_CHECKOUT_SESSION_ID, META_CHECKOUT_URL, Order, OrderStatus
from paysync.schemas.checkout import CheckoutResponse, ReturnCaptureResponse
from paysync.services.catalog import CatalogSync
from paysync.services.dodo_client import DodoPaymentsClient
from paysync.services.inventory import inventory_service

logger = logging.getLogger(__name__)


class CheckoutService:
    def __init__(self, client: Optional[DodoPaymentsClient], settings: Settings, redis: Redis,
                 catalog: Optional[CatalogSync] = None):
        self.client = client
        self.settings = settings
        self.redis = redis
        self.catalog = catalog or (CatalogSync(client) if client is not None else None)

    def return_url(self, order: Order) -> str:
        return f"{self.settings.SITE_URL.rstrip('/')}/api/v1/checkout/{order.id}/return"

    async def _fail(self, session: AsyncSession, order: Order, error: Exception, note: str) -> None:
        await crud_order.add_note(session, order.id, note)
        logger.error("checkout for order %s failed: %s", order.id, error)

    async def process_payment(self, session: AsyncSession, order_id: int) -> CheckoutResponse:
        """
        Start paying for an order: hold its stock, push the cart to the
        provider and return where to send the customer.
        """
        order = await crud_order.get(session, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        await crud_order.update_status(session, order, OrderStatus.PENDING_PAYMENT, "Awaiting payment via Dodo Payments.")
        if await crud_order.mark_stock_reduced(session, order.id):
            await inventory_service.reduce_stock(order.items, self.redis)

        if order.total == 0:
            await crud_order.payment_complete(session, order, None)
            await crud_order.update_status(session, order, OrderStatus.COMPLETED, "Free order completed.")
            return CheckoutResponse(redirect=self.return_url(order))

        if self.client is None:
            message = (f"Dodo Payments {self.settings.mode_label} API Key is not configured. "
                       f"Please configure it before accepting payments.")
            await crud_order.add_note(session, order.id, message)
            raise ConfigError(message)

        contains_subscription = await crud_order.contains_subscription(session, order)
        product_cart = await self.catalog.sync_products(session, order)

        coupons = order.get_coupon_codes()
        if len(coupons) > 1:
            message = "Dodo Payments: Multiple Coupon codes are not supported."
            await crud_order.add_note(session, order.id, message)
            raise CartError(message)

        discount_code = None
        if coupons:
            try:
                discount_code = await self.catalog.sync_coupon(session, coupons[0])
            except ProviderAPIError as e:
                await self._fail(session, order, e, f"Dodo Payments Error: {e.message}")
                raise

        return_url = self.return_url(order)
        try:
            if self.settings.ENABLE_TAX_ID_COLLECTION:
                response = await self.client.create_checkout_session(
                    order, product_cart, discount_code, return_url, enable_tax_id_collection=True)
            elif contains_subscription:
                response = await self.client.create_subscription(order, product_cart, discount_code, return_url)
            else:
                response = await self.client.create_payment(order, product_cart, discount_code, return_url)
        except ProviderAPIError as e:
            await self._fail(session, order, e, f"Dodo Payments Error: {e.message}")
            raise

        if self.settings.ENABLE_TAX_ID_COLLECTION:
            return await self._checkout_session_created(session, order, response)
        return await self._payment_created(session, order, response, contains_subscription)

    async def _checkout_session_created(self, session: AsyncSession, order: Order, response: dict) -> CheckoutResponse:
        session_id = response.get("session_id")
        checkout_url = response.get("checkout_url")
        if not session_id or not checkout_url:
            await crud_order.add_note(session, order.id, "Failed to create checkout session in Dodo Payments: Invalid response")
            raise ProviderAPIError("Invalid checkout session response")

        await crud_order.update_meta(session, order.id, META_CHECKOUT_SESSION_ID, session_id)
        await crud_order.update_meta(session, order.id, META_CHECKOUT_URL, checkout_url)
        await crud_order.add_note(
            session, order.id,
            f"Checkout session created in Dodo Payments: {session_id} (Tax ID collection enabled)")
        return CheckoutResponse(redirect=checkout_url)

    async def _payment_created(self, session: AsyncSession, order: Order, response: dict,
                               contains_subscription: bool) -> CheckoutResponse:
        payment_link = response.get("payment_link")
        payment_id = response.get("payment_id")
        if not payment_link or (not contains_subscription and not payment_id):
            kind = "subscription" if contains_subscription else "payment"
            await crud_order.add_note(session, order.id, f"Failed to create {kind} in Dodo Payments: Invalid response")
            raise ProviderAPIError(f"Invalid {kind} response")

        remote_subscription_id = response.get("subscription_id")
        if contains_subscription and remote_subscription_id:
            subscriptions = await crud_order.get_subscriptions_for_order(session, order.id)
            if subscriptions:
                await subscription_mappings.save_mapping(session, subscriptions[0].id, remote_subscription_id)
                await crud_order.add_note(session, order.id, f"Subscription created in Dodo Payments: {remote_subscription_id}")

        if payment_id:
            await payment_mappings.save_mapping(session, order.id, payment_id)
            await crud_order.add_note(session, order.id, f"Payment created in Dodo Payments: {payment_id}")

        return CheckoutResponse(redirect=payment_link)

    async def capture_return(self, session: AsyncSession, order_id: int, payment_id: Optional[str],
                             subscription_id: Optional[str] = None) -> ReturnCaptureResponse:
        """
        Record the ids the provider appends to the return URL of a checkout
        session. Runs before the webhook in the common case; whatever is
        already mapped is left alone.
        """
        order = await crud_order.get(session, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        captured = ReturnCaptureResponse(order_id=order.id)

        if order.payment_method != self.settings.GATEWAY_ID:
            return captured
        if not await crud_order.get_meta(session, order.id, META_CHECKOUT_SESSION_ID):
            return captured
        if not payment_id:
            return captured

        if await payment_mappings.save_mapping_if_absent(session, order.id, payment_id):
            captured.payment_mapping_saved = True
            await crud_order.add_note(session, order.id, f"Payment ID captured from checkout session return: {payment_id}")

        if subscription_id:
            subscriptions = await crud_order.get_subscriptions_for_order(session, order.id)
            if subscriptions and await subscription_mappings.save_mapping_if_absent(
                    session, subscriptions[0].id, subscription_id):
                captured.subscription_mapping_saved = True
                await crud_order.add_note(
                    session, order.id, f"Subscription ID captured from checkout session return: {subscription_id}")
        return captured
