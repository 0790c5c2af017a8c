import logging
from typing import Any, Dict, List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from paysync.core.exceptions import CartError, ProviderAPIError
from paysync.crud.mapping import coupon_mappings, product_mappings
from paysync.crud.order import crud_order
from paysync.db.models.catalog import Coupon, DiscountType, Product
from paysync.db.models.order import Order
from paysync.services.dodo_client import DodoPaymentsClient, to_cents

logger = logging.getLogger(__name__)


class CatalogSync:
    """Pushes local products and coupons to the provider before a checkout."""

    def __init__(self, client: DodoPaymentsClient):
        self.client = client

    async def sync_products(self, session: AsyncSession, order: Order) -> List[Dict[str, Any]]:
        """
        Make sure every item of the order exists remotely and return the
        provider's product_cart. Items that fail to sync are noted on the
        order and left out.
        """
        cart = []
        for item in order.items:
            product = await session.get(Product, item.product_id)
            if product is None:
                await crud_order.add_note(session, order.id, f"Product {item.product_id} no longer exists, skipped.")
                continue

            remote_id = await product_mappings.get_remote_id(session, product.id)
            if remote_id:
                remote = await self.client.get_product(remote_id)
                if remote is None:
                    logger.warning("product mapping stale for product %s, clearing mapping to %s", product.id, remote_id)
                    await product_mappings.delete_mapping(session, product.id)
                    remote_id = None
                else:
                    try:
                        if product.is_subscription:
                            await self.client.update_subscription_product(remote_id, product)
                        else:
                            await self.client.update_product(remote_id, product)
                    except ProviderAPIError as e:
                        await crud_order.add_note(session, order.id, f"Failed to update product in Dodo Payments: {e.message}")
                        continue

            if not remote_id:
                try:
                    if product.is_subscription:
                        created = await self.client.create_subscription_product(product)
                    else:
                        created = await self.client.create_product(product)
                except ProviderAPIError as e:
                    await crud_order.add_note(session, order.id, f"Dodo Payments Error: {e.message}")
                    continue
                remote_id = created["product_id"]
                await product_mappings.save_mapping(session, product.id, remote_id)

            cart.append({
                "product_id": remote_id,
                "quantity": item.quantity,
                "amount": to_cents(product.price),
            })
        return cart

    async def sync_coupon(self, session: AsyncSession, code: str) -> str:
        """Create or update the remote discount for a coupon code and return its code."""
        result = await session.execute(select(Coupon).where(Coupon.code == code))
        coupon = result.scalar_one_or_none()
        if coupon is None:
            raise CartError(f"Coupon {code} does not exist.")
        if coupon.discount_type != DiscountType.PERCENT:
            raise CartError("Dodo Payments: Only percentage discount codes are supported.")

        body = await self.discount_body(session, coupon)
        remote_id = await coupon_mappings.get_remote_id(session, coupon.id)
        if remote_id and await self.client.get_discount(remote_id) is not None:
            updated = await self.client.update_discount(remote_id, body)
            return updated.get("code", coupon.code)

        created = await self.client.create_discount(body)
        await coupon_mappings.save_mapping(session, coupon.id, created["discount_id"])
        return created.get("code", coupon.code)

    async def discount_body(self, session: AsyncSession, coupon: Coupon) -> Dict[str, Any]:
        restricted_to = []
        for product_id in coupon.product_ids or []:
            remote_id = await product_mappings.get_remote_id(session, product_id)
            if remote_id:
                restricted_to.append(remote_id)

        expires_at: Optional[str] = coupon.expires_at.isoformat() if coupon.expires_at else None
        return {
            "type": "percentage",
            "code": coupon.code,
            # basis points
            "amount": to_cents(coupon.amount),
            "expires_at": expires_at,
            "usage_limit": coupon.usage_limit if coupon.usage_limit > 0 else None,
            "restricted_to": restricted_to or None,
        }
