import logging
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from paysync.db.models.catalog import Product
from paysync.db.models.mixins.timestamp import utcnow
from paysync.db.models.order import Order, OrderItem, OrderMeta, OrderNote, OrderStatus, OrderType

logger = logging.getLogger(__name__)


class CRUDOrder:
    """
    Operations on the order/subscription aggregate.

    Transitions are written as guarded UPDATEs ("set to X where not already X")
    so replaying the same webhook leaves the row as a single delivery would.
    """

    async def get(self, session: AsyncSession, order_id: int) -> Optional[Order]:
        result = await session.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def get_order(self, session: AsyncSession, order_id: int) -> Optional[Order]:
        """Like get, but never returns a subscription row."""
        result = await session.execute(
            select(Order)
            .where(Order.id == order_id)
            .where(Order.order_type.in_((OrderType.ORDER, OrderType.RENEWAL)))
        )
        return result.scalar_one_or_none()

    async def get_subscription(self, session: AsyncSession, subscription_id: int) -> Optional[Order]:
        result = await session.execute(
            select(Order)
            .where(Order.id == subscription_id)
            .where(Order.order_type == OrderType.SUBSCRIPTION)
        )
        return result.scalar_one_or_none()

    async def get_subscriptions_for_order(self, session: AsyncSession, order_id: int) -> List[Order]:
        result = await session.scalars(
            select(Order)
            .where(Order.parent_id == order_id)
            .where(Order.order_type == OrderType.SUBSCRIPTION)
            .order_by(Order.id)
        )
        return list(result.all())

    async def find_by_meta(self, session: AsyncSession, meta_key: str, meta_value: str) -> Optional[Order]:
        # bounded: at most one match is ever expected
        result = await session.execute(
            select(Order)
            .join(OrderMeta, OrderMeta.order_id == Order.id)
            .where(OrderMeta.meta_key == meta_key)
            .where(OrderMeta.meta_value == meta_value)
            .order_by(Order.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_meta(self, session: AsyncSession, order_id: int, meta_key: str) -> Optional[str]:
        result = await session.execute(
            select(OrderMeta.meta_value)
            .where(OrderMeta.order_id == order_id)
            .where(OrderMeta.meta_key == meta_key)
        )
        return result.scalar_one_or_none()

    async def update_meta(self, session: AsyncSession, order_id: int, meta_key: str, meta_value: str) -> None:
        result = await session.execute(
            select(OrderMeta)
            .where(OrderMeta.order_id == order_id)
            .where(OrderMeta.meta_key == meta_key)
        )
        meta = result.scalar_one_or_none()
        if meta is None:
            session.add(OrderMeta(order_id=order_id, meta_key=meta_key, meta_value=meta_value))
        else:
            meta.meta_value = meta_value
        await session.commit()

    async def add_note(self, session: AsyncSession, order_id: int, note: str) -> None:
        session.add(OrderNote(order_id=order_id, note=note))
        await session.commit()

    async def get_notes(self, session: AsyncSession, order_id: int) -> List[str]:
        result = await session.scalars(
            select(OrderNote.note)
            .where(OrderNote.order_id == order_id)
            .order_by(OrderNote.id)
        )
        return list(result.all())

    async def update_status(self, session: AsyncSession, order: Order, new_status: OrderStatus, note: str = "") -> bool:
        """Set status to new_status. Returns False (and writes nothing) when it already was."""
        old_status = order.status
        result = await session.execute(
            update(Order)
            .where(Order.id == order.id)
            .where(Order.status != new_status)
            .values(status=new_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await session.commit()
            logger.info("%s %s already %s, skipping", order.order_type.value, order.id, new_status.value)
            return False

        message = f"Status changed from {old_status.value} to {new_status.value}."
        if note:
            message = f"{note} {message}"
        session.add(OrderNote(order_id=order.id, note=message))
        await session.commit()
        await session.refresh(order)
        logger.info("%s %s: %s -> %s", order.order_type.value, order.id, old_status.value, new_status.value)
        return True

    async def payment_complete(self, session: AsyncSession, order: Order, transaction_id: Optional[str]) -> bool:
        """
        Record the payment once. Returns True only for the call that marked
        the order paid; later calls with any transaction id are no-ops.
        """
        result = await session.execute(
            update(Order)
            .where(Order.id == order.id)
            .where(Order.date_paid.is_(None))
            .values(date_paid=utcnow(), transaction_id=transaction_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        await session.refresh(order)
        return result.rowcount == 1

    async def mark_stock_reduced(self, session: AsyncSession, order_id: int) -> bool:
        result = await session.execute(
            update(Order)
            .where(Order.id == order_id)
            .where(Order.stock_reduced.is_(False))
            .values(stock_reduced=True)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount == 1

    async def mark_stock_restored(self, session: AsyncSession, order_id: int) -> bool:
        result = await session.execute(
            update(Order)
            .where(Order.id == order_id)
            .where(Order.stock_reduced.is_(True))
            .values(stock_reduced=False)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount == 1

    async def contains_subscription(self, session: AsyncSession, order: Order) -> bool:
        product_ids = [item.product_id for item in order.items]
        if not product_ids:
            return False
        result = await session.execute(
            select(Product.id)
            .where(Product.id.in_(product_ids))
            .where(Product.is_subscription.is_(True))
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def find_renewal(self, session: AsyncSession, subscription_id: int, transaction_id: str) -> Optional[Order]:
        result = await session.execute(
            select(Order)
            .where(Order.parent_id == subscription_id)
            .where(Order.transaction_id == transaction_id)
            .where(Order.order_type == OrderType.RENEWAL)
        )
        return result.scalar_one_or_none()

    async def create_renewal_order(self, session: AsyncSession, subscription: Order, transaction_id: str) -> Optional[Order]:
        """
        Copy the subscription's line items into a new renewal order tied to
        transaction_id. Returns None if that renewal already exists.
        """
        if await self.find_renewal(session, subscription.id, transaction_id) is not None:
            return None

        renewal = Order(
            order_type=OrderType.RENEWAL,
            status=OrderStatus.PENDING_PAYMENT,
            payment_method=subscription.payment_method,
            currency=subscription.currency,
            total=subscription.total,
            customer_email=subscription.customer_email,
            customer_name=subscription.customer_name,
            billing_country=subscription.billing_country,
            parent_id=subscription.id,
            transaction_id=transaction_id,
            items=[
                OrderItem(product_id=item.product_id, quantity=item.quantity, unit_price=item.unit_price)
                for item in subscription.items
            ],
        )
        session.add(renewal)
        try:
            await session.commit()
        except IntegrityError:
            # a concurrent delivery created it first
            await session.rollback()
            logger.info("renewal for subscription %s / %s already exists", subscription.id, transaction_id)
            return None
        await session.refresh(renewal)
        return renewal


crud_order = CRUDOrder()
