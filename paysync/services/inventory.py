import logging
from typing import Iterable
from redis.asyncio import Redis
from paysync.db.models.order import OrderItem

logger = logging.getLogger(__name__)


def stock_key(product_id: int) -> str:
    return f"inventory:{{{product_id}}}:stock"


class InventoryService:
    """
    Stock counters in Redis, one key per product.

    Whether an order's stock is currently held is tracked on the order row
    (stock_reduced), callers flip that flag first and only adjust here when
    the flip succeeded.
    """

    async def get_stock(self, product_id: int, redis: Redis) -> int:
        value = await redis.get(stock_key(product_id))
        return int(value) if value is not None else 0

    async def set_stock(self, product_id: int, quantity: int, redis: Redis) -> None:
        await redis.set(stock_key(product_id), quantity)

    async def reduce_stock(self, items: Iterable[OrderItem], redis: Redis) -> None:
        pipe = redis.pipeline()
        for item in items:
            pipe.decrby(stock_key(item.product_id), item.quantity)
        await pipe.execute()

    async def restore_stock(self, items: Iterable[OrderItem], redis: Redis) -> None:
        pipe = redis.pipeline()
        restored = []
        for item in items:
            pipe.incrby(stock_key(item.product_id), item.quantity)
            restored.append(f"{item.product_id}x{item.quantity}")
        await pipe.execute()
        logger.info("restored stock %s", ", ".join(restored))


inventory_service = InventoryService()
