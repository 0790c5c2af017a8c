import logging
from typing import Optional, Type
from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from paysync.db.models.mapping import CouponMapping, MappingMixin, PaymentMapping, ProductMapping, SubscriptionMapping
from paysync.db.models.mixins.timestamp import utcnow

logger = logging.getLogger(__name__)


def _dialect_insert(session: AsyncSession):
    # both dialects expose the same on_conflict_do_update API
    if session.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


class MappingStore:
    """
    Durable local_id <-> remote_id table for one entity kind.

    Writes are upserts keyed on local_id and last write wins, so re-mapping
    after a stale remote id is just another save. A remote id is held by at
    most one local id: saving it under a new local id drops the old row.
    Every write commits on its own, there are no cross-table transactions.
    """

    def __init__(self, model: Type[MappingMixin], kind: str):
        self.model = model
        self.kind = kind

    async def save_mapping(self, session: AsyncSession, local_id: int, remote_id: str) -> None:
        model = self.model
        await session.execute(
            delete(model)
            .where(model.remote_id == remote_id)
            .where(model.local_id != local_id)
        )
        now = utcnow()
        insert = _dialect_insert(session)
        stmt = insert(model).values(local_id=local_id, remote_id=remote_id, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[model.local_id],
            set_={"remote_id": stmt.excluded.remote_id, "updated_at": stmt.excluded.updated_at},
        )
        await session.execute(stmt)
        await session.commit()
        logger.debug("saved %s mapping %s -> %s", self.kind, local_id, remote_id)

    async def save_mapping_if_absent(self, session: AsyncSession, local_id: int, remote_id: str) -> bool:
        """
        Save only when neither side is mapped yet, so an existing mapping is
        never moved. Returns True if a row was written.
        """
        if await self.get_remote_id(session, local_id) is not None:
            return False
        if await self.get_local_id(session, remote_id) is not None:
            return False
        await self.save_mapping(session, local_id, remote_id)
        return True

    async def get_remote_id(self, session: AsyncSession, local_id: int) -> Optional[str]:
        result = await session.execute(
            select(self.model.remote_id).where(self.model.local_id == local_id)
        )
        return result.scalar_one_or_none()

    async def get_local_id(self, session: AsyncSession, remote_id: str) -> Optional[int]:
        if not remote_id:
            return None
        result = await session.execute(
            select(self.model.local_id)
            .where(self.model.remote_id == remote_id)
            .order_by(self.model.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def delete_mapping(self, session: AsyncSession, local_id: int) -> None:
        await session.execute(delete(self.model).where(self.model.local_id == local_id))
        await session.commit()
        logger.info("deleted %s mapping for local id %s", self.kind, local_id)

    async def clear(self, session: AsyncSession) -> int:
        result = await session.execute(delete(self.model))
        await session.commit()
        return result.rowcount

    async def create_table(self, engine: AsyncEngine) -> None:
        async with engine.begin() as conn:
            await conn.run_sync(self.model.__table__.create, checkfirst=True)
        logger.info("created table %s", self.model.__tablename__)

    async def drop_table(self, engine: AsyncEngine) -> None:
        async with engine.begin() as conn:
            await conn.run_sync(self.model.__table__.drop, checkfirst=True)
        logger.info("dropped table %s", self.model.__tablename__)


product_mappings = MappingStore(ProductMapping, "product")
payment_mappings = MappingStore(PaymentMapping, "payment")
coupon_mappings = MappingStore(CouponMapping, "coupon")
subscription_mappings = MappingStore(SubscriptionMapping, "subscription")
