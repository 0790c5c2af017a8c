"""
Clear all product mappings so products are re-synced on the next checkout.

Useful after switching between test and live mode, or when products were
deleted from the Dodo Payments dashboard.

    python -m paysync.scripts.clear_product_mappings
"""
import asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker
from paysync.core.config import settings
from paysync.crud.mapping import product_mappings
from paysync.db.session import async_session_factory, engine


async def clear_product_mappings(session_factory: async_sessionmaker) -> int:
    async with session_factory() as session:
        return await product_mappings.clear(session)


async def main():
    try:
        removed = await clear_product_mappings(async_session_factory)
    except Exception as e:
        print(f"❌ Failed to clear product mappings: {e}")
        raise SystemExit(1)
    finally:
        await engine.dispose()

    print(f"✅ Cleared {removed} product mappings.")
    print("Products will be automatically re-synced on the next checkout.")
    print(f"Current mode: {settings.mode_label}")


if __name__ == "__main__":
    asyncio.run(main())
