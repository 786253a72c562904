"""
Transaction Service — カタログ参照 (Read 専用)

商品の現在価格と在庫数を id で引く。書き込みは行わない。
在庫の更新は ledger.py だけが行う。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Product


async def get_product(session: AsyncSession, product_id: int) -> Product | None:
    result = await session.execute(
        text("SELECT id, name, price, quantity FROM products WHERE id = :id"),
        {"id": product_id},
    )
    row = result.first()
    if not row:
        return None
    return Product(id=row.id, name=row.name, price=row.price, quantity=row.quantity)


async def get_quantity(session: AsyncSession, product_id: int) -> int | None:
    """在庫数だけを返す。商品が無ければ None。"""
    result = await session.execute(
        text("SELECT quantity FROM products WHERE id = :id"),
        {"id": product_id},
    )
    return result.scalar_one_or_none()
