"""
Transaction Service — 在庫台帳 (Stock Ledger)

在庫数を書き換える唯一の入口。

読んでから書く(read-then-write)と競合するので、条件付き UPDATE 1文で
「在庫 >= n のときだけ減らす」を行う。同じ商品への同時引き落としは
DB の行ロックで直列化され、別商品の引き落としは並列に進む。
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog
from .errors import InsufficientStock, ProductNotFound

logger = logging.getLogger(__name__)


async def decrement(session: AsyncSession, product_id: int, quantity: int) -> None:
    """
    在庫を quantity だけ減らす。

    0 行更新なら在庫不足(確定時点の正式な再チェック)。
    商品行そのものが無ければ ProductNotFound。
    """
    result = await session.execute(
        text("""
            UPDATE products
            SET quantity = quantity - :qty
            WHERE id = :id AND quantity >= :qty
        """),
        {"qty": quantity, "id": product_id},
    )
    await session.commit()

    if result.rowcount == 0:
        available = await catalog.get_quantity(session, product_id)
        if available is None:
            raise ProductNotFound(product_id)
        raise InsufficientStock(product_id, quantity, available)

    logger.info("Decremented product %s by %s", product_id, quantity)


async def restore(session: AsyncSession, product_id: int, quantity: int) -> None:
    """
    補償: decrement で引いた分を戻す。

    確定処理が途中で失敗したとき、すでに引き落とした明細に対してだけ呼ばれる。
    """
    await session.execute(
        text("""
            UPDATE products
            SET quantity = quantity + :qty
            WHERE id = :id
        """),
        {"qty": quantity, "id": product_id},
    )
    await session.commit()
    logger.info("Restored product %s by %s", product_id, quantity)
