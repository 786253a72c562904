"""
Transaction Service — 注文ビルダー

顧客と (product_id, quantity) のリストから価格付きの注文を組み立てる。
副作用なし: 検証に失敗しても何も書き込まれないので、
部分的なトランザクションが残ることはない。
"""

from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog
from .errors import InsufficientStock, ProductNotFound, ValidationError
from .models import LineItem, Order


async def build_order(
    session: AsyncSession,
    customer: str,
    items: list[tuple[int, int]],
) -> Order:
    """
    注文を検証して合計金額を計算する。

    1. 入力チェック(空リスト・数量 < 1)は DB アクセスの前に行う
    2. 指定順に商品を引き、最初に失敗した明細のエラーを返す
    3. total は int の積和(丸め誤差なし)

    同じ商品が複数行に現れた場合、在庫チェックは累積数量で行う。
    """
    if not customer:
        raise ValidationError("customer is required")
    if not items:
        raise ValidationError("at least one product is required")
    for product_id, quantity in items:
        if quantity < 1:
            raise ValidationError(f"quantity for product {product_id} must be at least 1")

    total = 0
    line_items: list[LineItem] = []
    requested: dict[int, int] = {}

    for position, (product_id, quantity) in enumerate(items):
        product = await catalog.get_product(session, product_id)
        if product is None:
            raise ProductNotFound(product_id)

        requested[product_id] = requested.get(product_id, 0) + quantity
        if product.quantity < requested[product_id]:
            raise InsufficientStock(product_id, requested[product_id], product.quantity)

        total += product.price * quantity
        line_items.append(
            LineItem(
                product_id=product_id,
                quantity=quantity,
                unit_price=product.price,
                position=position,
            )
        )

    return Order(customer=customer, total=total, line_items=line_items)
