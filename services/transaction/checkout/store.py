"""
Transaction Service — トランザクションストア

トランザクション状態を書き込む唯一のモジュール。

- 作成: トランザクション行と明細行を1つの DB トランザクションで書く
  (途中で失敗すればロールバックされ、孤立した行は残らない)
- 状態遷移: UPDATE ... WHERE status = :expected の compare-and-set。
  同時に確定処理が走っても PENDING から抜けられるのは1人だけ。
"""

import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import StateConflict, TransactionNotFound
from .models import LineItem, Order, Transaction, TransactionStatus, can_transition

_TS = DateTime(timezone=True)

_SELECT_TRANSACTION = text("""
    SELECT id, customer, total, status, gateway_payment_id, created_at, updated_at
    FROM transactions
    WHERE id = :id
""").columns(created_at=_TS, updated_at=_TS)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_transaction(row, line_items: list[LineItem]) -> Transaction:
    return Transaction(
        id=row.id,
        customer=row.customer,
        total=row.total,
        status=TransactionStatus(row.status),
        gateway_payment_id=row.gateway_payment_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        line_items=line_items,
    )


async def _load_line_items(session: AsyncSession, transaction_id: str) -> list[LineItem]:
    result = await session.execute(
        text("""
            SELECT product_id, quantity, unit_price, position
            FROM transaction_line_items
            WHERE transaction_id = :id
            ORDER BY position ASC
        """),
        {"id": transaction_id},
    )
    return [
        LineItem(
            product_id=row.product_id,
            quantity=row.quantity,
            unit_price=row.unit_price,
            position=row.position,
        )
        for row in result.fetchall()
    ]


# ── Commands ─────────────────────────────────────


async def create_transaction(session: AsyncSession, order: Order) -> Transaction:
    """
    PENDING のトランザクションと明細をまとめて作成する。

    commit 前に例外が出た場合はロールバックして再送出する。
    """
    transaction_id = str(uuid.uuid4())
    now = _now()

    try:
        await session.execute(
            text("""
                INSERT INTO transactions
                    (id, status, customer, total, gateway_payment_id, created_at, updated_at)
                VALUES
                    (:id, :status, :customer, :total, NULL, :now, :now)
            """).bindparams(bindparam("now", type_=_TS)),
            {
                "id": transaction_id,
                "status": TransactionStatus.PENDING.value,
                "customer": order.customer,
                "total": order.total,
                "now": now,
            },
        )
        await session.execute(
            text("""
                INSERT INTO transaction_line_items
                    (transaction_id, position, product_id, quantity, unit_price)
                VALUES
                    (:transaction_id, :position, :product_id, :quantity, :unit_price)
            """),
            [
                {
                    "transaction_id": transaction_id,
                    "position": item.position,
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                }
                for item in order.line_items
            ],
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    return Transaction(
        id=transaction_id,
        customer=order.customer,
        total=order.total,
        status=TransactionStatus.PENDING,
        created_at=now,
        updated_at=now,
        line_items=list(order.line_items),
    )


async def attach_gateway_reference(
    session: AsyncSession,
    transaction_id: str,
    gateway_payment_id: str,
) -> None:
    """ゲートウェイの支払い ID を一度だけ記録する。"""
    result = await session.execute(
        text("""
            UPDATE transactions
            SET gateway_payment_id = :payment_id, updated_at = :now
            WHERE id = :id AND gateway_payment_id IS NULL
        """).bindparams(bindparam("now", type_=_TS)),
        {"payment_id": gateway_payment_id, "now": _now(), "id": transaction_id},
    )
    await session.commit()

    if result.rowcount == 0:
        current = await get_transaction(session, transaction_id)
        raise StateConflict(
            transaction_id,
            f"Transaction {transaction_id} already references payment {current.gateway_payment_id}",
            current.status.value,
        )


async def update_status(
    session: AsyncSession,
    transaction_id: str,
    new_status: TransactionStatus,
    expected: TransactionStatus | None = None,
) -> None:
    """
    状態を遷移させる (compare-and-set)。

    expected を省略した場合は現在の状態を読んで、それを期待値にする。
    許可されていない遷移や、他の呼び出し元に先を越された場合は StateConflict。
    """
    if expected is None:
        expected = (await get_transaction(session, transaction_id)).status

    if not can_transition(expected, new_status):
        raise StateConflict(
            transaction_id,
            f"Transition {expected.value} -> {new_status.value} is not allowed",
            expected.value,
        )

    result = await session.execute(
        text("""
            UPDATE transactions
            SET status = :new_status, updated_at = :now
            WHERE id = :id AND status = :expected
        """).bindparams(bindparam("now", type_=_TS)),
        {
            "new_status": new_status.value,
            "now": _now(),
            "id": transaction_id,
            "expected": expected.value,
        },
    )
    await session.commit()

    if result.rowcount == 0:
        current = await get_transaction(session, transaction_id)
        raise StateConflict(
            transaction_id,
            f"Transaction {transaction_id} is {current.status.value}, expected {expected.value}",
            current.status.value,
        )


# ── Queries ──────────────────────────────────────


async def get_transaction(session: AsyncSession, transaction_id: str) -> Transaction:
    result = await session.execute(_SELECT_TRANSACTION, {"id": transaction_id})
    row = result.first()
    if not row:
        raise TransactionNotFound(transaction_id)
    return _to_transaction(row, await _load_line_items(session, transaction_id))


async def list_transactions(session: AsyncSession) -> list[Transaction]:
    """全トランザクション(新しい順)"""
    result = await session.execute(
        text("""
            SELECT id, customer, total, status, gateway_payment_id, created_at, updated_at
            FROM transactions
            ORDER BY created_at DESC
        """).columns(created_at=_TS, updated_at=_TS),
    )
    rows = result.fetchall()
    return [_to_transaction(row, await _load_line_items(session, row.id)) for row in rows]


async def list_unsettled(
    session: AsyncSession,
    limit: int = 50,
    orphan_grace_seconds: float = 60.0,
) -> list[str]:
    """
    確定処理にかけるべき PENDING トランザクションの ID (古い順)

    ゲートウェイ参照を持つものに加え、課金作成のレスポンスを失って参照が
    無いものも orphan_grace_seconds を過ぎたら含める(参照 ID で回復する)。
    作成直後の課金作成中のトランザクションとは競合させない。
    """
    result = await session.execute(
        text("""
            SELECT id FROM transactions
            WHERE status = :status
              AND (gateway_payment_id IS NOT NULL OR created_at < :cutoff)
            ORDER BY created_at ASC
            LIMIT :limit
        """).bindparams(bindparam("cutoff", type_=_TS)),
        {
            "status": TransactionStatus.PENDING.value,
            "cutoff": _now() - timedelta(seconds=orphan_grace_seconds),
            "limit": limit,
        },
    )
    return [row.id for row in result.fetchall()]


async def list_stalled(
    session: AsyncSession,
    older_than_seconds: float,
    limit: int = 50,
) -> list[str]:
    """
    APPROVED のまま older_than_seconds 以上更新されていないトランザクションの ID

    在庫引き落とし中にプロセスが落ちたもの。自動では先へ進めないので
    手動での突き合わせが必要。
    """
    result = await session.execute(
        text("""
            SELECT id FROM transactions
            WHERE status = :status AND updated_at < :cutoff
            ORDER BY updated_at ASC
            LIMIT :limit
        """).bindparams(bindparam("cutoff", type_=_TS)),
        {
            "status": TransactionStatus.APPROVED.value,
            "cutoff": _now() - timedelta(seconds=older_than_seconds),
            "limit": limit,
        },
    )
    return [row.id for row in result.fetchall()]
