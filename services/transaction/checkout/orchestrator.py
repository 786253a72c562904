"""
Transaction Orchestrator — 注文・決済・在庫 Saga

中央のオーケストレーターが各コンポーネントへの呼び出し順序と
状態遷移を制御する。

  作成 (create_transaction):
  ┌────────────────────────────────────────────────────────────┐
  │  1. 注文を検証・価格計算 (Order Builder, 書き込みなし)         │
  │  2. PENDING でトランザクションを保存                           │
  │  3. ゲートウェイに課金を作成                                   │
  │     ├─ 成功 → 支払い ID を記録 (PENDING のまま決済待ち)       │
  │     └─ 失敗 → PENDING のまま残す (ゲートウェイ側で受理済み     │
  │              の可能性があるので失敗扱いにしない)               │
  └────────────────────────────────────────────────────────────┘

  確定 (confirm_transaction):
  ┌────────────────────────────────────────────────────────────┐
  │  1. ゲートウェイに状態を照会                                   │
  │     ├─ 未承認 (DECLINED/VOIDED/ERROR) → 状態だけ記録、在庫は触らない │
  │     └─ APPROVED → PENDING→APPROVED を CAS で確保              │
  │  2. 明細を記録順に在庫引き落とし                               │
  │     ├─ 全成功 → FINISHED                                      │
  │     └─ 途中失敗 → 引き落とし済み分を戻して (補償) ERROR          │
  └────────────────────────────────────────────────────────────┘

ロックはどの await をまたいでも保持しない。各ステップは自分のセッションを開く。
"""

import logging

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import card_validation, events, ledger, store
from .errors import (
    InsufficientStock,
    PaymentGatewayError,
    ProductNotFound,
    StateConflict,
    ValidationError,
)
from .gateway import PaymentGatewayClient
from .logging_config import txn_prefix
from .models import (
    CardDetails,
    CardToken,
    ChargeRequest,
    CreateTransactionRequest,
    GatewayStatus,
    LineItem,
    Transaction,
    TransactionStatus,
)
from .order_builder import build_order

logger = logging.getLogger(__name__)


class TransactionOrchestrator:
    """トランザクション Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGatewayClient,
        redis: aioredis.Redis,
        *,
        stock_compensation: bool = True,
    ) -> None:
        self._session = session_factory
        self.gateway = gateway
        self.redis = redis
        self.stock_compensation = stock_compensation

    # ── 作成 ────────────────────────────────────

    async def create_transaction(self, req: CreateTransactionRequest) -> Transaction:
        """
        注文を検証して保存し、ゲートウェイに課金を作成する。

        検証エラー(ProductNotFound / InsufficientStock / ValidationError)は
        何も保存せずにそのまま送出する。ゲートウェイの失敗は
        transaction_id 付きの PaymentGatewayError として送出する。
        """
        items = [(p.product_id, p.quantity) for p in req.products]

        # ── Step 1: 注文の検証と合計金額 ─────────
        async with self._session() as session:
            order = await build_order(session, req.customer, items)

        # ── Step 2: PENDING で保存 ──────────────
        async with self._session() as session:
            transaction = await store.create_transaction(session, order)

        prefix = txn_prefix(transaction.id)
        logger.info("%s Created PENDING transaction, total=%s", prefix, transaction.total)
        await events.publish(
            self.redis,
            events.TransactionCreated(
                transaction_id=transaction.id,
                customer=transaction.customer,
                total=transaction.total,
                line_items=[item.model_dump() for item in transaction.line_items],
            ),
        )

        # ── Step 3: ゲートウェイに課金を作成 ─────
        try:
            acceptance_token = req.acceptance_token or await self.gateway.fetch_acceptance_token()
            charge = await self.gateway.create_charge(
                ChargeRequest(
                    transaction_id=transaction.id,
                    total=transaction.total,
                    customer_email=transaction.customer,
                    card_token=req.card_token,
                    acceptance_token=acceptance_token,
                    installments=req.installments,
                )
            )
        except PaymentGatewayError as e:
            e.transaction_id = transaction.id
            logger.error("%s Charge creation failed, left PENDING: %s", prefix, e.message)
            await events.publish(
                self.redis,
                events.ChargeFailed(
                    transaction_id=transaction.id,
                    reason=e.message,
                    retryable=e.retryable,
                ),
            )
            raise

        # ── Step 4: 支払い ID を記録 ─────────────
        async with self._session() as session:
            await store.attach_gateway_reference(session, transaction.id, charge.payment_id)

        logger.info("%s Charge submitted (payment=%s, gateway=%s)", prefix, charge.payment_id, charge.status.value)
        await events.publish(
            self.redis,
            events.ChargeSubmitted(
                transaction_id=transaction.id,
                gateway_payment_id=charge.payment_id,
                gateway_status=charge.status.value,
            ),
        )
        return await self.get_transaction(transaction.id)

    # ── 確定 ────────────────────────────────────

    async def confirm_transaction(self, transaction_id: str) -> Transaction:
        """
        ゲートウェイの判定をローカルの在庫と状態に反映する。

        ポーラーからも、将来の push ハンドラからも呼べるよう冪等:
        PENDING 以外のトランザクションには StateConflict を返し、在庫は触らない。
        ゲートウェイがまだ PENDING なら何も変えずに返す。
        """
        prefix = txn_prefix(transaction_id)
        transaction = await self.get_transaction(transaction_id)

        if transaction.status != TransactionStatus.PENDING:
            raise StateConflict(
                transaction_id,
                f"Transaction {transaction_id} is already {transaction.status.value}",
                transaction.status.value,
            )

        payment_id = transaction.gateway_payment_id or await self._recover_reference(transaction_id)
        gateway_status = await self.gateway.query_status(payment_id)
        logger.info("%s Gateway reports %s", prefix, gateway_status.value)

        if gateway_status == GatewayStatus.PENDING:
            return transaction

        if gateway_status != GatewayStatus.APPROVED:
            # 未承認: 在庫には一切触れない
            await self._transition(
                transaction_id, TransactionStatus(gateway_status.value), TransactionStatus.PENDING
            )
            return await self.get_transaction(transaction_id)

        # APPROVED: CAS に勝った呼び出し元だけが在庫を引き落とす
        await self._transition(transaction_id, TransactionStatus.APPROVED, TransactionStatus.PENDING)
        await self._settle_stock(transaction)
        await self._transition(transaction_id, TransactionStatus.FINISHED, TransactionStatus.APPROVED)
        return await self.get_transaction(transaction_id)

    async def _recover_reference(self, transaction_id: str) -> str:
        """
        課金作成のレスポンスが失われたトランザクションの支払い ID を
        ゲートウェイから参照 ID で探して記録する。
        """
        prefix = txn_prefix(transaction_id)
        charge = await self.gateway.find_charge_by_reference(transaction_id)
        if charge is None:
            raise StateConflict(
                transaction_id,
                f"No charge recorded at the gateway for transaction {transaction_id}",
                TransactionStatus.PENDING.value,
            )

        logger.info("%s Recovered gateway reference %s", prefix, charge.payment_id)
        async with self._session() as session:
            try:
                await store.attach_gateway_reference(session, transaction_id, charge.payment_id)
            except StateConflict:
                # 別の呼び出し元が先に記録した
                current = await store.get_transaction(session, transaction_id)
                return current.gateway_payment_id or charge.payment_id
        return charge.payment_id

    async def _settle_stock(self, transaction: Transaction) -> None:
        """
        明細を記録順に1つずつ引き落とす。並列化しない:
        途中で失敗したとき「引き落とし済み」が決定的な先頭部分になる。
        """
        prefix = txn_prefix(transaction.id)
        applied: list[LineItem] = []

        for item in transaction.line_items:
            try:
                async with self._session() as session:
                    await ledger.decrement(session, item.product_id, item.quantity)
            except Exception as e:
                logger.error(
                    "%s Stock settlement aborted at product %s: %s",
                    prefix, item.product_id, e,
                )
                if self.stock_compensation and applied:
                    await self._compensate(transaction.id, applied)
                await self._transition(transaction.id, TransactionStatus.ERROR, TransactionStatus.APPROVED)
                if isinstance(e, ProductNotFound):
                    # 確定時点で商品行が消えていれば在庫 0 と同じ扱い
                    raise InsufficientStock(item.product_id, item.quantity, 0) from e
                raise
            applied.append(item)

    async def _compensate(self, transaction_id: str, applied: list[LineItem]) -> None:
        """補償トランザクション: 引き落とし済みの明細を逆順に戻す。"""
        prefix = txn_prefix(transaction_id)
        restored: list[dict] = []

        for item in reversed(applied):
            try:
                async with self._session() as session:
                    await ledger.restore(session, item.product_id, item.quantity)
                restored.append({"product_id": item.product_id, "quantity": item.quantity})
            except Exception:
                logger.critical(
                    "%s COMPENSATION FAILED for product %s (quantity %s). Manual action required!",
                    prefix, item.product_id, item.quantity, exc_info=True,
                )

        logger.info("%s Compensated %s line item(s)", prefix, len(restored))
        await events.publish(
            self.redis,
            events.StockCompensated(transaction_id=transaction_id, restored=restored),
        )

    async def _transition(
        self,
        transaction_id: str,
        new_status: TransactionStatus,
        expected: TransactionStatus,
    ) -> None:
        async with self._session() as session:
            await store.update_status(session, transaction_id, new_status, expected)

        logger.info("%s %s -> %s", txn_prefix(transaction_id), expected.value, new_status.value)
        if new_status != TransactionStatus.APPROVED:
            await events.publish(
                self.redis,
                events.TransactionSettled(transaction_id=transaction_id, status=new_status.value),
            )

    # ── カード / 規約同意 ────────────────────────

    async def tokenize_card(self, card: CardDetails) -> CardToken:
        """カードを検証してからトークン化する。不正ならゲートウェイを呼ばない。"""
        normalized = card_validation.normalize_card(card)
        errors = card_validation.validate_card(normalized)
        if errors:
            raise ValidationError(errors)
        return await self.gateway.tokenize_card(normalized)

    async def acceptance_token(self) -> str:
        return await self.gateway.fetch_acceptance_token()

    # ── 照会 ────────────────────────────────────

    async def get_transaction(self, transaction_id: str) -> Transaction:
        async with self._session() as session:
            return await store.get_transaction(session, transaction_id)

    async def list_transactions(self) -> list[Transaction]:
        async with self._session() as session:
            return await store.list_transactions(session)
