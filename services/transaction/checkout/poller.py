"""
Transaction Service — 決済状態ポーラー

ゲートウェイは結果を push しないので、PENDING のトランザクションを
定期的に確定処理にかける。支払い ID を失ったものも猶予時間の後に拾い、
参照 ID でゲートウェイから回復する。

confirm_transaction は冪等なので、API からの PUT と同時に走っても
在庫が二重に引き落とされることはない(CAS で1人だけが勝つ)。

APPROVED で止まったトランザクション(引き落とし中に落ちたもの)は
自動では進めず、毎回 CRITICAL で報告する。
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import store
from .errors import CheckoutError
from .logging_config import txn_prefix
from .orchestrator import TransactionOrchestrator

logger = logging.getLogger(__name__)

ORPHAN_GRACE_SECONDS = 60.0
STALL_THRESHOLD_SECONDS = 300.0


async def poll_once(
    orchestrator: TransactionOrchestrator,
    session_factory: async_sessionmaker[AsyncSession],
    batch_size: int = 50,
    orphan_grace_seconds: float = ORPHAN_GRACE_SECONDS,
    stall_threshold_seconds: float = STALL_THRESHOLD_SECONDS,
) -> int:
    """未確定のトランザクションを1巡確定処理にかけ、処理件数を返す。"""
    async with session_factory() as session:
        transaction_ids = await store.list_unsettled(session, batch_size, orphan_grace_seconds)

    for transaction_id in transaction_ids:
        try:
            transaction = await orchestrator.confirm_transaction(transaction_id)
            logger.info("%s Polled: %s", txn_prefix(transaction_id), transaction.status.value)
        except CheckoutError as e:
            logger.warning("%s Poll failed: %s", txn_prefix(transaction_id), e.message)

    await report_stalled(session_factory, stall_threshold_seconds, batch_size)
    return len(transaction_ids)


async def report_stalled(
    session_factory: async_sessionmaker[AsyncSession],
    older_than_seconds: float,
    limit: int = 50,
) -> list[str]:
    async with session_factory() as session:
        stalled = await store.list_stalled(session, older_than_seconds, limit)

    for transaction_id in stalled:
        logger.critical(
            "%s Stuck in APPROVED for over %ss. Stock settlement was interrupted, manual reconciliation required!",
            txn_prefix(transaction_id), older_than_seconds,
        )
    return stalled


async def run_poller(
    orchestrator: TransactionOrchestrator,
    session_factory: async_sessionmaker[AsyncSession],
    interval: float,
    shutdown_event: asyncio.Event,
) -> None:
    """
    shutdown_event がセットされるまで interval 秒ごとに poll_once を実行する。
    """
    logger.info("Confirmation poller started (interval=%ss)", interval)
    while not shutdown_event.is_set():
        try:
            await poll_once(orchestrator, session_factory)
        except Exception:
            logger.exception("Poller iteration failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Confirmation poller stopped")
