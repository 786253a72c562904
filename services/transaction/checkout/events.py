"""
Transaction Service — イベント定義

トランザクションで発生した事実。過去形で命名し、不変として扱う。
Redis Pub/Sub の transaction_events チャネルに発行する。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CHANNEL = "transaction_events"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionCreated(BaseModel):
    """トランザクションが PENDING で作成された"""
    transaction_id: str
    customer: str
    total: int
    line_items: list[dict]
    timestamp: datetime = Field(default_factory=_utcnow)


class ChargeSubmitted(BaseModel):
    """ゲートウェイが課金を受け付けた"""
    transaction_id: str
    gateway_payment_id: str
    gateway_status: str
    timestamp: datetime = Field(default_factory=_utcnow)


class ChargeFailed(BaseModel):
    """課金の作成に失敗した(トランザクションは PENDING のまま)"""
    transaction_id: str
    reason: str
    retryable: bool
    timestamp: datetime = Field(default_factory=_utcnow)


class TransactionSettled(BaseModel):
    """トランザクションが終端状態に遷移した"""
    transaction_id: str
    status: str
    timestamp: datetime = Field(default_factory=_utcnow)


class StockCompensated(BaseModel):
    """確定の中断により、引き落とし済みの在庫を戻した(補償トランザクション)"""
    transaction_id: str
    restored: list[dict]
    timestamp: datetime = Field(default_factory=_utcnow)


async def publish(redis: aioredis.Redis, event: BaseModel) -> None:
    """
    イベントを発行する。

    Pub/Sub は通知に過ぎないので、発行の失敗でトランザクションの状態を
    変えてはならない。失敗はログに残して続行する。
    """
    event_type = type(event).__name__
    try:
        await redis.publish(
            CHANNEL,
            json.dumps(
                {"event_type": event_type, "data": event.model_dump(mode="json")},
                default=str,
            ),
        )
    except Exception:
        logger.exception("Failed to publish %s", event_type)
