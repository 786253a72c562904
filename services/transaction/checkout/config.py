"""
Transaction Service — 設定

環境変数は起動時に一度だけ読み込み、不変(frozen)な Settings に詰めて
各コンポーネントへ注入する。実行中に os.environ を直接読まない。
"""

import os

from pydantic import BaseModel, ConfigDict


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class GatewaySettings(BaseModel):
    """決済ゲートウェイ接続設定"""

    model_config = ConfigDict(frozen=True)

    base_url: str
    public_key: str
    integrity_secret: str
    currency: str = "COP"
    timeout_seconds: float = 8.0
    max_retries: int = 2
    backoff_seconds: float = 0.5


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str
    redis_url: str = "redis://localhost:6379"
    gateway: GatewaySettings
    stock_compensation: bool = True
    poll_interval_seconds: float = 0.0
    create_schema: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """
        環境変数から設定を構築する。

        必須: DATABASE_URL, GATEWAY_BASE_URL, GATEWAY_PUBLIC_KEY,
        GATEWAY_INTEGRITY_SECRET (未設定なら KeyError で起動失敗)
        """
        gateway = GatewaySettings(
            base_url=os.environ["GATEWAY_BASE_URL"].rstrip("/"),
            public_key=os.environ["GATEWAY_PUBLIC_KEY"],
            integrity_secret=os.environ["GATEWAY_INTEGRITY_SECRET"],
            currency=os.environ.get("GATEWAY_CURRENCY", "COP"),
            timeout_seconds=float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "8.0")),
            max_retries=int(os.environ.get("GATEWAY_MAX_RETRIES", "2")),
            backoff_seconds=float(os.environ.get("GATEWAY_BACKOFF_SECONDS", "0.5")),
        )
        return cls(
            database_url=os.environ["DATABASE_URL"],
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            gateway=gateway,
            stock_compensation=_env_bool("STOCK_COMPENSATION", True),
            poll_interval_seconds=float(os.environ.get("POLL_INTERVAL_SECONDS", "0")),
            create_schema=_env_bool("CREATE_SCHEMA", False),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
