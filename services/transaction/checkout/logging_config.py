"""
Transaction Service — ロギング設定

全モジュール共通のフォーマットで stdout に出力する(Docker 互換)。
各モジュールは logging.getLogger(__name__) を使う。
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """
    ルートロガーを設定する。複数回呼ばれても handler は重複しない。

    外部ライブラリ(httpx, sqlalchemy)のログは WARNING 以上に抑える。
    """
    logging.basicConfig(
        level=level.upper(),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def txn_prefix(transaction_id: str | None) -> str:
    return f"[Txn: {transaction_id or '-'}]"
