"""
Transaction Service — データベース

SQLAlchemy async エンジンとセッションファクトリを作る。
SQL は text() で直接書く。products テーブルは外部カタログの所有だが、
ローカル実行・テスト用に DDL を同梱する。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS products (
        id INTEGER PRIMARY KEY,
        name VARCHAR(255) NOT NULL DEFAULT '',
        price BIGINT NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id VARCHAR(36) PRIMARY KEY,
        status VARCHAR(16) NOT NULL,
        customer VARCHAR(255) NOT NULL,
        total BIGINT NOT NULL,
        gateway_payment_id VARCHAR(100),
        created_at TIMESTAMP WITH TIME ZONE NOT NULL,
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transaction_line_items (
        transaction_id VARCHAR(36) NOT NULL REFERENCES transactions (id),
        position INTEGER NOT NULL,
        product_id INTEGER NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        unit_price BIGINT NOT NULL,
        PRIMARY KEY (transaction_id, position)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_transactions_status
        ON transactions (status)
    """,
)


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する。"""
    async with engine.begin() as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(text(statement))
