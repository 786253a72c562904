"""Pytest fixtures: SQLite (aiosqlite) database seeded with a small catalog."""

import pytest

from checkout import db
from checkout.orchestrator import TransactionOrchestrator

from support import FakeGateway, FakeRedis, seed_products

# product id -> (price, stock)
CATALOG = {
    1: (100, 10),
    2: (50, 5),
}


@pytest.fixture
async def engine(tmp_path):
    engine = db.create_engine(f"sqlite+aiosqlite:///{tmp_path / 'transactions.db'}")
    await db.init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(engine):
    factory = db.create_session_factory(engine)
    await seed_products(factory, CATALOG)
    return factory


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def orchestrator(session_factory, gateway, redis) -> TransactionOrchestrator:
    return TransactionOrchestrator(session_factory, gateway, redis)
