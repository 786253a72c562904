"""Test doubles for the payment gateway and Redis, plus database helpers."""

import json

from sqlalchemy import text

from checkout import catalog
from checkout.errors import PaymentGatewayError
from checkout.models import CardToken, ChargeResult, GatewayStatus


class FakeRedis:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, json.loads(message)))
        return 1

    def event_types(self) -> list[str]:
        return [event["event_type"] for _, event in self.published]

    async def aclose(self) -> None:
        pass


class FakeGateway:
    """
    Scriptable stand-in for PaymentGatewayClient.

    status: what query_status reports.
    charge_error / status_error: raised instead of answering.
    """

    def __init__(self, status: GatewayStatus = GatewayStatus.APPROVED) -> None:
        self.status = status
        self.charge_error: PaymentGatewayError | None = None
        self.status_error: PaymentGatewayError | None = None
        self.by_reference: dict[str, ChargeResult] = {}
        self.charges = []
        self.status_queries: list[str] = []
        self.tokenized = []

    async def fetch_acceptance_token(self) -> str:
        return "acceptance-token"

    async def tokenize_card(self, card) -> CardToken:
        self.tokenized.append(card)
        return CardToken(token="tok_test_123", brand="VISA", last_four=card.number[-4:])

    async def create_charge(self, charge) -> ChargeResult:
        self.charges.append(charge)
        if self.charge_error:
            raise self.charge_error
        return ChargeResult(payment_id=f"pay-{len(self.charges)}", status=GatewayStatus.PENDING)

    async def query_status(self, gateway_payment_id: str) -> GatewayStatus:
        self.status_queries.append(gateway_payment_id)
        if self.status_error:
            raise self.status_error
        return self.status

    async def find_charge_by_reference(self, reference: str) -> ChargeResult | None:
        return self.by_reference.get(reference)

    async def aclose(self) -> None:
        pass


async def seed_products(session_factory, products: dict[int, tuple[int, int]]) -> None:
    """products: id -> (price, stock)"""
    async with session_factory() as session:
        await session.execute(
            text("INSERT INTO products (id, name, price, quantity) VALUES (:id, :name, :price, :qty)"),
            [
                {"id": pid, "name": f"product-{pid}", "price": price, "qty": qty}
                for pid, (price, qty) in products.items()
            ],
        )
        await session.commit()


async def stock_of(session_factory, product_id: int) -> int | None:
    async with session_factory() as session:
        return await catalog.get_quantity(session, product_id)


async def count_rows(session_factory, table: str) -> int:
    async with session_factory() as session:
        result = await session.execute(text(f"SELECT COUNT(*) FROM {table}"))
        return result.scalar_one()
