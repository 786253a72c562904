import pytest
from sqlalchemy.exc import IntegrityError

from checkout import store
from checkout.errors import StateConflict, TransactionNotFound
from checkout.models import LineItem, Order, TransactionStatus

from support import count_rows


def make_order(total: int = 250) -> Order:
    return Order(
        customer="client@example.com",
        total=total,
        line_items=[
            LineItem(product_id=1, quantity=2, unit_price=100, position=0),
            LineItem(product_id=2, quantity=1, unit_price=50, position=1),
        ],
    )


async def test_create_and_get(session_factory):
    async with session_factory() as session:
        created = await store.create_transaction(session, make_order())

    async with session_factory() as session:
        loaded = await store.get_transaction(session, created.id)

    assert loaded.id == created.id
    assert loaded.status == TransactionStatus.PENDING
    assert loaded.total == 250
    assert loaded.gateway_payment_id is None
    assert loaded.created_at is not None
    assert [(i.product_id, i.quantity) for i in loaded.line_items] == [(1, 2), (2, 1)]


async def test_get_unknown(session_factory):
    async with session_factory() as session:
        with pytest.raises(TransactionNotFound):
            await store.get_transaction(session, "does-not-exist")


async def test_line_item_failure_leaves_no_orphan(session_factory):
    broken = Order(
        customer="client@example.com",
        total=300,
        line_items=[
            LineItem(product_id=1, quantity=2, unit_price=100, position=0),
            LineItem(product_id=1, quantity=1, unit_price=100, position=0),
        ],
    )
    async with session_factory() as session:
        with pytest.raises(IntegrityError):
            await store.create_transaction(session, broken)

    assert await count_rows(session_factory, "transactions") == 0
    assert await count_rows(session_factory, "transaction_line_items") == 0


async def test_gateway_reference_is_attached_once(session_factory):
    async with session_factory() as session:
        created = await store.create_transaction(session, make_order())
        await store.attach_gateway_reference(session, created.id, "pay-1")

        with pytest.raises(StateConflict):
            await store.attach_gateway_reference(session, created.id, "pay-2")

        loaded = await store.get_transaction(session, created.id)
    assert loaded.gateway_payment_id == "pay-1"


async def test_status_follows_state_machine(session_factory):
    async with session_factory() as session:
        created = await store.create_transaction(session, make_order())

        with pytest.raises(StateConflict):
            await store.update_status(session, created.id, TransactionStatus.FINISHED)

        await store.update_status(session, created.id, TransactionStatus.APPROVED)
        await store.update_status(session, created.id, TransactionStatus.FINISHED)

        with pytest.raises(StateConflict):
            await store.update_status(session, created.id, TransactionStatus.PENDING)

        loaded = await store.get_transaction(session, created.id)
    assert loaded.status == TransactionStatus.FINISHED


async def test_compare_and_set_rejects_stale_expectation(session_factory):
    async with session_factory() as session:
        created = await store.create_transaction(session, make_order())
        await store.update_status(
            session, created.id, TransactionStatus.DECLINED, TransactionStatus.PENDING
        )

        with pytest.raises(StateConflict) as exc:
            await store.update_status(
                session, created.id, TransactionStatus.APPROVED, TransactionStatus.PENDING
            )
    assert exc.value.current_status == "DECLINED"


async def test_list_and_unsettled(session_factory):
    async with session_factory() as session:
        first = await store.create_transaction(session, make_order())
        second = await store.create_transaction(session, make_order())
        await store.attach_gateway_reference(session, second.id, "pay-2")

        listed = await store.list_transactions(session)
        unsettled = await store.list_unsettled(session)

    assert {t.id for t in listed} == {first.id, second.id}
    assert unsettled == [second.id]


async def test_unsettled_includes_orphans_after_grace(session_factory):
    async with session_factory() as session:
        orphan = await store.create_transaction(session, make_order())
        charged = await store.create_transaction(session, make_order())
        await store.attach_gateway_reference(session, charged.id, "pay-2")

        fresh = await store.list_unsettled(session)
        overdue = await store.list_unsettled(session, orphan_grace_seconds=0)

    assert fresh == [charged.id]
    assert set(overdue) == {orphan.id, charged.id}


async def test_list_stalled(session_factory):
    async with session_factory() as session:
        stuck = await store.create_transaction(session, make_order())
        pending = await store.create_transaction(session, make_order())
        await store.update_status(session, stuck.id, TransactionStatus.APPROVED)

        assert await store.list_stalled(session, older_than_seconds=3600) == []
        stalled = await store.list_stalled(session, older_than_seconds=0)

    assert stalled == [stuck.id]
    assert pending.id not in stalled
