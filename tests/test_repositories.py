from datetime import timedelta

import pytest

from config import SLA_BREACH_LOCK_KEY, BreachType, Priority
from sla.infrastructure import SQLAlchemyUnitOfWork

from conftest import NOW


def derived(ticket, **overrides):
    values = {
        "priority": Priority(ticket.priority),
        "first_response_due_at": ticket.first_response_due_at,
        "resolution_due_at": ticket.due_at,
        "paused_at": None,
        "next_due_at": ticket.first_response_due_at,
    }
    values.update(overrides)
    return values


@pytest.mark.asyncio
async def test_upsert_never_duplicates(seed, uow_factory):
    ticket = await seed.ticket()

    async with uow_factory() as uow:
        created = await uow.instances.upsert(ticket.id, derived(ticket), derived(ticket))
    async with uow_factory() as uow:
        updated = await uow.instances.upsert(
            ticket.id, derived(ticket), derived(ticket, next_due_at=ticket.due_at)
        )

    assert updated.id == created.id
    assert updated.next_due_at == ticket.due_at
    assert await seed.instance_count() == 1


@pytest.mark.asyncio
async def test_conditional_breach_update_has_one_winner(seed, uow_factory, session_maker):
    ticket = await seed.ticket(first_response_due_at=NOW - timedelta(minutes=1))
    async with uow_factory() as uow:
        instance = await uow.instances.upsert(ticket.id, derived(ticket), derived(ticket))

    async with session_maker() as first, session_maker() as second:
        winner = await SQLAlchemyUnitOfWork(first).instances.mark_breached(
            instance.id, BreachType.FIRST_RESPONSE, NOW, ticket.due_at
        )
        await first.commit()
        loser = await SQLAlchemyUnitOfWork(second).instances.mark_breached(
            instance.id, BreachType.FIRST_RESPONSE, NOW + timedelta(seconds=1), None
        )
        await second.commit()

    assert (winner, loser) == (True, False)
    row = await seed.instance_row(ticket.id)
    assert row.first_response_breached_at == NOW
    assert row.next_due_at == ticket.due_at


@pytest.mark.asyncio
async def test_find_due_orders_by_next_due_and_limits(seed, uow_factory):
    later = await seed.ticket(first_response_due_at=NOW - timedelta(minutes=1))
    sooner = await seed.ticket(first_response_due_at=NOW - timedelta(hours=1))
    future = await seed.ticket(first_response_due_at=NOW + timedelta(hours=1))
    async with uow_factory() as uow:
        for ticket in (later, sooner, future):
            await uow.instances.upsert(ticket.id, derived(ticket), derived(ticket))

    async with uow_factory() as uow:
        due = await uow.instances.find_due(NOW, 10)
        limited = await uow.instances.find_due(NOW, 1)

    assert [item.ticket.id for item in due] == [sooner.id, later.id]
    assert [item.ticket.id for item in limited] == [sooner.id]


@pytest.mark.asyncio
async def test_find_open_without_instance(seed, uow_factory):
    tracked = await seed.ticket()
    open_ticket = await seed.ticket()
    await seed.ticket(completed_at=NOW)
    async with uow_factory() as uow:
        await uow.instances.upsert(tracked.id, derived(tracked), derived(tracked))

    async with uow_factory() as uow:
        assert await uow.tickets.find_open_without_instance(10) == [open_ticket.id]


@pytest.mark.asyncio
async def test_advisory_lock_is_granted_without_postgres(uow_factory):
    async with uow_factory() as uow:
        assert await uow.try_advisory_lock(SLA_BREACH_LOCK_KEY) is True
