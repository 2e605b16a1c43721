from dataclasses import replace
from datetime import timedelta

import pytest

from config import BreachType, HandleAction, Priority, TicketEventType
from sla.application import BreachHandler, DeadlineSynchronizer

from conftest import NOW


async def sync_and_handle(uow_factory, ticket_id, handler, now=NOW):
    await DeadlineSynchronizer(uow_factory).sync_from_ticket(ticket_id)
    intents = []
    async with uow_factory() as uow:
        [scanned] = await uow.instances.find_due(now, 10)
        outcome = await handler.handle(uow, scanned, now, intents)
    return outcome, intents


@pytest.mark.asyncio
async def test_first_response_breach_escalates_and_stages_intent(seed, uow_factory):
    team = await seed.team("Tier 1")
    await seed.lead(team, "lead@example.com", name="Lena Lead")
    await seed.agent(team, "agent@example.com")
    ticket = await seed.ticket(
        assigned_team_id=team.id,
        display_id="SUP_20260115_001",
        subject="VPN down",
        first_response_due_at=NOW - timedelta(minutes=5),
        due_at=NOW + timedelta(hours=20),
    )
    handler = BreachHandler(on_call_emails=["oncall@example.com"], web_app_url="https://desk.example.com/")

    outcome, intents = await sync_and_handle(uow_factory, ticket.id, handler)

    assert outcome.action == HandleAction.BREACHED
    assert outcome.breach_type == BreachType.FIRST_RESPONSE
    assert outcome.escalated_to == Priority.P2

    row = await seed.instance_row(ticket.id)
    assert row.first_response_breached_at == NOW
    assert row.next_due_at == ticket.due_at
    assert row.priority == Priority.P2.value
    assert (await seed.ticket_row(ticket.id)).priority == Priority.P2.value

    events = {event.type: event.payload for event in await seed.events(ticket.id)}
    assert events[TicketEventType.SLA_BREACHED.value] == {
        "breachType": "FIRST_RESPONSE",
        "dueAt": (NOW - timedelta(minutes=5)).isoformat(),
        "policyId": None,
    }
    assert events[TicketEventType.PRIORITY_BUMPED.value] == {
        "from": "P3", "to": "P2", "reason": "FIRST_RESPONSE",
    }

    [intent] = intents
    assert intent.subject == "[Ticket SUP_20260115_001] SLA Breach: First response"
    assert [lead.email for lead in intent.lead_users] == ["lead@example.com"]
    assert intent.on_call_emails == ["oncall@example.com"]
    assert intent.payload["priority"] == "P2"
    lines = intent.body.splitlines()
    assert lines[0] == "SLA breached: First response"
    assert "Subject: VPN down" in lines
    assert "Team: Tier 1" in lines
    assert "Priority bumped to P2." in lines
    assert lines[-2] == ""
    assert lines[-1] == f"View: https://desk.example.com/tickets/{ticket.id}"


@pytest.mark.asyncio
async def test_resolution_breach_clears_scan_key(seed, uow_factory):
    ticket = await seed.ticket(
        number=42,
        first_response_at=NOW - timedelta(hours=2),
        due_at=NOW - timedelta(minutes=1),
    )
    handler = BreachHandler(on_call_emails=["oncall@example.com"])

    outcome, intents = await sync_and_handle(uow_factory, ticket.id, handler)

    assert outcome.breach_type == BreachType.RESOLUTION
    row = await seed.instance_row(ticket.id)
    assert row.resolution_breached_at == NOW
    assert row.next_due_at is None
    assert intents[0].subject == "[Ticket #42] SLA Breach: Resolution"
    assert "Team: Unassigned" in intents[0].body.splitlines()


@pytest.mark.asyncio
async def test_p1_is_terminal(seed, uow_factory):
    ticket = await seed.ticket(priority=Priority.P1.value, first_response_due_at=NOW - timedelta(minutes=1))

    outcome, _ = await sync_and_handle(uow_factory, ticket.id, BreachHandler())

    assert outcome.action == HandleAction.BREACHED
    assert outcome.escalated_to is None
    assert (await seed.ticket_row(ticket.id)).priority == "P1"
    assert [event.type for event in await seed.events(ticket.id)] == ["SLA_BREACHED"]


@pytest.mark.asyncio
async def test_escalation_can_be_disabled(seed, uow_factory):
    ticket = await seed.ticket(priority=Priority.P4.value, first_response_due_at=NOW - timedelta(minutes=1))

    outcome, _ = await sync_and_handle(uow_factory, ticket.id, BreachHandler(escalation_enabled=False))

    assert outcome.escalated_to is None
    assert (await seed.ticket_row(ticket.id)).priority == "P4"


@pytest.mark.asyncio
async def test_no_recipients_records_breach_without_intent(seed, uow_factory):
    team = await seed.team()
    await seed.lead(team, None)
    ticket = await seed.ticket(assigned_team_id=team.id, first_response_due_at=NOW - timedelta(minutes=1))

    outcome, intents = await sync_and_handle(uow_factory, ticket.id, BreachHandler())

    assert outcome.action == HandleAction.BREACHED
    assert outcome.intent_staged is False
    assert intents == []
    assert (await seed.instance_row(ticket.id)).first_response_breached_at == NOW
    assert {event.type for event in await seed.events(ticket.id)} == {"SLA_BREACHED", "PRIORITY_BUMPED"}


@pytest.mark.asyncio
async def test_lost_race_writes_nothing(seed, uow_factory):
    ticket = await seed.ticket(first_response_due_at=NOW - timedelta(minutes=1))
    await DeadlineSynchronizer(uow_factory).sync_from_ticket(ticket.id)

    async with uow_factory() as uow:
        [stale] = await uow.instances.find_due(NOW, 10)

    handler = BreachHandler(on_call_emails=["oncall@example.com"])
    async with uow_factory() as uow:
        await handler.handle(uow, stale, NOW, [])

    intents = []
    async with uow_factory() as uow:
        outcome = await handler.handle(uow, stale, NOW, intents)

    assert outcome.action == HandleAction.LOST_RACE
    assert intents == []
    assert [event.type for event in await seed.events(ticket.id)].count("SLA_BREACHED") == 1
    assert (await seed.ticket_row(ticket.id)).priority == "P2"


@pytest.mark.asyncio
async def test_paused_instance_is_resynced_not_breached(seed, uow_factory, session_maker):
    ticket = await seed.ticket(first_response_due_at=NOW - timedelta(minutes=1))
    await DeadlineSynchronizer(uow_factory).sync_from_ticket(ticket.id)

    async with uow_factory() as uow:
        [scanned] = await uow.instances.find_due(NOW, 10)
    paused = replace(scanned, instance=replace(scanned.instance, paused_at=NOW))

    async with uow_factory() as uow:
        outcome = await BreachHandler().handle(uow, paused, NOW, [])

    assert outcome.action == HandleAction.RESYNCED
    row = await seed.instance_row(ticket.id)
    assert row.first_response_breached_at is None
    assert await seed.events(ticket.id) == []


@pytest.mark.asyncio
async def test_stale_scan_key_is_recomputed(seed, uow_factory, session_maker):
    ticket = await seed.ticket(first_response_due_at=NOW - timedelta(minutes=1))
    await DeadlineSynchronizer(uow_factory).sync_from_ticket(ticket.id)

    async with uow_factory() as uow:
        [scanned] = await uow.instances.find_due(NOW, 10)
    responded = replace(scanned, ticket=replace(scanned.ticket, first_response_at=NOW))

    async with uow_factory() as uow:
        outcome = await BreachHandler().handle(uow, responded, NOW, [])

    assert outcome.action == HandleAction.RESYNCED
    # The stored ticket is still unresponded, so the scan key is recomputed from it
    assert (await seed.instance_row(ticket.id)).next_due_at == ticket.first_response_due_at
