from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from config import Priority
from infrastructure.database import get_session
from main import app
from sla.application import BreachHandler, DeadlineSynchronizer, NotificationDispatcher
from sla.services import BreachScanner

from conftest import NOW, RecordingNotifier


@pytest_asyncio.fixture
async def client(session_maker, uow_factory):
    async def session_override():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    synchronizer = DeadlineSynchronizer(uow_factory)
    app.dependency_overrides[get_session] = session_override
    app.state.sla_synchronizer = synchronizer
    app.state.sla_scanner = BreachScanner(
        uow_factory,
        synchronizer,
        BreachHandler(on_call_emails=["oncall@example.com"]),
        NotificationDispatcher(RecordingNotifier()),
        clock=lambda: NOW,
    )

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.clear()
    del app.state.sla_synchronizer
    del app.state.sla_scanner


@pytest.mark.asyncio
async def test_sync_creates_and_returns_instance(client, seed):
    ticket = await seed.ticket()

    response = await client.post(f"/sla/tickets/{ticket.id}/sync")

    assert response.status_code == 200
    body = response.json()
    assert body["ticket_id"] == ticket.id
    assert body["priority"] == "P3"
    assert body["next_due_at"] is not None
    assert "X-Correlation-ID" in response.headers
    assert await seed.instance_count() == 1


@pytest.mark.asyncio
async def test_sync_with_reset_and_unlink(client, seed):
    policy = await seed.policy("Default", {Priority.P3: (8, 72)}, is_default=True)
    ticket = await seed.ticket()
    linked = (await client.post(f"/sla/tickets/{ticket.id}/sync")).json()
    assert linked["policy_config_id"] == policy.id

    response = await client.post(
        f"/sla/tickets/{ticket.id}/sync",
        json={"policy_config_id": None, "reset_resolution": True},
    )

    assert response.status_code == 200
    assert response.json()["policy_config_id"] is None


@pytest.mark.asyncio
async def test_sync_unknown_ticket_is_404(client):
    response = await client.post("/sla/tickets/nope/sync")

    assert response.status_code == 404
    assert "nope" in response.json()["detail"]


@pytest.mark.asyncio
async def test_get_instance(client, seed):
    ticket = await seed.ticket()
    assert (await client.get(f"/sla/tickets/{ticket.id}/instance")).status_code == 404

    await client.post(f"/sla/tickets/{ticket.id}/sync")
    response = await client.get(f"/sla/tickets/{ticket.id}/instance")

    assert response.status_code == 200
    assert response.json()["ticket_id"] == ticket.id


@pytest.mark.asyncio
async def test_resolve_policy(client, seed):
    team = await seed.team()
    policy = await seed.policy("Gold", {Priority.P1: (0.5, 2)}, team=team)

    team_response = await client.get("/sla/policies/resolve", params={"priority": "P1", "team_id": team.id})
    fallback_response = await client.get("/sla/policies/resolve", params={"priority": "P4"})

    assert team_response.json() == {
        "policy_config_id": policy.id,
        "priority": "P1",
        "first_response_hours": 0.5,
        "resolution_hours": 2.0,
        "source": "team",
    }
    assert fallback_response.json()["source"] == "fallback"
    assert fallback_response.json()["policy_config_id"] is None


@pytest.mark.asyncio
async def test_resolve_policy_rejects_unknown_priority(client):
    response = await client.get("/sla/policies/resolve", params={"priority": "P9"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_manual_scan(client, seed):
    await seed.ticket(first_response_due_at=NOW - timedelta(minutes=5))

    response = await client.post("/sla/scan")

    assert response.status_code == 200
    body = response.json()
    assert body["backfilled"] == 1
    assert body["breaches"] == 1
    assert body["notifications_dispatched"] == 1


@pytest.mark.asyncio
async def test_manual_scan_disabled_is_409(client, uow_factory):
    app.state.sla_scanner = BreachScanner(
        uow_factory,
        DeadlineSynchronizer(uow_factory),
        BreachHandler(),
        NotificationDispatcher(RecordingNotifier()),
        enabled=False,
    )

    response = await client.post("/sla/scan")

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_health_reports_worker_and_last_cycle(client):
    await client.post("/sla/scan")

    response = await client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["checks"]["sla_worker"] == "enabled"
    assert body["checks"]["sla_scheduler"] == "stopped"
    assert body["last_cycle"]["scan_locked"] is True
