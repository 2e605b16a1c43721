"""Shared fixtures: a throwaway SQLite database with the production models."""

from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from config import Priority, TeamRole, TicketStatus
from core import NotificationDeliveryException
from infrastructure.database import Base
from sla.application import BreachHandler, DeadlineSynchronizer, INotifier, NotificationDispatcher
from sla.infrastructure import (
    SlaInstanceModel,
    SlaPolicyAssignmentModel,
    SlaPolicyConfigModel,
    SlaPolicyTargetModel,
    SQLAlchemyUnitOfWork,
    TeamMemberModel,
    TeamModel,
    TicketEventModel,
    TicketModel,
    UserModel,
    sqlalchemy_uow_factory,
)
from sla.services import BreachScanner

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sla.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def uow_factory(session_maker):
    return sqlalchemy_uow_factory(session_maker)


class Seeder:
    """Inserts fixture rows, one committed transaction per call."""

    def __init__(self, session_maker):
        self._session_maker = session_maker
        self._numbers = count(1)

    async def add(self, *models):
        async with self._session_maker() as session:
            session.add_all(models)
            await session.commit()
        return models[0]

    async def team(self, name: str = "Support") -> TeamModel:
        return await self.add(TeamModel(name=name))

    async def lead(self, team: TeamModel, email: Optional[str], name: str = "Lead") -> UserModel:
        user = await self.add(UserModel(email=email, display_name=name))
        await self.add(TeamMemberModel(team_id=team.id, user_id=user.id, role=TeamRole.LEAD.value))
        return user

    async def agent(self, team: TeamModel, email: str) -> UserModel:
        user = await self.add(UserModel(email=email, display_name="Agent"))
        await self.add(TeamMemberModel(team_id=team.id, user_id=user.id, role=TeamRole.AGENT.value))
        return user

    async def ticket(self, **overrides) -> TicketModel:
        number = next(self._numbers)
        values = dict(
            number=number,
            subject=f"Ticket {number}",
            priority=Priority.P3.value,
            status=TicketStatus.NEW.value,
            first_response_due_at=NOW + timedelta(hours=8),
            due_at=NOW + timedelta(hours=72),
            created_at=NOW - timedelta(hours=1),
        )
        values.update(overrides)
        return await self.add(TicketModel(**values))

    async def policy(
        self,
        name: str,
        targets: Dict[Priority, Tuple[float, float]],
        is_default: bool = False,
        enabled: bool = True,
        team: Optional[TeamModel] = None,
        updated_at: datetime = NOW,
    ) -> SlaPolicyConfigModel:
        policy = await self.add(SlaPolicyConfigModel(
            name=name, is_default=is_default, enabled=enabled, updated_at=updated_at
        ))
        for priority, (first_response, resolution) in targets.items():
            await self.add(SlaPolicyTargetModel(
                policy_config_id=policy.id,
                priority=priority.value,
                first_response_hours=first_response,
                resolution_hours=resolution,
            ))
        if team is not None:
            await self.add(SlaPolicyAssignmentModel(
                policy_config_id=policy.id, team_id=team.id, updated_at=updated_at
            ))
        return policy

    async def instance_row(self, ticket_id: str) -> Optional[SlaInstanceModel]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(SlaInstanceModel).where(SlaInstanceModel.ticket_id == ticket_id)
            )
            return result.scalar_one_or_none()

    async def instance_count(self) -> int:
        async with self._session_maker() as session:
            result = await session.execute(select(SlaInstanceModel.id))
            return len(result.scalars().all())

    async def ticket_row(self, ticket_id: str) -> TicketModel:
        async with self._session_maker() as session:
            return await session.get(TicketModel, ticket_id)

    async def events(self, ticket_id: str) -> List[TicketEventModel]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(TicketEventModel)
                .where(TicketEventModel.ticket_id == ticket_id)
                .order_by(TicketEventModel.created_at, TicketEventModel.type.desc())
            )
            return list(result.scalars().all())


@pytest.fixture
def seed(session_maker):
    return Seeder(session_maker)


class RecordingNotifier(INotifier):
    """Notifier double that records calls and can fail for chosen tickets."""

    def __init__(self, fail_for: Tuple[str, ...] = ()):
        self.calls = []
        self._fail_for = set(fail_for)

    async def notify_users(self, recipients, details):
        if details["ticket_id"] in self._fail_for:
            raise NotificationDeliveryException("queue unavailable")
        self.calls.append(("users", [r.email for r in recipients], details))

    async def notify_addresses(self, addresses, details):
        if details["ticket_id"] in self._fail_for:
            raise NotificationDeliveryException("queue unavailable")
        self.calls.append(("addresses", list(addresses), details))

    @property
    def ticket_ids(self) -> List[str]:
        return [details["ticket_id"] for _, _, details in self.calls]


class DeniedLockUnitOfWork(SQLAlchemyUnitOfWork):
    """Simulates another replica holding every advisory lock."""

    async def try_advisory_lock(self, key: int) -> bool:
        return False


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_scanner(uow_factory):
    def factory(
        notifier: INotifier,
        factory_override=None,
        handler: Optional[BreachHandler] = None,
        on_call_emails: Optional[List[str]] = None,
        escalation_enabled: bool = True,
        enabled: bool = True,
        batch_size: int = 100,
        backfill_batch_size: int = 50,
    ) -> BreachScanner:
        active_factory = factory_override or uow_factory
        return BreachScanner(
            active_factory,
            DeadlineSynchronizer(active_factory),
            handler or BreachHandler(
                escalation_enabled=escalation_enabled,
                on_call_emails=on_call_emails,
                web_app_url="https://desk.example.com/",
            ),
            NotificationDispatcher(notifier),
            enabled=enabled,
            batch_size=batch_size,
            backfill_batch_size=backfill_batch_size,
            clock=lambda: NOW,
        )

    return factory
