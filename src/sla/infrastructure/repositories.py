"""
SLA Infrastructure Repositories
=================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
entities from the database. All repositories of one unit of work share a
single session and therefore a single transaction.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple, Type
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import joinedload

from config import BreachType, Priority, TeamRole, TicketEventType, TicketStatus
from core import RepositoryException
from infrastructure.database import utcnow
from sla.application import (
    IPolicyRepository,
    ISlaInstanceRepository,
    ISlaUnitOfWork,
    ITeamRepository,
    ITicketEventRepository,
    ITicketRepository,
    UnitOfWorkFactory,
)
from sla.domain import Recipient, ScannedInstance, SlaInstance, SlaTarget, TrackedTicket
from sla.infrastructure.models import (
    SlaInstanceModel,
    SlaPolicyAssignmentModel,
    SlaPolicyConfigModel,
    SlaPolicyTargetModel,
    TeamMemberModel,
    TicketEventModel,
    TicketModel,
    UserModel,
)
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _plain(values: Dict[str, Any]) -> Dict[str, Any]:
    """Replace enum members by their raw values before binding."""
    return {key: value.value if isinstance(value, Enum) else value for key, value in values.items()}


def _dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


def _to_tracked(model: TicketModel) -> TrackedTicket:
    return TrackedTicket(
        id=model.id,
        priority=Priority(model.priority),
        status=TicketStatus(model.status),
        assigned_team_id=model.assigned_team_id,
        first_response_due_at=model.first_response_due_at,
        due_at=model.due_at,
        first_response_at=model.first_response_at,
        completed_at=model.completed_at,
        sla_paused_at=model.sla_paused_at,
        number=model.number,
        display_id=model.display_id,
        subject=model.subject,
        assigned_team_name=model.assigned_team.name if model.assigned_team else None,
    )


def _to_instance(model: SlaInstanceModel) -> SlaInstance:
    return SlaInstance(
        id=model.id,
        ticket_id=model.ticket_id,
        priority=Priority(model.priority),
        policy_config_id=model.policy_config_id,
        first_response_due_at=model.first_response_due_at,
        resolution_due_at=model.resolution_due_at,
        paused_at=model.paused_at,
        next_due_at=model.next_due_at,
        first_response_breached_at=model.first_response_breached_at,
        resolution_breached_at=model.resolution_breached_at,
        first_response_at_risk_notified_at=model.first_response_at_risk_notified_at,
        resolution_at_risk_notified_at=model.resolution_at_risk_notified_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


class SQLAlchemyTicketRepository(ITicketRepository):
    """
    SQLAlchemy implementation of ticket repository.

    Reads the tracked ticket fields and performs the priority bump.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_tracked(self, ticket_id: str) -> Optional[TrackedTicket]:
        """Get ticket by ID, with its team loaded."""
        stmt = (
            select(TicketModel)
            .where(TicketModel.id == ticket_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.unique().scalar_one_or_none()
        return _to_tracked(model) if model else None

    async def find_open_without_instance(self, limit: int) -> List[str]:
        """IDs of uncompleted tickets with no SLA instance, oldest first."""
        stmt = (
            select(TicketModel.id)
            .outerjoin(SlaInstanceModel, SlaInstanceModel.ticket_id == TicketModel.id)
            .where(TicketModel.completed_at.is_(None), SlaInstanceModel.id.is_(None))
            .order_by(TicketModel.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update_priority(self, ticket_id: str, priority: Priority) -> None:
        stmt = (
            update(TicketModel)
            .where(TicketModel.id == ticket_id)
            .values(priority=priority.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)


class SQLAlchemySlaInstanceRepository(ISlaInstanceRepository):
    """
    SQLAlchemy implementation of SLA instance repository.

    Upserts are native ``INSERT ... ON CONFLICT (ticket_id)`` statements so
    concurrent syncs of one ticket never create duplicates.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_ticket_id(self, ticket_id: str) -> Optional[SlaInstance]:
        stmt = (
            select(SlaInstanceModel)
            .where(SlaInstanceModel.ticket_id == ticket_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _to_instance(model) if model else None

    async def upsert(
        self,
        ticket_id: str,
        create_values: Dict[str, Any],
        update_values: Dict[str, Any],
    ) -> SlaInstance:
        dialect = _dialect_name(self._session)
        if dialect == "postgresql":
            insert_fn = pg_insert
        elif dialect == "sqlite":
            insert_fn = sqlite_insert
        else:
            raise RepositoryException(f"SLA instance upsert not supported on dialect '{dialect}'")

        now = utcnow()
        stmt = insert_fn(SlaInstanceModel).values(
            id=str(uuid4()),
            ticket_id=ticket_id,
            created_at=now,
            updated_at=now,
            **_plain(create_values),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["ticket_id"],
            set_={**_plain(update_values), "updated_at": now},
        )
        await self._session.execute(stmt)

        instance = await self.get_by_ticket_id(ticket_id)
        if instance is None:
            raise RepositoryException(f"SLA instance for ticket {ticket_id} missing after upsert")
        return instance

    async def find_due(self, now: datetime, limit: int) -> List[ScannedInstance]:
        stmt = (
            select(SlaInstanceModel)
            .options(joinedload(SlaInstanceModel.ticket).joinedload(TicketModel.assigned_team))
            .where(SlaInstanceModel.next_due_at.is_not(None), SlaInstanceModel.next_due_at <= now)
            .order_by(SlaInstanceModel.next_due_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [
            ScannedInstance(instance=_to_instance(model), ticket=_to_tracked(model.ticket))
            for model in result.unique().scalars().all()
        ]

    async def update_derived(self, instance_id: str, values: Dict[str, Any]) -> None:
        stmt = (
            update(SlaInstanceModel)
            .where(SlaInstanceModel.id == instance_id)
            .values(**_plain(values), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def mark_breached(
        self,
        instance_id: str,
        breach_type: BreachType,
        breached_at: datetime,
        next_due_at: Optional[datetime],
    ) -> bool:
        if breach_type == BreachType.FIRST_RESPONSE:
            column = SlaInstanceModel.first_response_breached_at
        else:
            column = SlaInstanceModel.resolution_breached_at

        stmt = (
            update(SlaInstanceModel)
            .where(SlaInstanceModel.id == instance_id, column.is_(None))
            .values({column: breached_at, SlaInstanceModel.next_due_at: next_due_at,
                     SlaInstanceModel.updated_at: utcnow()})
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def set_priority_for_ticket(self, ticket_id: str, priority: Priority) -> None:
        stmt = (
            update(SlaInstanceModel)
            .where(SlaInstanceModel.ticket_id == ticket_id)
            .values(priority=priority.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)


class SQLAlchemyPolicyRepository(IPolicyRepository):
    """
    SQLAlchemy implementation of SLA policy lookups.

    Both queries only consider enabled policies that define a target for
    the requested priority; ties go to the most recently updated row.
    The ``*_id`` variants never build an ``SlaTarget``, so a stored row
    with invalid hours cannot break deadline syncing.
    """

    _TARGET_COLUMNS = (
        SlaPolicyConfigModel.id,
        SlaPolicyTargetModel.first_response_hours,
        SlaPolicyTargetModel.resolution_hours,
    )

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _team_stmt(team_id: str, priority: Priority, *columns):
        return (
            select(*columns)
            .select_from(SlaPolicyAssignmentModel)
            .join(SlaPolicyConfigModel, SlaPolicyConfigModel.id == SlaPolicyAssignmentModel.policy_config_id)
            .join(
                SlaPolicyTargetModel,
                (SlaPolicyTargetModel.policy_config_id == SlaPolicyConfigModel.id)
                & (SlaPolicyTargetModel.priority == priority.value),
            )
            .where(SlaPolicyAssignmentModel.team_id == team_id, SlaPolicyConfigModel.enabled.is_(True))
            .order_by(SlaPolicyAssignmentModel.updated_at.desc())
            .limit(1)
        )

    @staticmethod
    def _default_stmt(priority: Priority, *columns):
        return (
            select(*columns)
            .select_from(SlaPolicyConfigModel)
            .join(
                SlaPolicyTargetModel,
                (SlaPolicyTargetModel.policy_config_id == SlaPolicyConfigModel.id)
                & (SlaPolicyTargetModel.priority == priority.value),
            )
            .where(SlaPolicyConfigModel.is_default.is_(True), SlaPolicyConfigModel.enabled.is_(True))
            .order_by(SlaPolicyConfigModel.updated_at.desc())
            .limit(1)
        )

    async def find_team_policy(
        self, team_id: str, priority: Priority
    ) -> Optional[Tuple[str, SlaTarget]]:
        return await self._first_target(self._team_stmt(team_id, priority, *self._TARGET_COLUMNS))

    async def find_default_policy(self, priority: Priority) -> Optional[Tuple[str, SlaTarget]]:
        return await self._first_target(self._default_stmt(priority, *self._TARGET_COLUMNS))

    async def find_team_policy_id(self, team_id: str, priority: Priority) -> Optional[str]:
        stmt = self._team_stmt(team_id, priority, SlaPolicyConfigModel.id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def find_default_policy_id(self, priority: Priority) -> Optional[str]:
        stmt = self._default_stmt(priority, SlaPolicyConfigModel.id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def _first_target(self, stmt) -> Optional[Tuple[str, SlaTarget]]:
        row = (await self._session.execute(stmt)).first()
        if row is None:
            return None
        policy_id, first_response_hours, resolution_hours = row
        return policy_id, SlaTarget(first_response_hours, resolution_hours)


class SQLAlchemyTeamRepository(ITeamRepository):
    """SQLAlchemy implementation of team membership lookups."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def list_lead_recipients(self, team_id: str) -> List[Recipient]:
        stmt = (
            select(UserModel)
            .join(TeamMemberModel, TeamMemberModel.user_id == UserModel.id)
            .where(
                TeamMemberModel.team_id == team_id,
                TeamMemberModel.role == TeamRole.LEAD.value,
                UserModel.email.is_not(None),
                UserModel.email != "",
            )
            .order_by(UserModel.id)
        )
        result = await self._session.execute(stmt)
        return [
            Recipient(user_id=user.id, email=user.email, name=user.display_name)
            for user in result.scalars().all()
        ]


class SQLAlchemyTicketEventRepository(ITicketEventRepository):
    """SQLAlchemy implementation of the ticket event log."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def record(self, ticket_id: str, event_type: TicketEventType, payload: Dict[str, Any]) -> None:
        self._session.add(TicketEventModel(
            ticket_id=ticket_id,
            type=event_type.value,
            payload=payload,
            created_by_id=None,
        ))
        await self._session.flush()


class SQLAlchemyUnitOfWork(ISlaUnitOfWork):
    """
    Repositories bound to one session/transaction.

    On PostgreSQL the try-lock is ``pg_try_advisory_xact_lock``. Other
    dialects have no equivalent and the lock is always granted.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.tickets = SQLAlchemyTicketRepository(session)
        self.instances = SQLAlchemySlaInstanceRepository(session)
        self.policies = SQLAlchemyPolicyRepository(session)
        self.teams = SQLAlchemyTeamRepository(session)
        self.events = SQLAlchemyTicketEventRepository(session)

    async def try_advisory_lock(self, key: int) -> bool:
        dialect = _dialect_name(self.session)
        if dialect != "postgresql":
            logger.debug(
                "Advisory locks unavailable, assuming a single replica",
                extra={"dialect": dialect, "lock_key": key}
            )
            return True

        result = await self.session.execute(select(func.pg_try_advisory_xact_lock(key)))
        return bool(result.scalar())


def sqlalchemy_uow_factory(
    session_maker: async_sessionmaker[AsyncSession],
    uow_class: Type[SQLAlchemyUnitOfWork] = SQLAlchemyUnitOfWork,
) -> UnitOfWorkFactory:
    """
    Build a unit-of-work factory over a session maker.

    Each unit of work is one transaction: committed when the ``async with``
    block exits cleanly, rolled back (releasing any advisory lock) otherwise.
    """

    @asynccontextmanager
    async def factory() -> AsyncGenerator[SQLAlchemyUnitOfWork, None]:
        async with session_maker() as session:
            async with session.begin():
                yield uow_class(session)

    return factory
