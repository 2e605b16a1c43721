"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for the SLA module.

``SlaInstance`` and the policy tables are owned by this module. ``Ticket``,
``Team``, ``User``, ``TeamMember`` and ``TicketEvent`` belong to the wider
ticketing system; only the columns this module reads or writes are mapped.
"""

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config import Priority, SlaNotifyRole, TeamRole, TicketStatus
from infrastructure.database import Base, UTCDateTime, utcnow

_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _new_id() -> str:
    return str(uuid4())


class TeamModel(Base):
    """Maps to the 'teams' table."""
    __tablename__ = "teams"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class UserModel(Base):
    """Maps to the 'users' table."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class TeamMemberModel(Base):
    """Maps to the 'team_members' table."""
    __tablename__ = "team_members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[TeamRole] = mapped_column(String(20), nullable=False, default=TeamRole.AGENT.value)

    user: Mapped[UserModel] = relationship(lazy="joined")

    __table_args__ = (UniqueConstraint("team_id", "user_id"),)


class TicketModel(Base):
    """
    Database model for the ticket fields used by SLA tracking.

    Maps to the 'tickets' table.
    """
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    display_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    subject: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    priority: Mapped[Priority] = mapped_column(String(2), nullable=False, default=Priority.P3.value)
    status: Mapped[TicketStatus] = mapped_column(String(32), nullable=False, default=TicketStatus.NEW.value)
    assigned_team_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("teams.id", ondelete="SET NULL"), nullable=True
    )

    # Deadlines, materialized upstream
    first_response_due_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    due_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Life-cycle
    first_response_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    sla_paused_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    assigned_team: Mapped[Optional[TeamModel]] = relationship(lazy="joined")


class TicketEventModel(Base):
    """Append-only ticket event log. Maps to the 'ticket_events' table."""
    __tablename__ = "ticket_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    ticket_id: Mapped[str] = mapped_column(ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(_JsonType, nullable=True)
    created_by_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class SlaPolicyConfigModel(Base):
    """Named SLA policy. Maps to the 'sla_policy_configs' table."""
    __tablename__ = "sla_policy_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    business_hours_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    escalation_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    escalation_after_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=80)
    breach_notify_roles: Mapped[List[str]] = mapped_column(
        _JsonType, nullable=False,
        default=lambda: [SlaNotifyRole.AGENT.value, SlaNotifyRole.LEAD.value]
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class SlaPolicyTargetModel(Base):
    """Per-priority hours of a policy. Maps to the 'sla_policy_targets' table."""
    __tablename__ = "sla_policy_targets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    policy_config_id: Mapped[str] = mapped_column(
        ForeignKey("sla_policy_configs.id", ondelete="CASCADE"), nullable=False
    )
    priority: Mapped[Priority] = mapped_column(String(2), nullable=False)
    first_response_hours: Mapped[float] = mapped_column(Float, nullable=False)
    resolution_hours: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("policy_config_id", "priority"),)


class SlaPolicyAssignmentModel(Base):
    """Team to policy link. Maps to the 'sla_policy_assignments' table."""
    __tablename__ = "sla_policy_assignments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    policy_config_id: Mapped[str] = mapped_column(
        ForeignKey("sla_policy_configs.id", ondelete="CASCADE"), nullable=False
    )
    team_id: Mapped[str] = mapped_column(
        ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class SlaInstanceModel(Base):
    """
    Database model for the SlaInstance entity.

    Maps to the 'sla_instances' table. ``next_due_at`` is indexed because
    it is the breach scanner's only predicate.
    """
    __tablename__ = "sla_instances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    ticket_id: Mapped[str] = mapped_column(
        ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    policy_config_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("sla_policy_configs.id", ondelete="SET NULL"), nullable=True
    )
    priority: Mapped[Priority] = mapped_column(String(2), nullable=False)

    first_response_due_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolution_due_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    paused_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_due_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    first_response_breached_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolution_breached_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    first_response_at_risk_notified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolution_at_risk_notified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    ticket: Mapped[TicketModel] = relationship()

    __table_args__ = (Index("ix_sla_instances_next_due_at", "next_due_at"),)
