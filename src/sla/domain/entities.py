"""
SLA Domain Entities
====================

Pure Python domain entities for SLA tracking.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import BreachType, Priority, TicketStatus


@dataclass
class TrackedTicket:
    """
    The slice of a support ticket the SLA subsystem reads.

    Deadlines are materialized upstream; this entity only reports on them.
    """

    id: str
    priority: Priority
    status: TicketStatus
    assigned_team_id: Optional[str] = None

    # Deadlines
    first_response_due_at: Optional[datetime] = None
    due_at: Optional[datetime] = None

    # Life-cycle timestamps
    first_response_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    sla_paused_at: Optional[datetime] = None

    # Presentation fields used in notifications
    number: int = 0
    display_id: Optional[str] = None
    subject: str = ""
    assigned_team_name: Optional[str] = None

    @property
    def is_paused(self) -> bool:
        return self.sla_paused_at is not None

    @property
    def is_responded(self) -> bool:
        return self.first_response_at is not None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def label(self) -> str:
        """Human-facing ticket reference, e.g. ``SUP_20260118_004`` or ``#4``."""
        return self.display_id or f"#{self.number}"


@dataclass
class SlaInstance:
    """
    Per-ticket SLA tracking record.

    ``next_due_at`` is the scan key: the soonest deadline that is still
    unmet and unbreached, or None when nothing is left to watch.
    """

    id: str
    ticket_id: str
    priority: Priority
    policy_config_id: Optional[str] = None

    first_response_due_at: Optional[datetime] = None
    resolution_due_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    next_due_at: Optional[datetime] = None

    first_response_breached_at: Optional[datetime] = None
    resolution_breached_at: Optional[datetime] = None
    first_response_at_risk_notified_at: Optional[datetime] = None
    resolution_at_risk_notified_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_paused(self) -> bool:
        return self.paused_at is not None

    def due_at(self, breach_type: BreachType) -> Optional[datetime]:
        if breach_type == BreachType.FIRST_RESPONSE:
            return self.first_response_due_at
        return self.resolution_due_at

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""

        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "policy_config_id": self.policy_config_id,
            "priority": self.priority.value,
            "first_response_due_at": iso(self.first_response_due_at),
            "resolution_due_at": iso(self.resolution_due_at),
            "paused_at": iso(self.paused_at),
            "next_due_at": iso(self.next_due_at),
            "first_response_breached_at": iso(self.first_response_breached_at),
            "resolution_breached_at": iso(self.resolution_breached_at),
            "first_response_at_risk_notified_at": iso(self.first_response_at_risk_notified_at),
            "resolution_at_risk_notified_at": iso(self.resolution_at_risk_notified_at),
        }


@dataclass
class ScannedInstance:
    """An instance selected by the scan query, joined with its ticket."""

    instance: SlaInstance
    ticket: TrackedTicket


@dataclass(frozen=True)
class Recipient:
    """A user who can receive breach email."""

    user_id: str
    email: str
    name: Optional[str] = None


@dataclass
class NotificationIntent:
    """
    A breach notification staged during the scan transaction.

    Intents are held in memory and only handed to the dispatcher after the
    transaction that produced them has committed.
    """

    ticket_id: str
    subject: str
    body: str
    event_type: str
    lead_users: List[Recipient] = field(default_factory=list)
    on_call_emails: List[str] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def details(self) -> Dict[str, Any]:
        """Message details passed to every notifier call."""
        return {
            "event_type": self.event_type,
            "subject": self.subject,
            "body": self.body,
            "ticket_id": self.ticket_id,
            "payload": self.payload,
        }
