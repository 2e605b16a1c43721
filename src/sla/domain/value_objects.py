"""
SLA Value Objects
==================

Immutable value objects and pure calculations for the SLA domain.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from config import BreachType, PolicySource, Priority
from core import DomainException
from sla.domain.entities import SlaInstance, TrackedTicket


class _Unset:
    """Marker for "option not given", distinct from an explicit None."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


@dataclass(frozen=True)
class SlaTarget:
    """First-response and resolution targets for one priority, in hours."""

    first_response_hours: float
    resolution_hours: float

    def __post_init__(self):
        if self.first_response_hours <= 0:
            raise DomainException("first_response_hours must be positive")
        if self.resolution_hours <= self.first_response_hours:
            raise DomainException("resolution_hours must exceed first_response_hours")


# Compiled-in targets used when no enabled policy covers a ticket.
DEFAULT_SLA_TARGETS: Dict[Priority, SlaTarget] = {
    Priority.P1: SlaTarget(first_response_hours=1, resolution_hours=4),
    Priority.P2: SlaTarget(first_response_hours=4, resolution_hours=24),
    Priority.P3: SlaTarget(first_response_hours=8, resolution_hours=72),
    Priority.P4: SlaTarget(first_response_hours=24, resolution_hours=168),
}

# Escalation ladder; P1 is terminal.
_PRIORITY_LADDER: Dict[Priority, Priority] = {
    Priority.P4: Priority.P3,
    Priority.P3: Priority.P2,
    Priority.P2: Priority.P1,
}


@dataclass(frozen=True)
class ResolvedPolicy:
    """Result of policy resolution for one (priority, team) pair."""

    policy_config_id: Optional[str]
    priority: Priority
    target: SlaTarget
    source: PolicySource

    def to_dict(self) -> dict:
        return {
            "policy_config_id": self.policy_config_id,
            "priority": self.priority.value,
            "first_response_hours": self.target.first_response_hours,
            "resolution_hours": self.target.resolution_hours,
            "source": self.source.value,
        }


@dataclass(frozen=True)
class SyncOptions:
    """
    Options for ``DeadlineSynchronizer.sync_from_ticket``.

    ``policy_config_id`` left as UNSET keeps or resolves the linkage;
    an explicit None unlinks the instance from its policy.
    """

    policy_config_id: object = UNSET
    reset_resolution: bool = False
    reset_first_response: bool = False

    @property
    def has_policy_override(self) -> bool:
        return self.policy_config_id is not UNSET


class SLACalculator:
    """
    Pure functions for SLA deadline bookkeeping.

    Stateless utility class - the synchronizer and the breach handler share
    these so the scan key is derived the same way everywhere.
    """

    @staticmethod
    def compute_next_due_at(
        ticket: TrackedTicket,
        first_response_breached_at: Optional[datetime],
        resolution_breached_at: Optional[datetime],
    ) -> Optional[datetime]:
        """
        Soonest unmet deadline in life-cycle order.

        First response takes precedence over resolution while it is still
        pending and unbreached. A paused ticket has no deadline.
        """
        if ticket.is_paused:
            return None

        first_response_pending = not ticket.is_responded and first_response_breached_at is None
        if first_response_pending and ticket.first_response_due_at:
            return ticket.first_response_due_at

        resolution_pending = not ticket.is_completed and resolution_breached_at is None
        if resolution_pending and ticket.due_at:
            return ticket.due_at

        return None

    @staticmethod
    def detect_breach(
        instance: SlaInstance,
        ticket: TrackedTicket,
        now: datetime,
    ) -> Optional[BreachType]:
        """
        Which deadline has fired for a scanned instance, if any.

        Returns None for paused instances and for instances whose state moved
        on after the scan key was read.
        """
        if instance.is_paused:
            return None

        if (
            not ticket.is_responded
            and instance.first_response_breached_at is None
            and instance.first_response_due_at is not None
            and instance.first_response_due_at <= now
        ):
            return BreachType.FIRST_RESPONSE

        if (
            not ticket.is_completed
            and instance.resolution_breached_at is None
            and instance.resolution_due_at is not None
            and instance.resolution_due_at <= now
        ):
            return BreachType.RESOLUTION

        return None

    @staticmethod
    def next_due_after_breach(instance: SlaInstance, breach_type: BreachType) -> Optional[datetime]:
        """Scan key to store together with a freshly recorded breach."""
        if breach_type == BreachType.FIRST_RESPONSE and instance.resolution_breached_at is None:
            return instance.resolution_due_at
        return None

    @staticmethod
    def next_priority(priority: Priority) -> Optional[Priority]:
        """One step up the escalation ladder, or None at P1."""
        return _PRIORITY_LADDER.get(priority)

    @staticmethod
    def fallback_target(priority: Priority) -> SlaTarget:
        return DEFAULT_SLA_TARGETS[priority]
