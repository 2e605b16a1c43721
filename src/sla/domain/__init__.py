"""
SLA Domain Layer
================

Domain layer for SLA breach tracking.

Contains:
- Entities: TrackedTicket, SlaInstance, ScannedInstance, Recipient, NotificationIntent
- Value Objects: SlaTarget, ResolvedPolicy, SyncOptions
- Domain Services: Stateless business logic (SLACalculator)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from sla.domain.entities import (
    TrackedTicket,
    SlaInstance,
    ScannedInstance,
    Recipient,
    NotificationIntent,
)
from sla.domain.value_objects import (
    UNSET,
    DEFAULT_SLA_TARGETS,
    SLACalculator,
    SlaTarget,
    ResolvedPolicy,
    SyncOptions,
)

__all__ = [
    # Entities
    "TrackedTicket",
    "SlaInstance",
    "ScannedInstance",
    "Recipient",
    "NotificationIntent",
    # Value Objects & Services
    "UNSET",
    "DEFAULT_SLA_TARGETS",
    "SLACalculator",
    "SlaTarget",
    "ResolvedPolicy",
    "SyncOptions",
]
