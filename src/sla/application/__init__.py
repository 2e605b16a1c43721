"""
SLA Application Layer
======================

Application layer for SLA breach tracking.

Contains:
- Services: Policy resolution, deadline sync, breach handling, notification dispatch
- DTOs: Data transfer objects for API serialization and scan reporting

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from sla.application.dto import (
    SyncRequest,
    SlaInstanceResponse,
    ResolvedPolicyResponse,
    ScanCycleResult,
)
from sla.application.services import (
    PolicyResolver,
    DeadlineSynchronizer,
    BreachHandler,
    HandleOutcome,
    NotificationDispatcher,
    ITicketRepository,
    ISlaInstanceRepository,
    IPolicyRepository,
    ITeamRepository,
    ITicketEventRepository,
    ISlaUnitOfWork,
    INotifier,
    IBreachAlerter,
    UnitOfWorkFactory,
)

__all__ = [
    # DTOs
    "SyncRequest",
    "SlaInstanceResponse",
    "ResolvedPolicyResponse",
    "ScanCycleResult",
    # Services
    "PolicyResolver",
    "DeadlineSynchronizer",
    "BreachHandler",
    "HandleOutcome",
    "NotificationDispatcher",
    # Repository Interfaces
    "ITicketRepository",
    "ISlaInstanceRepository",
    "IPolicyRepository",
    "ITeamRepository",
    "ITicketEventRepository",
    "ISlaUnitOfWork",
    "INotifier",
    "IBreachAlerter",
    "UnitOfWorkFactory",
]
