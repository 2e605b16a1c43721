"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for SLA breach tracking:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer and the SQLAlchemy unit of work
- External: External service integrations (notification service, Slack, scheduler)
"""

from sla.infrastructure.models import (
    SlaInstanceModel,
    SlaPolicyAssignmentModel,
    SlaPolicyConfigModel,
    SlaPolicyTargetModel,
    TeamMemberModel,
    TeamModel,
    TicketEventModel,
    TicketModel,
    UserModel,
)
from sla.infrastructure.repositories import (
    SQLAlchemyTicketRepository,
    SQLAlchemySlaInstanceRepository,
    SQLAlchemyPolicyRepository,
    SQLAlchemyTeamRepository,
    SQLAlchemyTicketEventRepository,
    SQLAlchemyUnitOfWork,
    sqlalchemy_uow_factory,
)
from sla.infrastructure.external import (
    CircuitBreaker,
    HttpNotificationClient,
    SlackClient,
    SLAScheduler,
)

__all__ = [
    # Models
    "SlaInstanceModel",
    "SlaPolicyAssignmentModel",
    "SlaPolicyConfigModel",
    "SlaPolicyTargetModel",
    "TeamMemberModel",
    "TeamModel",
    "TicketEventModel",
    "TicketModel",
    "UserModel",
    # Repositories
    "SQLAlchemyTicketRepository",
    "SQLAlchemySlaInstanceRepository",
    "SQLAlchemyPolicyRepository",
    "SQLAlchemyTeamRepository",
    "SQLAlchemyTicketEventRepository",
    "SQLAlchemyUnitOfWork",
    "sqlalchemy_uow_factory",
    # External
    "CircuitBreaker",
    "HttpNotificationClient",
    "SlackClient",
    "SLAScheduler",
]
