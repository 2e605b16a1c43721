"""
SLA Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Tuple

from config import BreachType, HandleAction, PolicySource, Priority, TicketEventType
from core import NotificationDeliveryException
from sla.domain import (
    UNSET,
    NotificationIntent,
    Recipient,
    ResolvedPolicy,
    ScannedInstance,
    SLACalculator,
    SlaInstance,
    SlaTarget,
    SyncOptions,
    TrackedTicket,
)
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ITicketRepository(ABC):
    """Interface for the ticket fields the SLA subsystem reads and writes."""

    @abstractmethod
    async def get_tracked(self, ticket_id: str) -> Optional[TrackedTicket]:
        """Get the tracked fields of a ticket, or None if it does not exist."""

    @abstractmethod
    async def find_open_without_instance(self, limit: int) -> List[str]:
        """IDs of uncompleted tickets that have no SLA instance yet."""

    @abstractmethod
    async def update_priority(self, ticket_id: str, priority: Priority) -> None:
        """Set the ticket's priority."""


class ISlaInstanceRepository(ABC):
    """Interface for SLA instance data access."""

    @abstractmethod
    async def get_by_ticket_id(self, ticket_id: str) -> Optional[SlaInstance]:
        """Get the instance tracking a ticket."""

    @abstractmethod
    async def upsert(
        self,
        ticket_id: str,
        create_values: Dict[str, Any],
        update_values: Dict[str, Any],
    ) -> SlaInstance:
        """Insert the instance for a ticket, or update it if one exists."""

    @abstractmethod
    async def find_due(self, now: datetime, limit: int) -> List[ScannedInstance]:
        """Instances whose next_due_at has passed, soonest first, joined with their tickets."""

    @abstractmethod
    async def update_derived(self, instance_id: str, values: Dict[str, Any]) -> None:
        """Overwrite derived fields (priority, due dates, pause, next_due_at)."""

    @abstractmethod
    async def mark_breached(
        self,
        instance_id: str,
        breach_type: BreachType,
        breached_at: datetime,
        next_due_at: Optional[datetime],
    ) -> bool:
        """
        Record a breach only if it is not recorded yet.

        Returns:
            True if this call recorded the breach, False if another writer already had
        """

    @abstractmethod
    async def set_priority_for_ticket(self, ticket_id: str, priority: Priority) -> None:
        """Update the cached priority on a ticket's instance."""


class IPolicyRepository(ABC):
    """Interface for SLA policy lookups."""

    @abstractmethod
    async def find_team_policy(
        self, team_id: str, priority: Priority
    ) -> Optional[Tuple[str, SlaTarget]]:
        """Enabled policy assigned to a team that has a target for the priority."""

    @abstractmethod
    async def find_default_policy(self, priority: Priority) -> Optional[Tuple[str, SlaTarget]]:
        """Enabled default policy that has a target for the priority."""

    @abstractmethod
    async def find_team_policy_id(self, team_id: str, priority: Priority) -> Optional[str]:
        """Same match as find_team_policy, id only."""

    @abstractmethod
    async def find_default_policy_id(self, priority: Priority) -> Optional[str]:
        """Same match as find_default_policy, id only."""


class ITeamRepository(ABC):
    """Interface for team membership lookups."""

    @abstractmethod
    async def list_lead_recipients(self, team_id: str) -> List[Recipient]:
        """Team leads that have an email address."""


class ITicketEventRepository(ABC):
    """Interface for the append-only ticket event log."""

    @abstractmethod
    async def record(self, ticket_id: str, event_type: TicketEventType, payload: Dict[str, Any]) -> None:
        """Append a system-authored event."""


class ISlaUnitOfWork(ABC):
    """
    One database transaction plus the repositories bound to it.

    Obtained from a factory as an async context manager that commits on
    clean exit and rolls back on error.
    """

    tickets: ITicketRepository
    instances: ISlaInstanceRepository
    policies: IPolicyRepository
    teams: ITeamRepository
    events: ITicketEventRepository

    @abstractmethod
    async def try_advisory_lock(self, key: int) -> bool:
        """
        Try to take a transaction-scoped lock without waiting.

        The lock is released when the transaction ends, however it ends.
        """


UnitOfWorkFactory = Callable[[], AsyncContextManager[ISlaUnitOfWork]]


class INotifier(ABC):
    """Interface for the outbound notification service."""

    @abstractmethod
    async def notify_users(self, recipients: List[Recipient], details: Dict[str, Any]) -> None:
        """Queue a message for each user."""

    @abstractmethod
    async def notify_addresses(self, addresses: List[str], details: Dict[str, Any]) -> None:
        """Queue a message for each raw email address."""


class IBreachAlerter(ABC):
    """Interface for channel alerts (one post per breach, not per recipient)."""

    @abstractmethod
    async def alert(self, details: Dict[str, Any]) -> bool:
        """Post the alert; False if it could not be delivered."""


# ========== Application Services ==========

class PolicyResolver:
    """
    Decides which SLA policy applies to a ticket.

    Precedence: team assignment > global default > compiled-in fallback.
    Pure read.
    """

    def __init__(self, policy_repository: IPolicyRepository):
        self._policies = policy_repository

    async def resolve(self, priority: Priority, team_id: Optional[str]) -> ResolvedPolicy:
        """
        Resolve the policy and targets for a priority/team pair.

        Args:
            priority: Ticket priority
            team_id: Assigned team, if any

        Returns:
            ResolvedPolicy; ``policy_config_id`` is None for the fallback table
        """
        if team_id:
            row = await self._policies.find_team_policy(team_id, priority)
            if row is not None:
                policy_id, target = row
                return ResolvedPolicy(policy_id, priority, target, PolicySource.TEAM)

        row = await self._policies.find_default_policy(priority)
        if row is not None:
            policy_id, target = row
            return ResolvedPolicy(policy_id, priority, target, PolicySource.DEFAULT)

        return ResolvedPolicy(
            None, priority, SLACalculator.fallback_target(priority), PolicySource.FALLBACK
        )

    async def resolve_policy_id(self, priority: Priority, team_id: Optional[str]) -> Optional[str]:
        """Policy id only; target hours are not read, so bad rows cannot raise here."""
        if team_id:
            policy_id = await self._policies.find_team_policy_id(team_id, priority)
            if policy_id is not None:
                return policy_id
        return await self._policies.find_default_policy_id(priority)


class DeadlineSynchronizer:
    """
    Recomputes and persists a ticket's SLA instance.

    Called after every ticket mutation that can move a deadline, and by the
    scanner's backfill pass.
    """

    def __init__(self, uow_factory: UnitOfWorkFactory):
        self._uow_factory = uow_factory

    async def sync_from_ticket(
        self,
        ticket_id: str,
        options: Optional[SyncOptions] = None,
        uow: Optional[ISlaUnitOfWork] = None,
    ) -> Optional[SlaInstance]:
        """
        Sync the SLA instance from the ticket's current fields.

        Args:
            ticket_id: Ticket to sync
            options: Policy override and reset flags
            uow: Caller's transaction; when omitted a new one is opened and committed

        Returns:
            The persisted instance, or None if the ticket does not exist
        """
        options = options or SyncOptions()
        if uow is not None:
            return await self._sync(uow, ticket_id, options)

        async with self._uow_factory() as own_uow:
            return await self._sync(own_uow, ticket_id, options)

    async def _sync(
        self,
        uow: ISlaUnitOfWork,
        ticket_id: str,
        options: SyncOptions,
    ) -> Optional[SlaInstance]:
        ticket = await uow.tickets.get_tracked(ticket_id)
        if ticket is None:
            logger.debug("Skipping SLA sync for missing ticket", extra={"ticket_id": ticket_id})
            return None

        existing = await uow.instances.get_by_ticket_id(ticket_id)
        existing_policy_id = existing.policy_config_id if existing else None

        resolved_policy_id = options.policy_config_id
        if not options.has_policy_override and existing_policy_id is None:
            resolved_policy_id = await PolicyResolver(uow.policies).resolve_policy_id(
                ticket.priority, ticket.assigned_team_id
            )

        # Resets apply before next_due_at so a reopened ticket is rescheduled
        first_response_breached_at = (
            None if options.reset_first_response
            else (existing.first_response_breached_at if existing else None)
        )
        resolution_breached_at = (
            None if options.reset_resolution
            else (existing.resolution_breached_at if existing else None)
        )

        next_due_at = SLACalculator.compute_next_due_at(
            ticket, first_response_breached_at, resolution_breached_at
        )

        derived = {
            "priority": ticket.priority,
            "first_response_due_at": ticket.first_response_due_at,
            "resolution_due_at": ticket.due_at,
            "paused_at": ticket.sla_paused_at,
            "next_due_at": next_due_at,
        }

        update_values = dict(derived)
        if resolved_policy_id is not UNSET:
            if resolved_policy_id:
                update_values["policy_config_id"] = resolved_policy_id
            elif existing_policy_id:
                update_values["policy_config_id"] = None

        if options.reset_resolution:
            update_values["resolution_breached_at"] = None
            update_values["resolution_at_risk_notified_at"] = None

        if options.reset_first_response:
            update_values["first_response_breached_at"] = None
            update_values["first_response_at_risk_notified_at"] = None

        create_policy_id = resolved_policy_id if resolved_policy_id else existing_policy_id
        create_values = dict(derived, policy_config_id=create_policy_id)

        instance = await uow.instances.upsert(ticket_id, create_values, update_values)

        logger.debug(
            "SLA instance synced",
            extra={
                "ticket_id": ticket_id,
                "next_due_at": next_due_at.isoformat() if next_due_at else None,
                "policy_config_id": instance.policy_config_id,
            }
        )
        return instance


@dataclass
class HandleOutcome:
    """What the breach handler did with one scanned instance."""

    action: HandleAction
    breach_type: Optional[BreachType] = None
    escalated_to: Optional[Priority] = None
    intent_staged: bool = False


class BreachHandler:
    """
    Decides which deadline fired for a scanned instance and records it.

    Runs inside the scan transaction. Notifications are staged on the
    caller's list, never sent from here.
    """

    def __init__(
        self,
        escalation_enabled: bool = True,
        on_call_emails: Optional[List[str]] = None,
        web_app_url: str = "http://localhost:5173",
    ):
        self._escalation_enabled = escalation_enabled
        self._on_call_emails = list(on_call_emails or [])
        self._web_app_url = web_app_url.rstrip("/")

    async def handle(
        self,
        uow: ISlaUnitOfWork,
        scanned: ScannedInstance,
        now: datetime,
        intents: List[NotificationIntent],
    ) -> HandleOutcome:
        """
        Evaluate one instance.

        Args:
            uow: The scan transaction
            scanned: Instance joined with its ticket
            now: Scan time; also the recorded breach time
            intents: Staging list for post-commit notifications

        Returns:
            HandleOutcome describing the action taken
        """
        instance, ticket = scanned.instance, scanned.ticket

        breach_type = SLACalculator.detect_breach(instance, ticket, now)
        if breach_type is None:
            # Paused, or state moved on after the scan key was read
            return await self._resync(uow, instance, ticket)

        return await self._handle_breach(uow, instance, ticket, breach_type, now, intents)

    async def _resync(
        self,
        uow: ISlaUnitOfWork,
        instance: SlaInstance,
        ticket: TrackedTicket,
    ) -> HandleOutcome:
        current = await uow.tickets.get_tracked(ticket.id)
        if current is None:
            logger.debug(
                "Ticket vanished before resync",
                extra={"ticket_id": ticket.id, "instance_id": instance.id}
            )
            return HandleOutcome(action=HandleAction.SKIPPED)

        next_due_at = SLACalculator.compute_next_due_at(
            current, instance.first_response_breached_at, instance.resolution_breached_at
        )
        await uow.instances.update_derived(instance.id, {
            "priority": current.priority,
            "first_response_due_at": current.first_response_due_at,
            "resolution_due_at": current.due_at,
            "paused_at": current.sla_paused_at,
            "next_due_at": next_due_at,
        })
        return HandleOutcome(action=HandleAction.RESYNCED)

    async def _handle_breach(
        self,
        uow: ISlaUnitOfWork,
        instance: SlaInstance,
        ticket: TrackedTicket,
        breach_type: BreachType,
        now: datetime,
        intents: List[NotificationIntent],
    ) -> HandleOutcome:
        recorded = await uow.instances.mark_breached(
            instance.id,
            breach_type,
            now,
            SLACalculator.next_due_after_breach(instance, breach_type),
        )
        if not recorded:
            logger.debug(
                "Breach already recorded by another writer",
                extra={"instance_id": instance.id, "breach_type": breach_type.value}
            )
            return HandleOutcome(action=HandleAction.LOST_RACE, breach_type=breach_type)

        due_at = instance.due_at(breach_type)
        due_iso = due_at.isoformat() if due_at else None

        await uow.events.record(ticket.id, TicketEventType.SLA_BREACHED, {
            "breachType": breach_type.value,
            "dueAt": due_iso,
            "policyId": instance.policy_config_id,
        })

        bumped = await self._apply_priority_bump(uow, ticket, breach_type)
        priority = bumped or ticket.priority

        logger.info(
            "SLA breach recorded",
            extra={
                "ticket_id": ticket.id,
                "breach_type": breach_type.value,
                "due_at": due_iso,
                "escalated_to": bumped.value if bumped else None,
            }
        )

        outcome = HandleOutcome(action=HandleAction.BREACHED, breach_type=breach_type, escalated_to=bumped)

        lead_users = []
        if ticket.assigned_team_id:
            lead_users = await uow.teams.list_lead_recipients(ticket.assigned_team_id)
        if not lead_users and not self._on_call_emails:
            return outcome

        breach_label = "First response" if breach_type == BreachType.FIRST_RESPONSE else "Resolution"
        body_lines = [
            f"SLA breached: {breach_label}",
            f"Subject: {ticket.subject}",
            f"Priority: {priority.value}",
            f"Status: {ticket.status.value}",
            f"Team: {ticket.assigned_team_name or 'Unassigned'}",
            f"Due: {due_iso or 'Unknown'}",
        ]
        if bumped:
            body_lines.append(f"Priority bumped to {priority.value}.")
        body_lines += ["", f"View: {self.ticket_link(ticket.id)}"]

        intents.append(NotificationIntent(
            ticket_id=ticket.id,
            subject=f"[Ticket {ticket.label}] SLA Breach: {breach_label}",
            body="\n".join(body_lines),
            event_type=TicketEventType.SLA_BREACHED.value,
            lead_users=lead_users,
            on_call_emails=list(self._on_call_emails),
            payload={
                "breachType": breach_type.value,
                "dueAt": due_iso,
                "priority": priority.value,
                "policyId": instance.policy_config_id,
            },
        ))
        outcome.intent_staged = True
        return outcome

    async def _apply_priority_bump(
        self,
        uow: ISlaUnitOfWork,
        ticket: TrackedTicket,
        breach_type: BreachType,
    ) -> Optional[Priority]:
        if not self._escalation_enabled:
            return None

        next_priority = SLACalculator.next_priority(ticket.priority)
        if next_priority is None:
            return None

        await uow.tickets.update_priority(ticket.id, next_priority)
        await uow.events.record(ticket.id, TicketEventType.PRIORITY_BUMPED, {
            "from": ticket.priority.value,
            "to": next_priority.value,
            "reason": breach_type.value,
        })
        await uow.instances.set_priority_for_ticket(ticket.id, next_priority)
        return next_priority

    def ticket_link(self, ticket_id: str) -> str:
        return f"{self._web_app_url}/tickets/{ticket_id}"


class NotificationDispatcher:
    """
    Sends staged breach notifications after their transaction committed.

    Failures are logged per intent and never retried here; the notifier
    owns retries and queueing.
    """

    def __init__(self, notifier: INotifier, alerters: Optional[List[IBreachAlerter]] = None):
        self._notifier = notifier
        self._alerters = list(alerters or [])

    async def dispatch(self, intent: NotificationIntent) -> bool:
        """
        Hand one intent to the notifier, then to each alerter.

        Returns:
            True if every delivery succeeded, False otherwise
        """
        details = intent.details
        delivered = await self._notify(intent, details)

        for alerter in self._alerters:
            try:
                if not await alerter.alert(details):
                    delivered = False
            except Exception as e:
                logger.exception(
                    "Unexpected error sending SLA breach alert",
                    extra={"ticket_id": intent.ticket_id, "error": str(e)}
                )
                delivered = False

        return delivered

    async def _notify(self, intent: NotificationIntent, details: Dict[str, Any]) -> bool:
        try:
            if intent.lead_users:
                await self._notifier.notify_users(intent.lead_users, details)

            addresses = list(dict.fromkeys(
                email.strip() for email in intent.on_call_emails if email.strip()
            ))
            if addresses:
                await self._notifier.notify_addresses(addresses, details)
        except NotificationDeliveryException as e:
            logger.error(
                "Failed to dispatch SLA breach notification",
                extra={"ticket_id": intent.ticket_id, "error": e.message}
            )
            return False
        except Exception as e:
            logger.exception(
                "Unexpected error dispatching SLA breach notification",
                extra={"ticket_id": intent.ticket_id, "error": str(e)}
            )
            return False

        return True
