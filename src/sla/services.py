"""
SLA Services
============

Background breach scanning.

``BreachScanner`` drives one cycle per scheduler tick: backfill missing
instances, scan due instances for breaches, then dispatch the
notifications staged by the scan once its transaction has committed.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from config import SLA_BACKFILL_LOCK_KEY, SLA_BREACH_LOCK_KEY, HandleAction
from sla.application import (
    BreachHandler,
    DeadlineSynchronizer,
    NotificationDispatcher,
    ScanCycleResult,
    UnitOfWorkFactory,
)
from sla.domain import NotificationIntent
from shared.infrastructure.logging import get_cycle_logger, get_logger, log_latency

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BreachScanner:
    """
    Periodic SLA breach scanner.

    This service:
    1. Backfills SLA instances for open tickets that have none
    2. Records breaches for instances whose next deadline has passed
    3. Dispatches breach notifications after the scan commits

    Both passes run under transaction-scoped advisory locks, so across
    replicas at most one process backfills and one scans at a time.
    Within a process, overlapping ticks are skipped.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        synchronizer: DeadlineSynchronizer,
        handler: BreachHandler,
        dispatcher: NotificationDispatcher,
        enabled: bool = True,
        batch_size: int = 100,
        backfill_batch_size: int = 50,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._uow_factory = uow_factory
        self._synchronizer = synchronizer
        self._handler = handler
        self._dispatcher = dispatcher
        self._enabled = enabled
        self._batch_size = batch_size
        self._backfill_batch_size = backfill_batch_size
        self._clock = clock
        self._running = False
        self._idle = asyncio.Event()
        self._idle.set()
        self.last_result: Optional[ScanCycleResult] = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_running(self) -> bool:
        return self._running

    async def wait_idle(self) -> None:
        """Wait for the in-flight cycle, if any, to finish."""
        await self._idle.wait()

    async def run_cycle(self) -> ScanCycleResult:
        """
        Run one backfill + scan + dispatch cycle.

        Returns:
            ScanCycleResult; ``skipped`` is set when disabled or already running

        Raises:
            SQLAlchemyError: the cycle was aborted and rolled back
        """
        result = ScanCycleResult(cycle_id=uuid4().hex[:12], started_at=self._clock())

        if not self._enabled:
            result.skipped = True
            return result

        if self._running:
            logger.debug("SLA breach cycle already running, skipping tick")
            result.skipped = True
            return result

        self._running = True
        self._idle.clear()
        cycle_logger = get_cycle_logger(__name__, result.cycle_id)
        try:
            with log_latency(cycle_logger, "sla_breach_cycle"):
                await self._backfill(result, cycle_logger)
                intents = await self._scan(result, cycle_logger)
                await self._dispatch(intents, result, cycle_logger)
        finally:
            self._running = False
            self._idle.set()

        self.last_result = result
        cycle_logger.info(
            "SLA breach cycle finished",
            extra=result.model_dump(mode="json", exclude={"cycle_id", "started_at"})
        )
        return result

    async def tick(self) -> None:
        """Scheduler job: run a cycle, logging instead of raising."""
        try:
            await self.run_cycle()
        except SQLAlchemyError as e:
            logger.error(
                "SLA breach cycle aborted by database error, retrying next tick",
                extra={"error": str(e)},
                exc_info=True
            )

    async def _backfill(self, result: ScanCycleResult, cycle_logger) -> None:
        async with self._uow_factory() as uow:
            if not await uow.try_advisory_lock(SLA_BACKFILL_LOCK_KEY):
                cycle_logger.debug("SLA backfill lock held elsewhere, skipping backfill")
                return
            result.backfill_locked = True

            ticket_ids = await uow.tickets.find_open_without_instance(self._backfill_batch_size)
            for ticket_id in ticket_ids:
                try:
                    if await self._synchronizer.sync_from_ticket(ticket_id, uow=uow) is not None:
                        result.backfilled += 1
                except SQLAlchemyError:
                    raise
                except Exception as e:
                    result.item_errors += 1
                    cycle_logger.exception(
                        "SLA backfill failed for ticket",
                        extra={"ticket_id": ticket_id, "error": str(e)}
                    )

        if result.backfilled:
            cycle_logger.info("SLA instances backfilled", extra={"count": result.backfilled})

    async def _scan(self, result: ScanCycleResult, cycle_logger) -> List[NotificationIntent]:
        intents: List[NotificationIntent] = []

        async with self._uow_factory() as uow:
            if not await uow.try_advisory_lock(SLA_BREACH_LOCK_KEY):
                cycle_logger.debug("SLA breach lock held elsewhere, skipping scan")
                return []
            result.scan_locked = True

            now = self._clock()
            due = await uow.instances.find_due(now, self._batch_size)
            result.scanned = len(due)

            for scanned in due:
                try:
                    outcome = await self._handler.handle(uow, scanned, now, intents)
                except SQLAlchemyError:
                    raise
                except Exception as e:
                    result.item_errors += 1
                    cycle_logger.exception(
                        "SLA breach handling failed",
                        extra={
                            "instance_id": scanned.instance.id,
                            "ticket_id": scanned.ticket.id,
                            "error": str(e),
                        }
                    )
                    continue

                if outcome.action == HandleAction.BREACHED:
                    result.breaches += 1
                elif outcome.action == HandleAction.LOST_RACE:
                    result.lost_races += 1
                if outcome.escalated_to is not None:
                    result.escalations += 1

        # Transaction committed; staged intents may now be sent
        result.notifications_staged = len(intents)
        return intents

    async def _dispatch(
        self,
        intents: List[NotificationIntent],
        result: ScanCycleResult,
        cycle_logger,
    ) -> None:
        for intent in intents:
            if await self._dispatcher.dispatch(intent):
                result.notifications_dispatched += 1
            else:
                result.notifications_failed += 1
                cycle_logger.warning(
                    "SLA breach notification not delivered",
                    extra={"ticket_id": intent.ticket_id}
                )
