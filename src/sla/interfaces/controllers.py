"""
SLA Controllers (API Routes)
=============================

FastAPI routes for SLA breach tracking operations.

Controllers are thin - they delegate to application services. Long-lived
services (synchronizer, scanner) are built once in the application
lifespan and read from ``app.state``.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import Priority
from core import ResourceNotFoundException, ScannerDisabledException
from infrastructure.database import get_session
from sla.application import (
    DeadlineSynchronizer,
    PolicyResolver,
    ResolvedPolicyResponse,
    ScanCycleResult,
    SlaInstanceResponse,
    SyncRequest,
)
from sla.infrastructure import SQLAlchemyUnitOfWork
from sla.services import BreachScanner
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA Breach Tracking"])


# ========== Example payloads for Swagger ==========

SLA_INSTANCE_EXAMPLE = {
    "id": "7d0c3b7e-1f7a-4a53-9d0e-6a3c2c4b9f10",
    "ticket_id": "5b1e8f0a-3c1d-4e55-8a7e-0f1f2b3c4d5e",
    "policy_config_id": None,
    "priority": "P2",
    "first_response_due_at": "2026-01-15T14:00:00Z",
    "resolution_due_at": "2026-01-16T10:00:00Z",
    "paused_at": None,
    "next_due_at": "2026-01-15T14:00:00Z",
    "first_response_breached_at": None,
    "resolution_breached_at": None,
    "first_response_at_risk_notified_at": None,
    "resolution_at_risk_notified_at": None
}


# ========== Dependencies ==========

async def get_unit_of_work(
    session: AsyncSession = Depends(get_session)
) -> SQLAlchemyUnitOfWork:
    """Unit of work over the request's session; committed by ``get_session``."""
    return SQLAlchemyUnitOfWork(session)


def get_synchronizer(request: Request) -> DeadlineSynchronizer:
    return request.app.state.sla_synchronizer


def get_scanner(request: Request) -> BreachScanner:
    return request.app.state.sla_scanner


# ========== Route Handlers ==========

@router.post(
    "/tickets/{ticket_id}/sync",
    response_model=SlaInstanceResponse,
    summary="Sync a ticket's SLA instance",
    description="""
    Recompute the SLA instance from the ticket's current fields.

    Call after any ticket mutation that can move a deadline: create,
    priority/team change, pause/resume, first response, resolve, reopen.

    **Body** (optional):
    - `policy_config_id`: omit to keep/resolve, send `null` to unlink
    - `reset_resolution`: clear the resolution breach (reopen)
    - `reset_first_response`: clear the first-response breach
    """,
    responses={
        200: {"content": {"application/json": {"example": SLA_INSTANCE_EXAMPLE}}},
        404: {"description": "Ticket not found"}
    }
)
async def sync_ticket(
    ticket_id: str,
    payload: Optional[SyncRequest] = None,
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work),
    synchronizer: DeadlineSynchronizer = Depends(get_synchronizer),
):
    options = payload.to_options() if payload else None
    instance = await synchronizer.sync_from_ticket(ticket_id, options, uow=uow)
    if instance is None:
        raise ResourceNotFoundException("Ticket", ticket_id)

    logger.info(
        "SLA instance synced via API",
        extra={"ticket_id": ticket_id, "next_due_at": instance.to_dict()["next_due_at"]}
    )
    return SlaInstanceResponse(**instance.to_dict())


@router.get(
    "/tickets/{ticket_id}/instance",
    response_model=SlaInstanceResponse,
    summary="Get a ticket's SLA instance",
    responses={
        200: {"content": {"application/json": {"example": SLA_INSTANCE_EXAMPLE}}},
        404: {"description": "Ticket has no SLA instance"}
    }
)
async def get_instance(
    ticket_id: str,
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work),
):
    instance = await uow.instances.get_by_ticket_id(ticket_id)
    if instance is None:
        raise ResourceNotFoundException("SLA instance for ticket", ticket_id)
    return SlaInstanceResponse(**instance.to_dict())


@router.get(
    "/policies/resolve",
    response_model=ResolvedPolicyResponse,
    summary="Resolve the SLA policy for a priority and team",
    description="""
    Precedence: team assignment, then global default, then the built-in
    fallback table (`policy_config_id` is null for the fallback).
    """
)
async def resolve_policy(
    priority: Priority = Query(..., description="Ticket priority"),
    team_id: Optional[str] = Query(None, description="Assigned team"),
    uow: SQLAlchemyUnitOfWork = Depends(get_unit_of_work),
):
    resolved = await PolicyResolver(uow.policies).resolve(priority, team_id)
    return ResolvedPolicyResponse(**resolved.to_dict())


@router.post(
    "/scan",
    response_model=ScanCycleResult,
    summary="Run one breach scan cycle now",
    responses={409: {"description": "Breach worker disabled on this replica"}}
)
async def run_scan(scanner: BreachScanner = Depends(get_scanner)):
    if not scanner.enabled:
        raise ScannerDisabledException()
    return await scanner.run_cycle()
