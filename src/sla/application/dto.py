"""
SLA Application DTOs
=====================

Data Transfer Objects for the SLA API layer and scan reporting.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses. Following YAGNI - only what's needed.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from sla.domain import UNSET, SyncOptions


# ========== Type Aliases for Literals ==========
PriorityStr = Literal["P1", "P2", "P3", "P4"]
PolicySourceStr = Literal["team", "default", "fallback"]


# ========== Request DTOs ==========

class SyncRequest(BaseModel):
    """Body of a sync call made after a ticket mutation."""
    policy_config_id: Optional[str] = Field(
        default=None,
        description="Policy to link; send null explicitly to unlink, omit to keep or resolve"
    )
    reset_resolution: bool = Field(default=False, description="Clear the resolution breach (reopen)")
    reset_first_response: bool = Field(default=False, description="Clear the first-response breach")

    def to_options(self) -> SyncOptions:
        """Convert to domain options, keeping "omitted" distinct from "null"."""
        policy_config_id = (
            self.policy_config_id if "policy_config_id" in self.model_fields_set else UNSET
        )
        return SyncOptions(
            policy_config_id=policy_config_id,
            reset_resolution=self.reset_resolution,
            reset_first_response=self.reset_first_response,
        )


# ========== Response DTOs ==========

class SlaInstanceResponse(BaseModel):
    """Response model for an SLA instance."""
    id: str
    ticket_id: str
    policy_config_id: Optional[str] = None
    priority: PriorityStr
    first_response_due_at: Optional[datetime] = None
    resolution_due_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    next_due_at: Optional[datetime] = Field(None, description="Soonest unmet deadline (scan key)")
    first_response_breached_at: Optional[datetime] = None
    resolution_breached_at: Optional[datetime] = None
    first_response_at_risk_notified_at: Optional[datetime] = None
    resolution_at_risk_notified_at: Optional[datetime] = None


class ResolvedPolicyResponse(BaseModel):
    """Response model for policy resolution."""
    policy_config_id: Optional[str] = Field(None, description="None when the fallback table applies")
    priority: PriorityStr
    first_response_hours: float
    resolution_hours: float
    source: PolicySourceStr


class ScanCycleResult(BaseModel):
    """Summary of one breach scanner cycle."""
    cycle_id: str = ""
    started_at: Optional[datetime] = None
    skipped: bool = Field(default=False, description="Cycle did not run (disabled or already running)")
    backfill_locked: bool = Field(default=False, description="This replica held the backfill lock")
    backfilled: int = 0
    scan_locked: bool = Field(default=False, description="This replica held the scan lock")
    scanned: int = 0
    breaches: int = 0
    lost_races: int = 0
    escalations: int = 0
    item_errors: int = 0
    notifications_staged: int = 0
    notifications_dispatched: int = 0
    notifications_failed: int = 0
