"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="sla-breach-service", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/tickets",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Breach Worker ==========
    sla_breach_worker_enabled: bool = Field(
        default=True,
        description="Run the breach scanner on this replica"
    )
    sla_breach_interval_ms: int = Field(
        default=60000,
        description="Milliseconds between breach scan cycles",
        ge=1000
    )
    sla_breach_batch_size: int = Field(
        default=100,
        description="Max instances handled per scan cycle",
        ge=1
    )
    sla_backfill_batch_size: int = Field(
        default=50,
        description="Max tickets backfilled per cycle",
        ge=1
    )
    sla_priority_bump_enabled: bool = Field(
        default=True,
        description="Escalate ticket priority one step on breach"
    )
    sla_on_call_emails: str = Field(
        default="",
        validation_alias=AliasChoices("sla_on_call_emails", "sla_on_call_email"),
        description="Comma-separated on-call addresses notified on every breach"
    )
    web_app_url: str = Field(
        default="http://localhost:5173",
        description="Base URL used for ticket deep links"
    )

    # ========== Notification Delivery ==========
    notification_service_url: Optional[str] = Field(
        default=None,
        description="Endpoint of the outbound notification service"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for notification service calls",
        ge=0.1,
        le=30
    )

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for breach alerts"
    )
    slack_channel: str = Field(
        default="#sla-breaches",
        description="Slack channel for breach alerts"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "test", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("web_app_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def on_call_emails(self) -> List[str]:
        """On-call addresses parsed from the comma-separated setting."""
        return [email.strip() for email in self.sla_on_call_emails.split(",") if email.strip()]

    @property
    def sla_breach_interval_seconds(self) -> float:
        return self.sla_breach_interval_ms / 1000


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

# Transaction-scoped advisory lock keys. These must stay distinct and must
# not change between deployments, or replicas on different versions stop
# excluding each other.
SLA_BREACH_LOCK_KEY = 847291
SLA_BACKFILL_LOCK_KEY = 847292


class Priority(str, Enum):
    """Ticket priority levels, P1 most urgent."""
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"


class TicketStatus(str, Enum):
    """Ticket lifecycle statuses."""
    NEW = "NEW"
    TRIAGED = "TRIAGED"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING_ON_REQUESTER = "WAITING_ON_REQUESTER"
    WAITING_ON_VENDOR = "WAITING_ON_VENDOR"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"
    REOPENED = "REOPENED"


class BreachType(str, Enum):
    """Which SLA clock fired."""
    FIRST_RESPONSE = "FIRST_RESPONSE"
    RESOLUTION = "RESOLUTION"


class TicketEventType(str, Enum):
    """Domain events written by the breach handler."""
    SLA_BREACHED = "SLA_BREACHED"
    PRIORITY_BUMPED = "PRIORITY_BUMPED"


class TeamRole(str, Enum):
    """Team membership roles."""
    AGENT = "AGENT"
    LEAD = "LEAD"
    ADMIN = "ADMIN"


class SlaNotifyRole(str, Enum):
    """Roles a policy may notify on breach."""
    AGENT = "AGENT"
    LEAD = "LEAD"
    MANAGER = "MANAGER"
    OWNER = "OWNER"


class PolicySource(str, Enum):
    """Where a resolved policy came from."""
    TEAM = "team"
    DEFAULT = "default"
    FALLBACK = "fallback"


class HandleAction(str, Enum):
    """What the breach handler did with one scanned instance."""
    RESYNCED = "resynced"
    BREACHED = "breached"
    LOST_RACE = "lost_race"
    SKIPPED = "skipped"
