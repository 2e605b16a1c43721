"""
SLA Breach Service - Main Application
======================================

Tracks SLA deadlines for support tickets, records breaches exactly once
across replicas, escalates priority and notifies team leads and on-call.

Clean Architecture Layers:
- Interfaces: FastAPI controllers (ops API)
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, notification service, Slack, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from config import Settings, settings
from core import ApplicationException

# Infrastructure
from infrastructure.database import (
    check_database,
    close_database,
    create_tables,
    get_session_maker,
    init_database,
)

# SLA Module
from sla.application import BreachHandler, DeadlineSynchronizer, NotificationDispatcher
from sla.infrastructure import (
    HttpNotificationClient,
    SlackClient,
    SLAScheduler,
    sqlalchemy_uow_factory,
)
from sla.services import BreachScanner
from sla.interfaces import sla_router

# Shared
from shared.api.middleware import (
    RequestContextMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


def build_sla_services(app: FastAPI, config: Settings) -> None:
    """Wire the SLA services onto ``app.state``; the database must be initialized."""
    uow_factory = sqlalchemy_uow_factory(get_session_maker())

    notifier = HttpNotificationClient(
        config.notification_service_url,
        timeout_seconds=config.notification_timeout_seconds,
    )
    slack_client = SlackClient(
        config.slack_webhook_url,
        channel=config.slack_channel,
        web_app_url=config.web_app_url,
        timeout_seconds=config.slack_timeout_seconds,
    )
    alerters = [slack_client] if slack_client.is_configured else []

    synchronizer = DeadlineSynchronizer(uow_factory)
    scanner = BreachScanner(
        uow_factory,
        synchronizer,
        BreachHandler(
            escalation_enabled=config.sla_priority_bump_enabled,
            on_call_emails=config.on_call_emails,
            web_app_url=config.web_app_url,
        ),
        NotificationDispatcher(notifier, alerters),
        enabled=config.sla_breach_worker_enabled,
        batch_size=config.sla_breach_batch_size,
        backfill_batch_size=config.sla_backfill_batch_size,
    )

    app.state.settings = config
    app.state.sla_synchronizer = synchronizer
    app.state.sla_scanner = scanner
    app.state.notification_client = notifier
    app.state.slack_client = slack_client
    app.state.sla_scheduler = SLAScheduler(interval_seconds=config.sla_breach_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database (create tables outside production)
    3. Build SLA services
    4. Start the breach scan scheduler (first cycle runs immediately)

    SHUTDOWN:
    1. Stop the scheduler and wait for an in-flight cycle
    2. Close HTTP clients
    3. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment, settings.app_name)
    logger.info("Starting SLA Breach Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()
    if settings.environment in ("development", "test"):
        # Use migrations outside development
        await create_tables()

    build_sla_services(app, settings)
    scanner: BreachScanner = app.state.sla_scanner
    scheduler: SLAScheduler = app.state.sla_scheduler

    if scanner.enabled:
        await scheduler.start(scanner.tick)
    else:
        logger.info("SLA breach worker disabled on this replica")

    logger.info("SLA Breach Service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down SLA Breach Service")

    await scheduler.stop()
    await scanner.wait_idle()

    await app.state.notification_client.close()
    await app.state.slack_client.close()

    await close_database()

    logger.info("SLA Breach Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="SLA Breach Service",
    description="""
    ## SLA Breach Tracking

    Keeps one SLA instance per ticket in sync with the ticket's deadlines
    and scans for breaches in the background.

    **Endpoints:**
    - `POST /sla/tickets/{id}/sync` - Recompute a ticket's SLA instance
    - `GET /sla/tickets/{id}/instance` - Read a ticket's SLA instance
    - `GET /sla/policies/resolve` - Show which policy applies
    - `POST /sla/scan` - Run one scan cycle now

    **Escalation ladder:** P4 → P3 → P2 → P1 (P1 is terminal)
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestContextMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(sla_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service health",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "database": "connected",
                        "sla_scheduler": "running",
                        "sla_worker": "enabled"
                    },
                    "last_cycle": None
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including:
    - Database connectivity
    - Scheduler state
    - Result of the last breach scan cycle on this replica
    """
    database_ok = await check_database()
    scheduler = getattr(request.app.state, "sla_scheduler", None)
    scanner = getattr(request.app.state, "sla_scanner", None)

    checks = {
        "database": "connected" if database_ok else "unavailable",
        "sla_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
        "sla_worker": "enabled" if scanner and scanner.enabled else "disabled",
    }
    last_result = scanner.last_result if scanner else None

    return {
        "status": "healthy" if database_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks,
        "last_cycle": last_result.model_dump(mode="json") if last_result else None
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
