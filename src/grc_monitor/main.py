"""
GRC Monitor - Main Application
==============================

Continuous compliance monitoring service.

Modules:
- Monitoring: scheduled control tests executed as per-tenant batched runs
- Alerting: alert rules, alert lifecycle, SLA tracking and delivery

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, executor adapters, delivery channels
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from grc_monitor.config import Settings, get_settings

# Infrastructure
from grc_monitor.infrastructure.database import (
    close_database, create_tables, get_session_maker, init_database,
)

# Monitoring module
from grc_monitor.monitoring.application import (
    ExecutorRegistry, MonitoringWorker, RunExecutor, TestDefinitionService,
)
from grc_monitor.monitoring.domain import ScheduleEvaluator
from grc_monitor.monitoring.infrastructure import (
    MonitoringScheduler, SQLAlchemyMonitoringRepository, build_default_registry,
)

# Alerting module
from grc_monitor.alerting.application import (
    AlertGenerator, AlertLifecycleService, AlertReconciler, AlertRuleService,
    DeliveryDispatcher, IDeliverySender,
)
from grc_monitor.alerting.infrastructure import SQLAlchemyAlertRepository, build_default_senders

# Module routers
from grc_monitor.monitoring.interfaces import monitoring_router
from grc_monitor.alerting.interfaces import alerting_router

# Shared
from grc_monitor.shared.api import middleware
from grc_monitor.shared.infrastructure.clock import Clock, SystemClock
from grc_monitor.shared.infrastructure.logging import get_logger, setup_logging

logger = get_logger(__name__)


def configure_services(
    app: FastAPI,
    session_maker: async_sessionmaker[AsyncSession],
    settings: Settings,
    clock: Optional[Clock] = None,
    registry: Optional[ExecutorRegistry] = None,
    senders: Optional[Dict[str, IDeliverySender]] = None
) -> MonitoringWorker:
    """
    Build the service graph and store it in app state for the controllers.

    Returns:
        The monitoring worker, not yet started
    """
    clock = clock or SystemClock()
    registry = registry if registry is not None else build_default_registry(settings)
    senders = senders if senders is not None else build_default_senders(settings)

    monitoring_repo = SQLAlchemyMonitoringRepository(session_maker)
    alert_repo = SQLAlchemyAlertRepository(session_maker)

    evaluator = ScheduleEvaluator(settings.cron_timezone)
    alert_generator = AlertGenerator(alert_repo, clock)
    run_executor = RunExecutor(
        monitoring_repo,
        registry,
        clock,
        evaluator=evaluator,
        failure_handler=alert_generator,
        worker_id=settings.worker_id,
        batch_limit=settings.batch_limit,
    )
    dispatcher = DeliveryDispatcher(
        alert_repo,
        senders,
        clock,
        batch_limit=settings.delivery_batch_limit,
        max_attempts=settings.delivery_max_attempts,
    )
    worker = MonitoringWorker(
        run_executor,
        clock,
        reconciler=AlertReconciler(alert_repo, clock),
        dispatcher=dispatcher,
        worker_id=settings.worker_id,
    )

    app.state.settings = settings
    app.state.executor_registry = registry
    app.state.run_executor = run_executor
    app.state.test_service = TestDefinitionService(
        monitoring_repo,
        clock,
        evaluator=evaluator,
        default_timeout_seconds=settings.default_timeout_seconds,
        default_retry_count=settings.default_retry_count,
    )
    app.state.alert_lifecycle_service = AlertLifecycleService(alert_repo, clock)
    app.state.alert_rule_service = AlertRuleService(alert_repo, clock)
    app.state.delivery_dispatcher = dispatcher
    app.state.worker = worker
    return worker


async def shutdown_services(app: FastAPI) -> None:
    """Stop the worker, then release adapter and sender resources."""
    worker: Optional[MonitoringWorker] = getattr(app.state, "worker", None)
    if worker is not None:
        await worker.stop()

    registry: Optional[ExecutorRegistry] = getattr(app.state, "executor_registry", None)
    if registry is not None:
        await registry.close()

    dispatcher: Optional[DeliveryDispatcher] = getattr(app.state, "delivery_dispatcher", None)
    if dispatcher is not None:
        await dispatcher.close()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Build services and executor registry
    4. Start the monitoring worker scheduler

    SHUTDOWN:
    1. Stop the scheduler and wait for the tick in flight
    2. Close executor adapters and delivery senders
    3. Close database connections
    """
    settings = get_settings()

    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment, settings.app_name)
    logger.info("Starting GRC monitor", extra={
        "version": settings.app_version,
        "environment": settings.environment,
        "worker_id": settings.worker_id,
    })

    init_database()
    # Development convenience; production schemas are managed by migrations
    await create_tables()

    worker = configure_services(app, get_session_maker(), settings)

    if settings.worker_enabled:
        await worker.start(MonitoringScheduler(interval_seconds=settings.tick_interval_seconds))
    else:
        logger.info("Monitoring worker disabled")

    logger.info("GRC monitor started")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down GRC monitor")
    await shutdown_services(app)
    await close_database()
    logger.info("GRC monitor shutdown complete")


def create_app() -> FastAPI:
    """Create the FastAPI application with routers, middleware and handlers."""
    settings = get_settings()

    application = FastAPI(
        title="GRC Monitor API",
        description="""
        ## Continuous Compliance Monitoring

        Scheduled control tests, batched per organization, with alerting on
        failing results.

        The organization is taken from the `X-Tenant-ID` header set by the
        upstream gateway.
        """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    middleware.install(application)

    application.include_router(monitoring_router)
    application.include_router(alerting_router)

    @application.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Health check endpoint for load balancers and orchestrators."""
        worker = getattr(request.app.state, "worker", None)
        registry = getattr(request.app.state, "executor_registry", None)
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "checks": {
                "worker": "configured" if worker is not None else "not_configured",
                "executors": registry.registered_types if registry is not None else [],
            },
        }

    return application


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "grc_monitor.main:app",
        host=_settings.host,
        port=_settings.port,
        reload=_settings.environment == "development",
        log_level="info"
    )
