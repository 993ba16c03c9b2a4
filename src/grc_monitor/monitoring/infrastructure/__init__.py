"""
Monitoring Infrastructure Layer
===============================

Infrastructure implementations for monitoring:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer
- External: endpoint probe adapter and the worker tick scheduler
"""

from grc_monitor.monitoring.infrastructure.models import TestModel, TestRunModel, TestResultModel
from grc_monitor.monitoring.infrastructure.repositories import SQLAlchemyMonitoringRepository
from grc_monitor.monitoring.infrastructure.external import (
    EndpointProbeAdapter,
    MonitoringScheduler,
    build_default_registry,
)

__all__ = [
    "TestModel",
    "TestRunModel",
    "TestResultModel",
    "SQLAlchemyMonitoringRepository",
    "EndpointProbeAdapter",
    "MonitoringScheduler",
    "build_default_registry",
]
