"""
Monitoring Application Layer
============================

Application layer for the monitoring module.

Contains:
- Services: run executor and test definition service
- Executors: adapter contract and registry keyed by test type
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from grc_monitor.monitoring.application.dto import (
    TestCreateDTO,
    TestUpdateDTO,
    TestStatusChangeDTO,
    TriggerRunRequest,
    TestResponse,
    TestRunResponse,
    TestResultResponse,
    TestRunDetailResponse,
    TestRunListResponse,
    TestResultListResponse,
)
from grc_monitor.monitoring.application.executors import (
    ExecutionOutcome,
    ExecutorAdapter,
    ExecutorRegistry,
    TransientError,
)
from grc_monitor.monitoring.application.services import (
    RunExecutor,
    TestDefinitionService,
    IMonitoringRepository,
    IFailureHandler,
)
from grc_monitor.monitoring.application.worker import MonitoringWorker

__all__ = [
    # DTOs
    "TestCreateDTO",
    "TestUpdateDTO",
    "TestStatusChangeDTO",
    "TriggerRunRequest",
    "TestResponse",
    "TestRunResponse",
    "TestResultResponse",
    "TestRunDetailResponse",
    "TestRunListResponse",
    "TestResultListResponse",
    # Executors
    "ExecutionOutcome",
    "ExecutorAdapter",
    "ExecutorRegistry",
    "TransientError",
    # Services
    "RunExecutor",
    "TestDefinitionService",
    "MonitoringWorker",
    # Interfaces
    "IMonitoringRepository",
    "IFailureHandler",
]
