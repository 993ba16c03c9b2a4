"""
Monitoring Domain Layer
=======================

Domain layer for the compliance test monitoring module.

Contains:
- Entities: Test, TestRun, TestResult, RunCounters
- Value Objects: Schedule
- Domain Services: ScheduleEvaluator (next fire time of a schedule)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from grc_monitor.monitoring.domain.entities import Test, TestRun, TestResult, RunCounters
from grc_monitor.monitoring.domain.value_objects import Schedule, ScheduleEvaluator, parse_cron

__all__ = [
    # Entities
    "Test",
    "TestRun",
    "TestResult",
    "RunCounters",
    # Value Objects & Services
    "Schedule",
    "ScheduleEvaluator",
    "parse_cron",
]
