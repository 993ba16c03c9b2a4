"""
Alerting Domain Layer
=====================

Domain layer for the alerting module.

Contains:
- Entities: AlertRule, Alert, DeliveryJob
- Value Objects: RuleMatcher, title template rendering

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from grc_monitor.alerting.domain.entities import Alert, AlertRule, DeliveryJob
from grc_monitor.alerting.domain.value_objects import RuleMatcher, default_title, render_title

__all__ = [
    # Entities
    "Alert",
    "AlertRule",
    "DeliveryJob",
    # Value Objects
    "RuleMatcher",
    "default_title",
    "render_title",
]
