"""
Alerting Application Layer
==========================

Application layer for the alerting module.

Contains:
- Services: alert generation, reconciliation, lifecycle, rules and delivery
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from grc_monitor.alerting.application.dto import (
    AlertRuleCreateDTO,
    AlertRuleUpdateDTO,
    AlertRedeliverDTO,
    AlertStatusChangeDTO,
    AlertAssignDTO,
    AlertResolveDTO,
    AlertSuppressDTO,
    AlertCloseDTO,
    AlertRuleResponse,
    AlertRuleListResponse,
    AlertResponse,
    AlertListResponse,
    DeliveryResponse,
)
from grc_monitor.alerting.application.services import (
    AlertGenerator,
    AlertReconciler,
    AlertLifecycleService,
    AlertRuleService,
    DeliveryDispatcher,
    IAlertRepository,
    IDeliverySender,
)

__all__ = [
    # DTOs
    "AlertRuleCreateDTO",
    "AlertRuleUpdateDTO",
    "AlertRedeliverDTO",
    "AlertStatusChangeDTO",
    "AlertAssignDTO",
    "AlertResolveDTO",
    "AlertSuppressDTO",
    "AlertCloseDTO",
    "AlertRuleResponse",
    "AlertRuleListResponse",
    "AlertResponse",
    "AlertListResponse",
    "DeliveryResponse",
    # Services
    "AlertGenerator",
    "AlertReconciler",
    "AlertLifecycleService",
    "AlertRuleService",
    "DeliveryDispatcher",
    # Interfaces
    "IAlertRepository",
    "IDeliverySender",
]
