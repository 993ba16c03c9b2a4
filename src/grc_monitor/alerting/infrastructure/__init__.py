"""
Alerting Infrastructure Layer
=============================

Infrastructure implementations for alerting:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer
- External: delivery channel senders (Slack, webhook, in-app)
"""

from grc_monitor.alerting.infrastructure.models import AlertRuleModel, AlertModel, AlertDeliveryModel
from grc_monitor.alerting.infrastructure.repositories import SQLAlchemyAlertRepository
from grc_monitor.alerting.infrastructure.external import (
    SlackSender,
    WebhookSender,
    InAppSender,
    build_default_senders,
)

__all__ = [
    "AlertRuleModel",
    "AlertModel",
    "AlertDeliveryModel",
    "SQLAlchemyAlertRepository",
    "SlackSender",
    "WebhookSender",
    "InAppSender",
    "build_default_senders",
]
