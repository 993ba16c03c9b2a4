"""
Alerting Interfaces Layer
=========================

Interface adapters (controllers) for the alerting module.
"""

from grc_monitor.alerting.interfaces.controllers import router as alerting_router

__all__ = ["alerting_router"]
