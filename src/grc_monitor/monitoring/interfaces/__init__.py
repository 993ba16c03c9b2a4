"""
Monitoring Interfaces Layer
===========================

Interface adapters (controllers) for the monitoring module.

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from grc_monitor.monitoring.interfaces.controllers import router as monitoring_router

__all__ = ["monitoring_router"]
