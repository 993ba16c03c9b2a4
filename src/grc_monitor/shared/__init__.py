"""
Shared Kernel Module
====================

This module contains shared infrastructure used across all bounded
contexts (Monitoring and Alerting).

Architecture Pattern: Modular Monolith
- Each module (monitoring, alerting) is a bounded context
- Shared kernel contains only generic infrastructure

DO NOT add business logic from Monitoring or Alerting to shared kernel.
"""

__version__ = "1.0.0"
