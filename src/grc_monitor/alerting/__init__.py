"""
Alerting Module
===============

Bounded Context for alerts raised from failing compliance tests.

Responsibilities:
- Keep tenant alert rules and evaluate them against failing results
- Raise alerts with cooldown, SLA deadline and auto-assignment
- Drive the alert lifecycle (assign, resolve, suppress, close)
- Reconcile SLA breaches and suppression expiry
- Deliver alerts over Slack, webhooks and in-app
"""

__version__ = "1.0.0"
