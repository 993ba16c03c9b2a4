"""
GRC Monitor
===========

Continuous compliance monitoring: scheduled control tests, batched runs per
tenant, and alerting on failing results.
"""

__version__ = "1.0.0"
