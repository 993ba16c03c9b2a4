"""
Monitoring Module
=================

Bounded Context for scheduled compliance testing.

Responsibilities:
- Keep test definitions and their schedules
- Pick up due tests per tenant and execute them as a batched run
- Dispatch each test to the executor adapter registered for its type
- Record per-test results and advance test schedules
- Hand failing results to the alerting context
- Drive the periodic worker tick
"""

__version__ = "1.0.0"
