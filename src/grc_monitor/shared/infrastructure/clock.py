"""
Clock & Identifier Source
=========================

Wall-clock reader and identifier generator injected into the monitoring core,
so scheduling and cooldown logic can be driven by a controlled clock in tests.
"""

import asyncio
from datetime import datetime, timezone
from typing import Protocol
from uuid import uuid4


class Clock(Protocol):
    """Source of the current time and of sleeps between retries."""

    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller."""


class SystemClock:
    """Real time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def new_id() -> str:
    """Globally unique identifier for new rows."""
    return str(uuid4())
