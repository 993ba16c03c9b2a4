"""
Executor Adapter Contract
=========================

Pluggable per-test-type implementations that actually perform a check.

Adapters receive the test's opaque `config` and an absolute deadline and
return an `ExecutionOutcome`. They must not touch persistence. Raising
`TransientError` asks the run executor to retry; any other exception is
recorded as an `error` result.

The registry is constructed explicitly and handed to the run executor.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from grc_monitor.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class TransientError(Exception):
    """Raised by an adapter to request a retry of the current test."""


@dataclass
class ExecutionOutcome:
    """Verdict returned by an executor adapter."""

    status: str
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None


class ExecutorAdapter(ABC):
    """Performs checks for one test type."""

    @abstractmethod
    async def execute(self, config: Dict[str, Any], deadline: datetime) -> ExecutionOutcome:
        """
        Run the check described by `config`.

        Args:
            config: The test's opaque configuration object
            deadline: Absolute time after which the result is discarded

        Raises:
            TransientError: the check should be retried
        """

    async def close(self) -> None:
        """Release resources held by the adapter."""


class ExecutorRegistry:
    """Maps test types to executor adapters."""

    def __init__(self):
        self._adapters: Dict[str, ExecutorAdapter] = {}

    def register(self, test_type: str, adapter: ExecutorAdapter) -> None:
        """Register `adapter` for `test_type`, replacing any previous one."""
        if test_type in self._adapters:
            logger.warning(
                "Replacing executor adapter",
                extra={"test_type": test_type, "adapter": type(adapter).__name__}
            )
        self._adapters[test_type] = adapter

    def resolve(self, test_type: str) -> Optional[ExecutorAdapter]:
        return self._adapters.get(test_type)

    @property
    def registered_types(self) -> List[str]:
        return sorted(self._adapters)

    async def close(self) -> None:
        """Close every registered adapter."""
        for adapter in self._adapters.values():
            await adapter.close()
