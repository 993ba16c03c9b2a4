"""
Configuration Module
====================

Application settings and domain constants for the monitoring core.

Settings are loaded from environment variables (and an optional .env file)
using Pydantic. Domain enumerations are plain string constants so they can be
stored in String columns and compared without conversion.
"""

import socket
from functools import lru_cache
from typing import Optional
from uuid import uuid4

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_worker_id() -> str:
    """Stable per-process worker identifier: hostname plus a short uuid."""
    return f"{socket.gethostname()}-{uuid4().hex[:8]}"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="grc-monitor", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/grc",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Monitoring Worker ==========
    worker_enabled: bool = Field(
        default=True,
        description="Start the monitoring worker inside the API process"
    )
    worker_id: str = Field(
        default_factory=default_worker_id,
        description="Identifier recorded on runs created by this process"
    )
    tick_interval_seconds: int = Field(
        default=60,
        description="Seconds between worker ticks",
        ge=1
    )
    batch_limit: int = Field(
        default=100,
        description="Maximum due tests picked up per tick",
        ge=1
    )
    default_retry_count: int = Field(default=0, description="Retry count for new tests", ge=0, le=5)
    default_timeout_seconds: int = Field(
        default=60,
        description="Timeout for new tests",
        ge=1,
        le=3600
    )
    cron_timezone: str = Field(default="UTC", description="Timezone cron schedules are evaluated in")

    # ========== Executor Adapters ==========
    endpoint_probe_timeout_seconds: float = Field(
        default=10.0,
        description="HTTP timeout for the endpoint probe adapter",
        ge=0.1,
        le=300
    )

    # ========== Alert Delivery ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Fallback Slack webhook URL when an alert rule has none"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )
    webhook_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for generic webhook deliveries",
        ge=0.1,
        le=60
    )
    delivery_batch_limit: int = Field(
        default=50,
        description="Pending deliveries drained per tick",
        ge=1
    )
    delivery_max_attempts: int = Field(
        default=5,
        description="Attempts before a delivery is marked failed",
        ge=1
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class TestType(str):
    """Kinds of compliance checks; each maps to an executor adapter."""
    CONFIGURATION = "configuration"
    ACCESS_CONTROL = "access_control"
    ENDPOINT = "endpoint"
    VULNERABILITY = "vulnerability"
    DATA_PROTECTION = "data_protection"
    NETWORK = "network"
    LOGGING = "logging"
    CUSTOM = "custom"


class Severity(str):
    """Test and alert severities."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFORMATIONAL = "informational"


class TestStatus(str):
    """Test definition lifecycle."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    DEPRECATED = "deprecated"


class RunStatus(str):
    """Test run lifecycle."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TriggerType(str):
    """What started a test run."""
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    ON_CHANGE = "on_change"
    WEBHOOK = "webhook"


class ResultStatus(str):
    """Outcome of a single test execution."""
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    SKIP = "skip"
    WARNING = "warning"


class AlertStatus(str):
    """Alert lifecycle."""
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"
    CLOSED = "closed"


class DeliveryChannel(str):
    """Outbound alert delivery channels."""
    SLACK = "slack"
    EMAIL = "email"
    WEBHOOK = "webhook"
    IN_APP = "in_app"


class DeliveryStatus(str):
    """Delivery intent states."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


# ========== Lists for validation ==========

VALID_TEST_TYPES = [
    TestType.CONFIGURATION, TestType.ACCESS_CONTROL, TestType.ENDPOINT,
    TestType.VULNERABILITY, TestType.DATA_PROTECTION, TestType.NETWORK,
    TestType.LOGGING, TestType.CUSTOM
]
VALID_RESULT_STATUSES = [
    ResultStatus.PASS, ResultStatus.FAIL, ResultStatus.ERROR,
    ResultStatus.SKIP, ResultStatus.WARNING
]
VALID_ALERT_STATUSES = [
    AlertStatus.OPEN, AlertStatus.ACKNOWLEDGED, AlertStatus.IN_PROGRESS,
    AlertStatus.RESOLVED, AlertStatus.SUPPRESSED, AlertStatus.CLOSED
]

# Runs in these states block a new run for the same tenant
ACTIVE_RUN_STATUSES = [RunStatus.PENDING, RunStatus.RUNNING]
# Results in these states feed alert rule evaluation
FAILING_RESULT_STATUSES = [ResultStatus.FAIL, ResultStatus.ERROR]
# Alerts in these states never get an SLA breach flag
SLA_EXEMPT_ALERT_STATUSES = [AlertStatus.RESOLVED, AlertStatus.CLOSED, AlertStatus.SUPPRESSED]

TEST_STATUS_TRANSITIONS = {
    TestStatus.DRAFT: [TestStatus.ACTIVE],
    TestStatus.ACTIVE: [TestStatus.PAUSED, TestStatus.DEPRECATED],
    TestStatus.PAUSED: [TestStatus.ACTIVE, TestStatus.DEPRECATED],
    TestStatus.DEPRECATED: [],
}

ALERT_STATUS_TRANSITIONS = {
    AlertStatus.OPEN: [
        AlertStatus.ACKNOWLEDGED, AlertStatus.IN_PROGRESS,
        AlertStatus.SUPPRESSED, AlertStatus.CLOSED
    ],
    AlertStatus.ACKNOWLEDGED: [AlertStatus.IN_PROGRESS, AlertStatus.SUPPRESSED, AlertStatus.CLOSED],
    AlertStatus.IN_PROGRESS: [AlertStatus.RESOLVED, AlertStatus.SUPPRESSED, AlertStatus.CLOSED],
    AlertStatus.RESOLVED: [AlertStatus.CLOSED, AlertStatus.OPEN],
    AlertStatus.SUPPRESSED: [AlertStatus.OPEN, AlertStatus.CLOSED],
    AlertStatus.CLOSED: [AlertStatus.OPEN],
}
