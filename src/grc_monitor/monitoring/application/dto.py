"""
Monitoring Application DTOs
===========================

Data Transfer Objects for the monitoring API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from grc_monitor.monitoring.domain import Test, TestResult, TestRun


# ========== Type Aliases for Literals ==========
TestSeverityStr = Literal["critical", "high", "medium", "low", "informational"]
TestStatusStr = Literal["draft", "active", "paused", "deprecated"]
TriggerTypeStr = Literal["scheduled", "manual", "on_change", "webhook"]

MAX_TAGS = 20
MAX_TRIGGER_TESTS = 500


# ========== Request DTOs ==========

class TestCreateDTO(BaseModel):
    """DTO for creating a test definition."""
    identifier: str = Field(..., min_length=1, max_length=50, description="Tenant-unique test code")
    title: str = Field(..., min_length=1, max_length=500, description="Human readable title")
    description: Optional[str] = Field(None, description="Free text description")
    test_type: str = Field(..., description="Test type; selects the executor adapter")
    severity: TestSeverityStr = Field(default="medium", description="Test severity")
    control_id: str = Field(..., min_length=1, description="Control this test evidences")

    interval_minutes: Optional[int] = Field(None, description="Fixed schedule interval")
    cron_expression: Optional[str] = Field(None, max_length=100, description="5-field cron schedule")

    timeout_seconds: Optional[int] = Field(None, ge=1, le=3600)
    retry_count: Optional[int] = Field(None, ge=0, le=5)
    retry_delay_seconds: int = Field(default=0, ge=0, le=3600)

    config: Dict[str, Any] = Field(default_factory=dict, description="Opaque executor configuration")
    tags: List[str] = Field(default_factory=list, description="Free-form labels")

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        """Bound the number of tags."""
        if len(v) > MAX_TAGS:
            raise ValueError(f"at most {MAX_TAGS} tags are allowed")
        return v


class TestUpdateDTO(BaseModel):
    """
    DTO for a partial test definition update.

    Setting one schedule form clears the other. The identifier is fixed
    once created.
    """
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    test_type: Optional[str] = None
    severity: Optional[TestSeverityStr] = None
    control_id: Optional[str] = Field(None, min_length=1)

    interval_minutes: Optional[int] = None
    cron_expression: Optional[str] = Field(None, max_length=100)

    timeout_seconds: Optional[int] = Field(None, ge=1, le=3600)
    retry_count: Optional[int] = Field(None, ge=0, le=5)
    retry_delay_seconds: Optional[int] = Field(None, ge=0, le=3600)

    config: Optional[Dict[str, Any]] = None
    tags: Optional[List[str]] = None

    @field_validator(
        "title", "test_type", "severity", "control_id", "timeout_seconds",
        "retry_count", "retry_delay_seconds", "config", "tags",
    )
    @classmethod
    def reject_null(cls, v):
        if v is None:
            raise ValueError("may not be null")
        return v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        if len(v) > MAX_TAGS:
            raise ValueError(f"at most {MAX_TAGS} tags are allowed")
        return v


class TestStatusChangeDTO(BaseModel):
    """Request body for a test status transition."""
    status: TestStatusStr


class TriggerRunRequest(BaseModel):
    """Request body for a manual test run."""
    test_ids: Optional[List[str]] = Field(
        None,
        description="Tests to run; defaults to every active test of the tenant"
    )
    trigger_type: TriggerTypeStr = Field(default="manual")
    trigger_metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("test_ids")
    @classmethod
    def validate_test_ids(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        """Bound the explicit test list."""
        if v is not None and len(v) > MAX_TRIGGER_TESTS:
            raise ValueError(f"at most {MAX_TRIGGER_TESTS} tests per run")
        return v


# ========== Response DTOs ==========

class TestResponse(BaseModel):
    """Response model for a test definition."""
    id: str
    tenant_id: str
    identifier: str
    title: str
    test_type: str
    severity: str
    status: str
    control_id: str
    interval_minutes: Optional[int] = None
    cron_expression: Optional[str] = None
    timeout_seconds: int
    retry_count: int
    retry_delay_seconds: int
    tags: List[str] = Field(default_factory=list)
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, test: Test) -> "TestResponse":
        return cls(
            id=test.id,
            tenant_id=test.tenant_id,
            identifier=test.identifier,
            title=test.title,
            test_type=test.test_type,
            severity=test.severity,
            status=test.status,
            control_id=test.control_id,
            interval_minutes=test.schedule.interval_minutes,
            cron_expression=test.schedule.cron_expression,
            timeout_seconds=test.timeout_seconds,
            retry_count=test.retry_count,
            retry_delay_seconds=test.retry_delay_seconds,
            tags=list(test.tags),
            last_run_at=test.last_run_at,
            next_run_at=test.next_run_at,
        )


class TestRunResponse(BaseModel):
    """Response model for a test run with its counters."""
    id: str
    tenant_id: str
    run_number: Optional[int] = None
    status: str
    trigger_type: str
    triggered_by: Optional[str] = None
    worker_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    error_tests: int = 0
    skipped_tests: int = 0
    warning_tests: int = 0
    error_message: Optional[str] = None

    @classmethod
    def from_entity(cls, run: TestRun) -> "TestRunResponse":
        return cls(
            id=run.id,
            tenant_id=run.tenant_id,
            run_number=run.run_number,
            status=run.status,
            trigger_type=run.trigger_type,
            triggered_by=run.triggered_by,
            worker_id=run.worker_id,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_ms=run.duration_ms,
            total_tests=run.counters.total,
            passed_tests=run.counters.passed,
            failed_tests=run.counters.failed,
            error_tests=run.counters.errors,
            skipped_tests=run.counters.skipped,
            warning_tests=run.counters.warnings,
            error_message=run.error_message,
        )


class TestResultResponse(BaseModel):
    """Response model for one test result."""
    id: str
    test_run_id: str
    test_id: str
    control_id: str
    status: str
    severity: str
    message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    alert_generated: bool = False
    alert_id: Optional[str] = None

    @classmethod
    def from_entity(cls, result: TestResult) -> "TestResultResponse":
        return cls(
            id=result.id,
            test_run_id=result.test_run_id,
            test_id=result.test_id,
            control_id=result.control_id,
            status=result.status,
            severity=result.severity,
            message=result.message,
            details=result.details,
            error_message=result.error_message,
            started_at=result.started_at,
            completed_at=result.completed_at,
            duration_ms=result.duration_ms,
            alert_generated=result.alert_generated,
            alert_id=result.alert_id,
        )


class TestRunDetailResponse(BaseModel):
    """A run together with its results."""
    run: TestRunResponse
    results: List[TestResultResponse] = Field(default_factory=list)


class TestRunListResponse(BaseModel):
    """One page of test runs."""
    runs: List[TestRunResponse] = Field(default_factory=list)
    total_count: int = 0
    limit: int
    offset: int


class TestResultListResponse(BaseModel):
    """One page of results of a run."""
    results: List[TestResultResponse] = Field(default_factory=list)
    total_count: int = 0
    limit: int
    offset: int
