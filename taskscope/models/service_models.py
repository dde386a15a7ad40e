"""Pydantic models for service layer return types.

These models provide type safety at service boundaries, converting store
rows and computed values into typed objects with validation.
"""

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from taskscope.domain.task import Task


class DateBoundaries(BaseModel):
    """The five UTC instants delimiting one user's today/tomorrow/week/cutoff."""

    today_start: datetime
    today_end: datetime
    tomorrow_start: datetime
    week_from_now: datetime
    completed_cutoff: datetime

    @model_validator(mode="after")
    def check_ordering(self) -> "DateBoundaries":
        if not (self.today_start <= self.today_end <= self.tomorrow_start <= self.week_from_now):
            msg = "Boundaries must satisfy today_start <= today_end <= tomorrow_start <= week_from_now"
            raise ValueError(msg)
        if self.completed_cutoff > self.today_start:
            msg = "completed_cutoff must not be after today_start"
            raise ValueError(msg)
        return self


class TaskPage(BaseModel):
    """One page of filtered tasks."""

    tasks: list[Task] = Field(default_factory=list)
    total_count: int = 0
    has_more: bool = False

    @classmethod
    def empty(cls) -> "TaskPage":
        return cls()


class FilterCounts(BaseModel):
    """Per-bucket task counts for one user."""

    all: int = 0
    focus: int = 0
    today: int = 0
    overdue: int = 0
    upcoming: int = 0
    no_due_date: int = 0


class HealthStatus(BaseModel):
    """Result of a store health check."""

    healthy: bool
    cached: bool = False
    latency_ms: float | None = None
    error: str | None = None


class ConnectionStats(BaseModel):
    """Snapshot of the resilient store client's state."""

    is_healthy: bool
    last_health_check: float | None
    seconds_since_last_check: float | None
    queue_length: int
    is_processing_queue: bool
    queue_concurrency: int
