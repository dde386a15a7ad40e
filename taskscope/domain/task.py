"""Task domain models and enums."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field, model_validator


class TaskStatus(StrEnum):
    """Task lifecycle status."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class TaskPriority(StrEnum):
    """Task priority, lowest to highest."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


# Sort rank used by the store: higher value sorts first when descending
PRIORITY_RANK: dict[str, int] = {
    TaskPriority.URGENT: 4,
    TaskPriority.HIGH: 3,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 1,
}

# Active tasks always precede completed ones
STATUS_RANK: dict[str, int] = {
    TaskStatus.ACTIVE: 0,
    TaskStatus.ARCHIVED: 1,
    TaskStatus.COMPLETED: 2,
}


class Task(BaseModel):
    """Task data transfer object (read-only view of a stored task)."""

    id: str = Field(..., description="Unique task ID from database")
    tenant_id: str = Field(..., description="Owning tenant")
    user_id: str = Field(..., description="Owning user")
    title: str = Field(..., description="Task title")
    description: str = Field(default="", description="Detailed task description")
    status: TaskStatus = Field(default=TaskStatus.ACTIVE, description="Lifecycle status")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, description="Task priority")
    due_date: datetime | None = Field(default=None, description="Due instant (UTC)")
    completed_at: datetime | None = Field(default=None, description="Completion instant (UTC)")
    tags: list[str] = Field(default_factory=list, description="Free-form tags")
    project_id: str | None = Field(default=None, description="Project the task belongs to")
    context_id: str | None = Field(default=None, description="GTD context")
    area_id: str | None = Field(default=None, description="Area of responsibility")
    created_at: datetime = Field(..., description="Creation timestamp (UTC)")
    updated_at: datetime = Field(..., description="Last update timestamp (UTC)")

    @model_validator(mode="after")
    def check_completion_matches_status(self) -> "Task":
        """Completion instant is set if and only if the task is completed."""
        if (self.status == TaskStatus.COMPLETED) != (self.completed_at is not None):
            msg = f"Task {self.id}: completed_at must be set exactly when status is completed (status={self.status})"
            raise ValueError(msg)
        return self
