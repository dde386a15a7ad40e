"""Domain models and DTOs."""

from taskscope.domain.filters import DateBucket, FilterRequest, StatusFilter
from taskscope.domain.task import Task, TaskPriority, TaskStatus
from taskscope.domain.user import CompletedTaskVisibility, UserPreferences


__all__ = [
    "CompletedTaskVisibility",
    "DateBucket",
    "FilterRequest",
    "StatusFilter",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "UserPreferences",
]
