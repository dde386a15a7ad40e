"""Filter request model and its enumerated domains.

A ``FilterRequest`` never fails validation for out-of-domain values: unknown
enum values are dropped, pagination is clamped, and blank strings are ignored.
"""

import math
import re
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskscope.core.config import Constants
from taskscope.domain.task import TaskPriority
from taskscope.domain.user import CompletedTaskVisibility


class DateBucket(StrEnum):
    """Named date-range classification for a task."""

    TODAY = "today"
    OVERDUE = "overdue"
    UPCOMING = "upcoming"
    NO_DUE_DATE = "no-due-date"
    FOCUS = "focus"  # today + overdue


class StatusFilter(StrEnum):
    """Which lifecycle statuses a request asks for."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ALL = "all"


def _enum_or_none(enum_cls: type[StrEnum], value: Any) -> Any:  # noqa: ANN401
    if isinstance(value, str) and value in {item.value for item in enum_cls}:
        return value
    return None


def _as_int(value: Any) -> int | None:  # noqa: ANN401
    """Coerce query-string style numbers; anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str) and re.fullmatch(r"\s*-?\d+\s*", value):
        return int(value)
    return None


class FilterRequest(BaseModel):
    """Multi-dimensional task filter, sanitised on construction."""

    model_config = ConfigDict(populate_by_name=True)

    status: StatusFilter = Field(default=StatusFilter.ACTIVE)
    priority: TaskPriority | None = None
    project_id: str | None = Field(default=None, alias="projectId")
    context_id: str | None = Field(default=None, alias="contextId")
    area_id: str | None = Field(default=None, alias="areaId")
    due_date: DateBucket | None = Field(default=None, alias="dueDate")
    search: str | None = None
    limit: int = Field(default=Constants.DEFAULT_FILTER_LIMIT)
    offset: int = Field(default=0)
    include_completed: CompletedTaskVisibility = Field(
        default=CompletedTaskVisibility.NONE, alias="includeCompleted"
    )

    @field_validator("status", mode="before")
    @classmethod
    def default_unknown_status(cls, v: Any) -> Any:  # noqa: ANN401
        return _enum_or_none(StatusFilter, v) or StatusFilter.ACTIVE

    @field_validator("priority", mode="before")
    @classmethod
    def drop_unknown_priority(cls, v: Any) -> Any:  # noqa: ANN401
        return _enum_or_none(TaskPriority, v)

    @field_validator("due_date", mode="before")
    @classmethod
    def drop_unknown_bucket(cls, v: Any) -> Any:  # noqa: ANN401
        return _enum_or_none(DateBucket, v)

    @field_validator("include_completed", mode="before")
    @classmethod
    def default_unknown_window(cls, v: Any) -> Any:  # noqa: ANN401
        return _enum_or_none(CompletedTaskVisibility, v) or CompletedTaskVisibility.NONE

    @field_validator("project_id", "context_id", "area_id", mode="before")
    @classmethod
    def drop_blank_identifier(cls, v: Any) -> Any:  # noqa: ANN401
        """Identifier filters must be non-empty strings."""
        if isinstance(v, str) and v.strip():
            return v.strip()
        return None

    @field_validator("search", mode="before")
    @classmethod
    def trim_search(cls, v: Any) -> Any:  # noqa: ANN401
        if isinstance(v, str) and v.strip():
            return v.strip()
        return None

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, v: Any) -> int:  # noqa: ANN401
        limit = _as_int(v)
        if limit is None:
            return Constants.DEFAULT_FILTER_LIMIT
        return max(1, min(limit, Constants.MAX_FILTER_LIMIT))

    @field_validator("offset", mode="before")
    @classmethod
    def clamp_offset(cls, v: Any) -> int:  # noqa: ANN401
        offset = _as_int(v)
        return max(0, offset) if offset is not None else 0

    @property
    def includes_completed(self) -> bool:
        return self.include_completed != CompletedTaskVisibility.NONE
