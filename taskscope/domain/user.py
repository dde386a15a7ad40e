"""User preference models and enums."""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CompletedTaskVisibility(StrEnum):
    """How long completed tasks remain visible in filtered views."""

    NONE = "none"
    ONE_DAY = "1day"
    SEVEN_DAYS = "7days"
    THIRTY_DAYS = "30days"

    @property
    def days(self) -> int:
        """Window length in days (0 for ``none``)."""
        return _VISIBILITY_DAYS[self]


_VISIBILITY_DAYS = {
    CompletedTaskVisibility.NONE: 0,
    CompletedTaskVisibility.ONE_DAY: 1,
    CompletedTaskVisibility.SEVEN_DAYS: 7,
    CompletedTaskVisibility.THIRTY_DAYS: 30,
}


class UserPreferences(BaseModel):
    """Per-user preference blob.

    Only the fields this engine reads are modelled; any other keys stored
    alongside them are kept so a write-back does not drop them.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    timezone: str | None = Field(default=None, description="IANA timezone identifier")
    completed_task_visibility: CompletedTaskVisibility = Field(
        default=CompletedTaskVisibility.SEVEN_DAYS,
        alias="completedTaskVisibility",
        description="Completed task visibility window",
    )

    @field_validator("completed_task_visibility", mode="before")
    @classmethod
    def default_unknown_visibility(cls, v: Any) -> Any:  # noqa: ANN401
        """Unknown visibility values fall back to the seven-day window."""
        if not isinstance(v, str) or v not in {item.value for item in CompletedTaskVisibility}:
            return CompletedTaskVisibility.SEVEN_DAYS
        return v
