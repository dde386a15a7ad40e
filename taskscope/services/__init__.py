from taskscope.services.task_filter_service import TaskFilterEngine
from taskscope.services.timezone_service import TimezoneResolver


__all__ = [
    "TaskFilterEngine",
    "TimezoneResolver",
]
