"""taskscope - timezone-correct task retrieval over a resilient store."""

import logging
from pathlib import Path
from types import TracebackType
from typing import Any, Self

from taskscope.core.cache_client import CacheClient, InMemoryCache
from taskscope.core.config import Settings, settings as default_settings
from taskscope.core.db_client import DatabaseClient
from taskscope.core.logging import configure_logfire
from taskscope.core.store_client import ResilientStoreClient, RetryConfig
from taskscope.domain.filters import FilterRequest
from taskscope.models.service_models import DateBoundaries, FilterCounts, TaskPage
from taskscope.services.task_filter_service import TaskFilterEngine
from taskscope.services.timezone_service import TimezoneResolver


logger = logging.getLogger(__name__)


class TaskScope:
    """Owns one store, store client, resolver and filter engine.

    Usage:
        async with TaskScope() as scope:
            page = await scope.get_filtered_tasks("tenant", "user", {"dueDate": "today"})
    """

    def __init__(
        self,
        app_settings: Settings | None = None,
        *,
        db_path: str | Path | None = None,
        cache: CacheClient | None = None,
    ) -> None:
        self.settings = app_settings or default_settings
        self.db = DatabaseClient(db_path or self.settings.sqlite_db_path)
        self.store_client = ResilientStoreClient(self.db, RetryConfig.from_settings(self.settings))
        self.cache = cache if cache is not None else InMemoryCache()
        self.timezones = TimezoneResolver(
            self.store_client,
            self.db,
            default_timezone=self.settings.default_timezone,
        )
        self.filters = TaskFilterEngine(
            self.store_client,
            self.db,
            self.timezones,
            cache=self.cache,
        )
        self._started = False

    async def start(self) -> None:
        """Configure observability and open the store."""
        if self._started:
            return
        configure_logfire(self.settings)
        await self.store_client.ensure_healthy_connection()
        self._started = True
        logger.info(
            "Startup validation passed",
            extra={
                "service": "store",
                "status": "ok",
                "db_path": str(self.db.db_path),
                "queue_concurrency": self.store_client.config.queue_concurrency,
            },
        )

    async def close(self) -> None:
        await self.store_client.close()
        self.timezones.clear_all_cache()
        self._started = False
        logger.info("TaskScope closed")

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def get_filtered_tasks(
        self,
        tenant_id: str,
        user_id: str,
        request: FilterRequest | dict[str, Any] | None = None,
    ) -> TaskPage:
        return await self.filters.get_filtered_tasks(tenant_id, user_id, request)

    async def get_filter_counts(self, tenant_id: str, user_id: str) -> FilterCounts:
        return await self.filters.get_filter_counts(tenant_id, user_id)

    async def get_user_timezone(self, user_id: str) -> str:
        return await self.timezones.get_user_timezone(user_id)

    async def get_date_boundaries(self, user_id: str, completed_window_days: int = 7) -> DateBoundaries:
        return await self.timezones.get_date_boundaries(user_id, completed_window_days)

    async def with_retry(self, operation: Any, label: str = "database operation") -> Any:  # noqa: ANN401
        return await self.store_client.with_retry(operation, label)
