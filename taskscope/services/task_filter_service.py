"""Task filtering service.

This module provides:
- Translation of a ``FilterRequest`` into a composite store predicate
- Paginated task retrieval (list and count issued in parallel)
- Per-bucket counts for the sidebar (eight guarded sub-queries)

Key Concepts:
- Predicate precedence: independent OR-groups (status, date bucket, search)
  are ANDed together and never flattened into a single OR-list.
- Completed window: when a request includes recently completed tasks, the
  status group widens to "active, or completed on/after the cutoff".
- Degradation: transient store failures yield an empty page or a zero count;
  non-retryable failures (auth, validation, syntax) propagate to the caller.
"""

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from pydantic import ValidationError

from taskscope.core.cache_client import CacheClient
from taskscope.core.config import Constants
from taskscope.core.errors import classify_store_error
from taskscope.core.logging import span
from taskscope.core.query import (
    OrderBy,
    Predicate,
    all_of,
    any_of,
    between,
    contains,
    eq,
    gte,
    is_null,
    lt,
    render_filter,
)
from taskscope.core.store_client import ResilientStoreClient
from taskscope.domain.filters import DateBucket, FilterRequest, StatusFilter
from taskscope.domain.task import PRIORITY_RANK, STATUS_RANK, Task, TaskStatus
from taskscope.models.service_models import DateBoundaries, FilterCounts, TaskPage
from taskscope.services.timezone_service import TimezoneResolver


logger = logging.getLogger(__name__)

_CACHE_KEY_PREFIX = "taskscope:counts"

# Active before completed, urgent first, soonest due first (undated last), newest first
TASK_ORDER: tuple[OrderBy, ...] = (
    OrderBy("status", rank=STATUS_RANK),
    OrderBy("priority", descending=True, rank=PRIORITY_RANK),
    OrderBy("due_date", nulls_last=True),
    OrderBy("created_at", descending=True),
)


class TaskStore(Protocol):
    """Filtered list and count queries over stored tasks."""

    async def list_tasks(
        self, *, where: Predicate, order_by: tuple[OrderBy, ...], limit: int, offset: int
    ) -> list[Task]: ...

    async def count_tasks(self, *, where: Predicate) -> int: ...


def _completed_since(cutoff: Any) -> Predicate:  # noqa: ANN401
    return all_of(eq("status", TaskStatus.COMPLETED), gte("completed_at", cutoff))


def build_status_group(request: FilterRequest, boundaries: DateBoundaries) -> Predicate:
    """Which statuses match, including the recently-completed window."""
    cutoff = boundaries.completed_cutoff
    if request.status is StatusFilter.COMPLETED:
        if request.includes_completed:
            return _completed_since(cutoff)
        return eq("status", TaskStatus.COMPLETED)

    active = eq("status", TaskStatus.ACTIVE)
    if request.includes_completed and (request.status is StatusFilter.ALL or request.due_date is not None):
        return any_of(active, _completed_since(cutoff))
    return active


def build_date_group(
    bucket: DateBucket | None,
    boundaries: DateBoundaries,
    *,
    include_completed: bool = False,
) -> Predicate | None:
    """Date-range condition for a bucket (None when no bucket is requested).

    With completed tasks included, "today" and "focus" also match tasks
    completed today regardless of their due date.
    """
    if bucket is None:
        return None

    completed_today = (
        between("completed_at", boundaries.today_start, boundaries.today_end) if include_completed else None
    )

    match bucket:
        case DateBucket.TODAY:
            return any_of(between("due_date", boundaries.today_start, boundaries.today_end), completed_today)
        case DateBucket.OVERDUE:
            return lt("due_date", boundaries.today_start)
        case DateBucket.UPCOMING:
            return between("due_date", boundaries.tomorrow_start, boundaries.week_from_now)
        case DateBucket.NO_DUE_DATE:
            return is_null("due_date")
        case DateBucket.FOCUS:
            return any_of(lt("due_date", boundaries.today_end), completed_today)


def build_search_group(search: str | None) -> Predicate | None:
    if not search:
        return None
    return any_of(contains("title", search), contains("description", search))


def build_task_predicate(
    tenant_id: str,
    user_id: str,
    request: FilterRequest,
    boundaries: DateBoundaries,
) -> Predicate:
    """Combine base equalities with the status, date and search groups (AND between groups)."""
    base = [
        eq("tenant_id", tenant_id),
        eq("user_id", user_id),
        eq("priority", request.priority) if request.priority else None,
        eq("project_id", request.project_id) if request.project_id else None,
        eq("context_id", request.context_id) if request.context_id else None,
        eq("area_id", request.area_id) if request.area_id else None,
    ]
    return all_of(
        *base,
        build_status_group(request, boundaries),
        build_date_group(request.due_date, boundaries, include_completed=request.includes_completed),
        build_search_group(request.search),
    )


class TaskFilterEngine:
    """Retrieves filtered task pages and per-bucket counts for one user at a time."""

    def __init__(
        self,
        store_client: ResilientStoreClient,
        tasks: TaskStore,
        timezones: TimezoneResolver,
        cache: CacheClient | None = None,
    ) -> None:
        self._store_client = store_client
        self._tasks = tasks
        self._timezones = timezones
        self._cache = cache

    async def get_filtered_tasks(
        self,
        tenant_id: str,
        user_id: str,
        request: FilterRequest | Mapping[str, Any] | None = None,
    ) -> TaskPage:
        """Get one page of tasks matching ``request``.

        Args:
            tenant_id: Owning tenant
            user_id: Owning user (also defines the timezone for date buckets)
            request: Filter request, or its wire-format mapping (camelCase keys accepted)

        Returns:
            TaskPage; empty if identity is missing or the store is unavailable
        """
        if not tenant_id or not user_id:
            logger.warning(
                "Missing tenant or user id for filtered tasks",
                extra={"tenant_id": tenant_id, "user_id": user_id},
            )
            return TaskPage.empty()

        if request is None:
            request = FilterRequest()
        elif not isinstance(request, FilterRequest):
            try:
                request = FilterRequest.model_validate(request)
            except ValidationError as e:
                logger.warning("Ignoring unreadable filter request", extra={"user_id": user_id, "error": str(e)})
                request = FilterRequest()

        with span("task_filter_service.get_filtered_tasks"):
            boundaries = await self._timezones.get_date_boundaries(user_id, request.include_completed.days)
            where = build_task_predicate(tenant_id, user_id, request, boundaries)
            logger.debug("Built task filter", extra={"user_id": user_id, "filter": render_filter(where)})

            try:
                tasks, total_count = await asyncio.gather(
                    self._store_client.with_retry(
                        lambda: self._tasks.list_tasks(
                            where=where, order_by=TASK_ORDER, limit=request.limit, offset=request.offset
                        ),
                        "getFilteredTasks-findMany",
                    ),
                    self._store_client.with_retry(
                        lambda: self._tasks.count_tasks(where=where),
                        "getFilteredTasks-count",
                    ),
                )
            except Exception as e:
                if not classify_store_error(e).is_retryable:
                    raise
                logger.error(
                    "Failed to get filtered tasks",
                    extra={"tenant_id": tenant_id, "user_id": user_id, "error": str(e)},
                )
                return TaskPage.empty()

            logger.info(
                "Retrieved filtered tasks",
                extra={"user_id": user_id, "returned": len(tasks), "total_count": total_count},
            )
            return TaskPage(
                tasks=tasks,
                total_count=total_count,
                has_more=request.offset + request.limit < total_count,
            )

    async def _guarded_count(self, name: str, where: Predicate) -> int | None:
        """Count one branch; transient failures yield None instead of raising."""
        try:
            return await self._store_client.with_retry(
                lambda: self._tasks.count_tasks(where=where),
                f"getFilterCounts-{name}",
            )
        except Exception as e:
            if not classify_store_error(e).is_retryable:
                raise
            logger.error("Filter count branch failed", extra={"branch": name, "error": str(e)})
            return None

    async def get_filter_counts(self, tenant_id: str, user_id: str) -> FilterCounts:
        """Count tasks per bucket for the sidebar.

        Returns:
            FilterCounts where ``focus == today + overdue``; a failed branch counts as 0
        """
        if not tenant_id or not user_id:
            return FilterCounts()

        cache_key = f"{_CACHE_KEY_PREFIX}:{tenant_id}:{user_id}"
        cached = await self._get_cached_counts(cache_key)
        if cached is not None:
            return cached

        with span("task_filter_service.get_filter_counts"):
            window_days = await self._timezones.get_completed_task_window(user_id)
            b = await self._timezones.get_date_boundaries(user_id, window_days)

            owner = (eq("tenant_id", tenant_id), eq("user_id", user_id))
            active = eq("status", TaskStatus.ACTIVE)
            completed = _completed_since(b.completed_cutoff)
            today = between("due_date", b.today_start, b.today_end)
            overdue = lt("due_date", b.today_start)
            upcoming = between("due_date", b.tomorrow_start, b.week_from_now)

            branches: dict[str, Predicate] = {
                "all": all_of(*owner, any_of(active, completed) if window_days else active),
                "active-today": all_of(*owner, active, today),
                "active-overdue": all_of(*owner, active, overdue),
                "active-upcoming": all_of(*owner, active, upcoming),
                "active-no-due-date": all_of(*owner, active, is_null("due_date")),
            }
            if window_days:
                completed_today = any_of(today, between("completed_at", b.today_start, b.today_end))
                branches |= {
                    "completed-today": all_of(*owner, completed, completed_today),
                    "completed-overdue": all_of(*owner, completed, overdue),
                    "completed-upcoming": all_of(*owner, completed, upcoming),
                }

            results = await asyncio.gather(*(self._guarded_count(name, where) for name, where in branches.items()))
            values = dict(zip(branches, results, strict=True))

            def value(name: str) -> int:
                return values.get(name) or 0

            today_count = value("active-today") + value("completed-today")
            overdue_count = value("active-overdue") + value("completed-overdue")
            counts = FilterCounts(
                all=value("all"),
                focus=today_count + overdue_count,
                today=today_count,
                overdue=overdue_count,
                upcoming=value("active-upcoming") + value("completed-upcoming"),
                no_due_date=value("active-no-due-date"),
            )

            failed = [name for name, result in values.items() if result is None]
            if failed:
                logger.warning(
                    "Returning degraded filter counts",
                    extra={"user_id": user_id, "failed_branches": failed},
                )
            else:
                await self._set_cached_counts(cache_key, counts)

            return counts

    async def _get_cached_counts(self, cache_key: str) -> FilterCounts | None:
        if self._cache is None:
            return None
        try:
            cached_value = await self._cache.get(cache_key)
            if cached_value:
                return FilterCounts.model_validate(json.loads(cached_value))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Failed to deserialize cached filter counts", extra={"error": str(e)})
        except Exception as e:
            logger.warning("Failed to retrieve cached filter counts", extra={"error": str(e)})
        return None

    async def _set_cached_counts(self, cache_key: str, counts: FilterCounts) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.set(cache_key, counts.model_dump_json(), Constants.CACHE_TTL_FILTER_COUNTS_SECONDS)
        except Exception as e:
            logger.warning("Failed to cache filter counts", extra={"error": str(e)})

    async def invalidate_counts(self, tenant_id: str, user_id: str) -> None:
        """Drop memoised counts after a user's tasks change."""
        if self._cache is None:
            return
        try:
            await self._cache.delete(f"{_CACHE_KEY_PREFIX}:{tenant_id}:{user_id}")
        except Exception as e:
            logger.warning("Failed to invalidate filter counts", extra={"error": str(e)})

    async def refresh_filters_for_timezone(self, timezone_id: str) -> None:
        """Called when midnight passes in ``timezone_id`` so boundaries are recomputed."""
        cleared = self._timezones.clear_timezone_cache(timezone_id)
        logger.info("Refreshed filters for timezone", extra={"timezone": timezone_id, "cleared_users": cleared})
