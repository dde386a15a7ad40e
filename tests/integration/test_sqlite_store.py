"""Integration tests for the SQLite task store and the engine running on it."""

import sqlite3
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import aiosqlite
import pytest

from taskscope.core.errors import StoreError, StoreErrorKind
from taskscope.core.query import OrderBy, all_of, contains, eq, is_null
from taskscope.domain.task import PRIORITY_RANK, TaskPriority, TaskStatus
from taskscope.main import TaskScope
from taskscope.models.service_models import FilterCounts
from tests.unit.mocks import FIXED_NOW


TENANT = "tenant-1"
USER = "user-1"


def at(day: int, hour: int = 12) -> datetime:
    return datetime(2024, 3, day, hour, tzinfo=UTC)


async def seed(db, title: str, **fields):
    return await db.create_task({"tenant_id": TENANT, "user_id": USER, "title": title, **fields})


@pytest.mark.integration
class TestDatabaseClient:
    async def test_ping(self, db):
        assert await db.ping()
        assert db.is_connected

    async def test_create_and_list_round_trip(self, db):
        created = await seed(db, "Write report", priority="high", due_date=at(10, 18), tags=["work"])

        tasks = await db.list_tasks(where=eq("id", created.id), limit=10)

        assert len(tasks) == 1
        task = tasks[0]
        assert task.title == "Write report"
        assert task.priority == TaskPriority.HIGH
        assert task.due_date == at(10, 18)
        assert task.tags == ["work"]

    async def test_contains_is_case_insensitive_and_literal(self, db):
        await seed(db, "50% off sale")
        await seed(db, "500 items")
        await seed(db, "Quarterly REPORT")

        discount = await db.list_tasks(where=contains("title", "0%"), limit=10)
        report = await db.list_tasks(where=contains("title", "report"), limit=10)

        assert [t.title for t in discount] == ["50% off sale"]
        assert [t.title for t in report] == ["Quarterly REPORT"]

    async def test_ordering_with_ranks_and_nulls_last(self, db):
        await seed(db, "low dated", priority="low", due_date=at(11))
        await seed(db, "urgent undated", priority="urgent")
        await seed(db, "urgent dated", priority="urgent", due_date=at(12))

        tasks = await db.list_tasks(
            where=eq("tenant_id", TENANT),
            order_by=(OrderBy("priority", descending=True, rank=PRIORITY_RANK), OrderBy("due_date", nulls_last=True)),
            limit=10,
        )

        assert [t.title for t in tasks] == ["urgent dated", "urgent undated", "low dated"]

    async def test_limit_offset_and_count(self, db):
        for i in range(5):
            await seed(db, f"task {i}")

        page = await db.list_tasks(where=eq("tenant_id", TENANT), limit=2, offset=4)

        assert len(page) == 1
        assert await db.count_tasks(where=eq("tenant_id", TENANT)) == 5
        assert await db.count_tasks(where=all_of(eq("tenant_id", TENANT), is_null("due_date"))) == 5

    async def test_completion_constraint_is_a_validation_error(self, db):
        with pytest.raises(StoreError) as exc_info:
            await seed(db, "bad", status="completed")

        assert exc_info.value.kind == StoreErrorKind.VALIDATION

    async def test_unknown_column_is_a_syntax_error(self, db):
        with pytest.raises(StoreError) as exc_info:
            await db.count_tasks(where=eq("no_such_field", 1))

        assert exc_info.value.kind == StoreErrorKind.SYNTAX

    async def test_preferences_merge_and_keep_unknown_keys(self, db):
        assert (await db.get_user_preferences("u1")).timezone is None

        await db.update_user_preferences("u1", {"timezone": "Asia/Tokyo", "theme": "dark"})
        prefs = await db.update_user_preferences("u1", {"completedTaskVisibility": "30days"})

        assert prefs.timezone == "Asia/Tokyo"
        assert prefs.completed_task_visibility.days == 30
        stored = await db.get_user_preferences("u1")
        assert stored.model_dump()["theme"] == "dark"

    async def test_reset_pool_reconnects_lazily(self, db):
        await seed(db, "survives")

        await db.reset_pool()
        assert not db.is_connected

        assert await db.count_tasks(where=eq("tenant_id", TENANT)) == 1
        assert db.is_connected


@pytest.mark.integration
class TestResilienceOnSqlite:
    async def test_pool_exhaustion_resets_and_retries(self, db, store_client):
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise sqlite3.OperationalError("too many connections")
            return await db.count_tasks(where=eq("tenant_id", TENANT))

        with patch.object(db, "reset_pool", wraps=db.reset_pool) as reset_pool:
            assert await store_client.with_retry(operation, "count") == 0

        assert calls == 2
        reset_pool.assert_awaited_once()
        assert db.is_connected

    async def test_syntax_error_is_not_retried(self, db, store_client):
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            return await db.count_tasks(where=eq("no_such_field", 1))

        with pytest.raises(StoreError):
            await store_client.with_retry(operation, "bad-query")

        assert calls == 1


@pytest.mark.integration
class TestEngineOnSqlite:
    async def test_today_with_recently_completed(self, db, filter_engine):
        await db.update_user_preferences(USER, {"timezone": "America/New_York"})
        await seed(db, "active today", due_date=at(10, 18))
        await seed(
            db,
            "completed earlier",
            status="completed",
            due_date=at(10, 20),
            completed_at=FIXED_NOW - timedelta(days=3),
        )
        await seed(db, "tomorrow", due_date=at(11, 12))

        page = await filter_engine.get_filtered_tasks(
            TENANT, USER, {"dueDate": "today", "includeCompleted": "7days"}
        )

        assert [t.title for t in page.tasks] == ["active today", "completed earlier"]
        assert page.tasks[1].status == TaskStatus.COMPLETED
        assert page.total_count == 2

    async def test_counts_aggregate_law(self, db, filter_engine):
        await db.update_user_preferences(USER, {"timezone": "UTC"})
        await seed(db, "today", due_date=at(10, 10))
        await seed(db, "overdue", due_date=at(8))
        await seed(db, "upcoming", due_date=at(12))
        await seed(db, "undated")
        await seed(db, "done today", status="completed", due_date=at(10, 9), completed_at=at(10, 11))

        counts = await filter_engine.get_filter_counts(TENANT, USER)

        assert counts == FilterCounts(all=5, focus=3, today=2, overdue=1, upcoming=1, no_due_date=1)
        assert counts.focus == counts.today + counts.overdue

    async def test_unreadable_row_is_left_out_of_the_page(self, db, db_path, filter_engine):
        await db.update_user_preferences(USER, {"timezone": "UTC"})
        await seed(db, "readable")
        stamp = FIXED_NOW.isoformat()
        async with aiosqlite.connect(db_path) as raw:
            await raw.execute(
                "INSERT INTO tasks (id, tenant_id, user_id, title, due_date, created_at, updated_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                ("corrupt", TENANT, USER, "corrupt", "not-a-date", stamp, stamp),
            )
            await raw.commit()

        page = await filter_engine.get_filtered_tasks(TENANT, USER, {})

        assert [t.title for t in page.tasks] == ["readable"]
        # The count query does not decode rows, so the skipped row is still counted
        assert page.total_count == 2

    async def test_missing_timezone_is_detected_and_stored(self, db, timezone_resolver):
        assert await timezone_resolver.get_user_timezone("fresh-user") == "UTC"

        assert (await db.get_user_preferences("fresh-user")).timezone == "UTC"


@pytest.mark.integration
class TestTaskScope:
    async def test_lifecycle_and_public_surface(self, test_settings):
        with patch("taskscope.main.configure_logfire") as configure:
            async with TaskScope(test_settings) as scope:
                configure.assert_called_once_with(test_settings)

                assert await scope.get_user_timezone(USER) == "Europe/Paris"
                boundaries = await scope.get_date_boundaries(USER, 7)
                assert boundaries.completed_cutoff <= boundaries.today_start

                await scope.with_retry(lambda: seed(scope.db, "via facade", due_date=datetime.now(UTC)), "seed")
                page = await scope.get_filtered_tasks(TENANT, USER, {"dueDate": "today"})
                counts = await scope.get_filter_counts(TENANT, USER)

                assert [t.title for t in page.tasks] == ["via facade"]
                assert counts.today == 1
                assert await scope.get_filter_counts(TENANT, USER) == counts
                assert scope.cache.get_health_status()["writes"] == 1
                assert scope.cache.get_health_status()["hits"] == 1

        assert not scope.db.is_connected
