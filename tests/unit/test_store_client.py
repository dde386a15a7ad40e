"""Unit tests for the resilient store client."""

import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest

from taskscope.core.errors import (
    RetryExhaustedError,
    StoreError,
    StoreErrorKind,
    StoreUnavailableError,
)
from taskscope.core.store_client import ConnectionState, ResilientStoreClient, RetryConfig


def connection_error(message: str = "connection refused") -> StoreError:
    return StoreError(message, kind=StoreErrorKind.CONNECTION)


@pytest.mark.unit
class TestWithRetry:
    """Retry, classification and backoff behaviour."""

    @pytest.fixture(autouse=True)
    def mock_asyncio_sleep(self):
        """Mock asyncio.sleep to avoid actual delays in retry tests."""
        with patch("taskscope.core.store_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            yield mock_sleep

    @pytest.fixture
    def client(self, task_store):
        config = RetryConfig(max_retries=3, base_delay=0.01, operation_timeout=1.0, queue_concurrency=3)
        return ResilientStoreClient(task_store, config)

    def test_calculate_delay_exponential_backoff(self, client):
        assert client.calculate_delay(1) == 0.01
        assert client.calculate_delay(2) == 0.02
        assert client.calculate_delay(3) == 0.04

    async def test_success_first_attempt(self, client):
        operation = AsyncMock(return_value="ok")

        result = await client.with_retry(operation, "read")

        assert result == "ok"
        assert operation.await_count == 1
        assert client.state == ConnectionState.HEALTHY

    @pytest.mark.parametrize("failures", [1, 2])
    async def test_k_failures_then_success_runs_k_plus_one_attempts(self, client, failures):
        operation = AsyncMock(side_effect=[connection_error() for _ in range(failures)] + ["ok"])

        result = await client.with_retry(operation, "read")

        assert result == "ok"
        assert operation.await_count == failures + 1

    async def test_connection_error_twice_then_success(self, client, task_store, mock_asyncio_sleep):
        """Two classified connection errors, then success on the third attempt."""
        operation = AsyncMock(side_effect=[connection_error(), connection_error(), {"id": "t1"}])

        result = await client.with_retry(operation, "getFilteredTasks-findMany")

        assert result == {"id": "t1"}
        assert operation.await_count == 3
        # One reconnect per connection failure
        assert task_store.connect_calls == 2
        assert [c.args[0] for c in mock_asyncio_sleep.await_args_list] == [0.01, 0.02]
        assert client.is_healthy

    async def test_retry_logs_are_sentences_with_context_in_extra(self, client, caplog):
        operation = AsyncMock(side_effect=[connection_error(), "ok"])

        with caplog.at_level(logging.INFO, logger="taskscope.core.store_client"):
            await client.with_retry(operation, "read")

        records = [r for r in caplog.records if r.name == "taskscope.core.store_client"]
        messages = [record.getMessage() for record in records]
        assert messages == [
            "Store operation failed",
            "Retrying store operation",
            "Store operation succeeded after retry",
        ]
        assert records[0].label == "read"
        assert records[0].kind == StoreErrorKind.CONNECTION.value
        assert records[1].next_attempt == 2

    @pytest.mark.parametrize("kind", [StoreErrorKind.AUTH, StoreErrorKind.VALIDATION, StoreErrorKind.SYNTAX])
    async def test_non_retryable_runs_once_and_propagates(self, client, kind, mock_asyncio_sleep):
        error = StoreError("rejected", kind=kind)
        operation = AsyncMock(side_effect=error)

        with pytest.raises(StoreError) as exc_info:
            await client.with_retry(operation, "write")

        assert exc_info.value is error
        assert operation.await_count == 1
        mock_asyncio_sleep.assert_not_awaited()

    async def test_unclassified_driver_error_is_classified(self, client):
        """Raw exceptions are classified too: a permission error is not retried."""
        operation = AsyncMock(side_effect=PermissionError("permission denied for table tasks"))

        with pytest.raises(PermissionError):
            await client.with_retry(operation, "write")

        assert operation.await_count == 1

    async def test_pool_exhaustion_cleans_up_once_before_next_attempt(self, client, task_store):
        attempts: list[int] = []

        async def operation():
            attempts.append(len(attempts) + 1)
            task_store.events.append(f"attempt-{len(attempts)}")
            if len(attempts) == 1:
                raise StoreError("too many connections", kind=StoreErrorKind.POOL_EXHAUSTED)
            return "ok"

        result = await client.with_retry(operation, "count")

        assert result == "ok"
        assert task_store.reset_pool_calls == 1
        assert task_store.events.index("reset_pool") < task_store.events.index("attempt-2")
        # Reconnect follows cleanup
        assert task_store.events.index("reset_pool") < task_store.events.index("connect")

    async def test_unknown_error_retried_without_reconnect(self, client, task_store):
        operation = AsyncMock(side_effect=[RuntimeError("weird"), "ok"])

        assert await client.with_retry(operation, "read") == "ok"
        assert task_store.connect_calls == 0
        assert task_store.reset_pool_calls == 0

    async def test_exhaustion_raises_descriptive_error(self, client, mock_asyncio_sleep):
        operation = AsyncMock(side_effect=connection_error("connection reset"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await client.with_retry(operation, "getFilterCounts-today")

        error = exc_info.value
        assert "getFilterCounts-today failed after 3 attempts" in str(error)
        assert error.attempts == 3
        assert error.kind == StoreErrorKind.CONNECTION
        assert operation.await_count == 3
        # No backoff after the final attempt
        assert mock_asyncio_sleep.await_count == 2
        assert not client.is_healthy

    async def test_reconnect_failure_does_not_stop_retries(self, client, task_store):
        task_store.fail_next("connect", ConnectionRefusedError("still down"))
        operation = AsyncMock(side_effect=[connection_error(), "ok"])

        assert await client.with_retry(operation, "read") == "ok"
        assert operation.await_count == 2

    async def test_each_attempt_is_bounded_by_timeout(self, task_store):
        client = ResilientStoreClient(
            task_store, RetryConfig(max_retries=2, base_delay=0.01, operation_timeout=0.01)
        )
        never = asyncio.Event()
        calls = 0

        async def stuck():
            nonlocal calls
            calls += 1
            await never.wait()

        with pytest.raises(RetryExhaustedError) as exc_info:
            await client.with_retry(stuck, "slow")

        assert calls == 2
        assert exc_info.value.kind == StoreErrorKind.TIMEOUT


@pytest.mark.unit
class TestHealth:
    async def test_first_call_pings_then_caches(self, store_client, task_store):
        first = await store_client.health_check()
        second = await store_client.health_check()

        assert first.healthy
        assert not first.cached
        assert first.latency_ms is not None
        assert second.cached
        assert task_store.ping_calls == 1

    async def test_initial_state_is_idle(self, store_client):
        assert store_client.state == ConnectionState.IDLE

    async def test_stale_check_is_repeated(self, task_store):
        client = ResilientStoreClient(task_store, RetryConfig(health_check_interval=0))

        await client.health_check()
        await client.health_check()

        assert task_store.ping_calls == 2

    async def test_recovered_connection_uses_cached_check(self, store_client, task_store):
        operation = AsyncMock(side_effect=[connection_error(), "ok", "ok"])
        await store_client.with_retry(operation, "first")
        pings_before = task_store.ping_calls

        await store_client.with_retry(operation, "second")

        # Success marked the connection healthy again
        assert task_store.ping_calls == pings_before

    async def test_unhealthy_state_is_rechecked(self, store_client, task_store):
        with pytest.raises(RetryExhaustedError):
            await store_client.with_retry(AsyncMock(side_effect=connection_error()), "first")
        pings_before = task_store.ping_calls

        await store_client.with_retry(AsyncMock(return_value="ok"), "second")

        assert task_store.ping_calls == pings_before + 1

    async def test_failing_ping_surfaces_connectivity_error(self, store_client, task_store):
        task_store.ping_result = False
        operation = AsyncMock(return_value="ok")

        with pytest.raises(StoreUnavailableError):
            await store_client.with_retry(operation, "read")

        operation.assert_not_awaited()
        assert store_client.state == ConnectionState.UNHEALTHY
        assert task_store.connect_calls == 1

    async def test_ping_error_recovered_by_reconnect(self, store_client, task_store):
        task_store.fail_next("ping", connection_error())

        await store_client.ensure_healthy_connection()

        assert task_store.connect_calls == 1
        assert store_client.is_healthy

    async def test_ping_error_reported_in_health_status(self, store_client, task_store):
        task_store.fail_next("ping", connection_error("connection refused"))

        status = await store_client.health_check()

        assert not status.healthy
        assert "connection refused" in status.error


@pytest.mark.unit
class TestQueue:
    async def test_concurrency_is_capped(self, store_client):
        in_flight = 0
        max_in_flight = 0
        release = asyncio.Event()

        async def operation():
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await release.wait()
            in_flight -= 1
            return "done"

        callers = [asyncio.create_task(store_client.with_retry(operation, f"op-{i}")) for i in range(7)]
        for _ in range(10):
            await asyncio.sleep(0)

        assert in_flight == 3
        stats = store_client.get_connection_stats()
        assert stats.queue_length == 4
        assert stats.is_processing_queue
        assert stats.queue_concurrency == 3

        release.set()
        results = await asyncio.gather(*callers)

        assert results == ["done"] * 7
        assert max_in_flight == 3
        assert store_client.get_connection_stats().queue_length == 0

    async def test_failure_reaches_only_its_caller(self, store_client):
        failing = AsyncMock(side_effect=StoreError("denied", kind=StoreErrorKind.AUTH))
        passing = AsyncMock(return_value="ok")

        results = await asyncio.gather(
            store_client.with_retry(failing, "bad"),
            store_client.with_retry(passing, "good"),
            return_exceptions=True,
        )

        assert isinstance(results[0], StoreError)
        assert results[1] == "ok"

    async def test_force_cleanup_fails_queued_operations(self, store_client, task_store):
        release = asyncio.Event()

        async def blocked():
            await release.wait()
            return "done"

        callers = [asyncio.create_task(store_client.with_retry(blocked, f"op-{i}")) for i in range(5)]
        for _ in range(10):
            await asyncio.sleep(0)

        await store_client.force_cleanup()
        release.set()
        results = await asyncio.gather(*callers, return_exceptions=True)

        assert results[:3] == ["done"] * 3
        assert all(isinstance(r, StoreUnavailableError) for r in results[3:])
        assert task_store.reset_pool_calls == 1

    async def test_close_fails_operations_already_running(self, store_client, task_store):
        started = asyncio.Event()

        async def slow():
            started.set()
            await asyncio.sleep(0.5)
            return "late"

        caller = asyncio.create_task(store_client.with_retry(slow, "slow"))
        await started.wait()

        await store_client.close()
        done, _ = await asyncio.wait({caller}, timeout=2.0)

        assert caller in done
        with pytest.raises(StoreUnavailableError):
            caller.result()
        assert task_store.closed
        assert store_client.get_connection_stats().queue_length == 0

    async def test_closed_client_rejects_operations(self, store_client, task_store):
        await store_client.close()

        with pytest.raises(StoreUnavailableError):
            await store_client.with_retry(AsyncMock(return_value="ok"), "late")

        assert task_store.closed
