"""Resilient execution of backing-store operations.

Every store call made by the timezone resolver and the filter engine goes
through ``ResilientStoreClient.with_retry``, which:

- checks (or re-checks) connection health before running anything,
- queues the operation so at most ``queue_concurrency`` run at once, in
  batches separated by a short delay,
- bounds each attempt with a timeout and retries with exponential backoff,
- re-raises non-retryable failures (auth, validation, syntax) immediately,
- resets the connection pool on exhaustion and reconnects on connection errors.

Queued operations must not call ``with_retry`` themselves: a batch waits for
all of its members, so a nested call would wait behind its own parent.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeVar

from taskscope.core.config import Constants, Settings, settings as default_settings
from taskscope.core.errors import (
    RetryExhaustedError,
    StoreErrorKind,
    StoreUnavailableError,
    classify_store_error,
)
from taskscope.models.service_models import ConnectionStats, HealthStatus


logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreBackend(Protocol):
    """Connection lifecycle hooks the client needs from a store."""

    async def connect(self) -> None: ...

    async def ping(self) -> bool: ...

    async def reset_pool(self) -> None: ...

    async def close(self) -> None: ...


@dataclass
class RetryConfig:
    """Configuration for retry, timeout and queueing behavior."""

    max_retries: int = 3
    base_delay: float = 0.3
    operation_timeout: float = 6.0
    health_check_interval: float = 30.0
    queue_concurrency: int = Constants.QUEUE_CONCURRENCY_DEVELOPMENT
    batch_delay: float = Constants.QUEUE_BATCH_DELAY_SECONDS

    @classmethod
    def from_settings(cls, app_settings: Settings | None = None) -> "RetryConfig":
        app_settings = app_settings or default_settings
        return cls(
            max_retries=app_settings.store_max_retries,
            base_delay=app_settings.store_base_delay_seconds,
            operation_timeout=app_settings.store_operation_timeout_seconds,
            health_check_interval=app_settings.store_health_check_interval_seconds,
            queue_concurrency=app_settings.queue_concurrency,
        )


class ConnectionState(Enum):
    """Connection states."""

    IDLE = "idle"  # Never checked
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"  # Reconnecting


@dataclass
class ConnectionHealthState:
    """Health flag plus when it was last confirmed by a ping."""

    healthy: bool = False
    last_checked: float | None = None

    @property
    def state(self) -> ConnectionState:
        if self.last_checked is None and not self.healthy:
            return ConnectionState.IDLE
        return ConnectionState.HEALTHY if self.healthy else ConnectionState.UNHEALTHY


@dataclass(eq=False)
class PendingOperation:
    """A queued unit of store work awaiting a slot."""

    label: str
    run: Callable[[], Awaitable[Any]]
    future: asyncio.Future = field(repr=False)


class ResilientStoreClient:
    """Executes store operations with retries, timeouts and bounded concurrency."""

    def __init__(self, store: StoreBackend, config: RetryConfig | None = None) -> None:
        self._store = store
        self.config = config or RetryConfig()
        self._health = ConnectionHealthState()
        self._queue: deque[PendingOperation] = deque()
        self._in_flight: set[PendingOperation] = set()
        self._processor: asyncio.Task | None = None
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        return self._health.state

    @property
    def is_healthy(self) -> bool:
        return self._health.healthy

    def calculate_delay(self, attempt: int) -> float:
        """Backoff before the retry that follows ``attempt`` (1-indexed)."""
        return self.config.base_delay * (2 ** (attempt - 1))

    def _mark_healthy(self) -> None:
        self._health.healthy = True
        self._health.last_checked = time.monotonic()

    def _mark_unhealthy(self) -> None:
        self._health.healthy = False
        self._health.last_checked = time.monotonic()

    async def with_retry(self, operation: Callable[[], Awaitable[T]], label: str = "database operation") -> T:
        """Run ``operation`` through the queue with retry and backoff.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt
            label: Name used in logs and in the exhaustion error

        Returns:
            Whatever the operation returns

        Raises:
            StoreUnavailableError: If no healthy connection can be established
            StoreError: Immediately, for non-retryable kinds
            RetryExhaustedError: When every attempt failed
        """
        if self._closed:
            raise StoreUnavailableError("Store client is closed")

        await self.ensure_healthy_connection()
        return await self._enqueue(label, lambda: self._execute_with_retry(operation, label))

    async def _execute_with_retry(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        last_error: Exception | None = None
        max_retries = self.config.max_retries

        for attempt in range(1, max_retries + 1):
            try:
                result = await asyncio.wait_for(operation(), timeout=self.config.operation_timeout)
            except Exception as e:
                last_error = e
                kind = classify_store_error(e)

                logger.warning(
                    "Store operation failed",
                    extra={
                        "label": label,
                        "attempt": attempt,
                        "max_retries": max_retries,
                        "kind": kind.value,
                        "error": str(e),
                    },
                )

                if not kind.is_retryable:
                    logger.info("Not retrying non-retryable store error", extra={"label": label, "kind": kind.value})
                    raise

                if kind.is_connection:
                    self._mark_unhealthy()
                    if kind is StoreErrorKind.POOL_EXHAUSTED:
                        await self._cleanup_pool(label)
                    await self._reconnect(label)

                if attempt < max_retries:
                    delay = self.calculate_delay(attempt)
                    logger.info(
                        "Retrying store operation",
                        extra={"label": label, "next_attempt": attempt + 1, "delay_seconds": delay},
                    )
                    await asyncio.sleep(delay)
            else:
                self._mark_healthy()
                if attempt > 1:
                    logger.info(
                        "Store operation succeeded after retry",
                        extra={"label": label, "total_attempts": attempt},
                    )
                return result

        self._mark_unhealthy()
        logger.error(
            "Store operation failed after all retries",
            extra={"label": label, "attempts": max_retries, "error": str(last_error)},
        )
        raise RetryExhaustedError(label, max_retries, last_error) from last_error

    async def _cleanup_pool(self, label: str) -> None:
        logger.warning("Connection pool exhaustion detected, cleaning up", extra={"label": label})
        try:
            await self._store.reset_pool()
        except Exception as e:
            logger.warning("Connection pool cleanup failed", extra={"label": label, "error": str(e)})

    async def _reconnect(self, label: str) -> None:
        try:
            await self._store.connect()
        except Exception as e:
            logger.warning("Failed to reconnect", extra={"label": label, "error": str(e)})

    async def _enqueue(self, label: str, run: Callable[[], Awaitable[T]]) -> T:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.append(PendingOperation(label=label, run=run, future=future))
        if self._processor is None or self._processor.done():
            self._processor = asyncio.create_task(self._process_queue())
        return await future

    async def _process_queue(self) -> None:
        """Drain the queue in batches of ``queue_concurrency``."""
        while self._queue:
            batch_size = min(self.config.queue_concurrency, len(self._queue))
            batch = [self._queue.popleft() for _ in range(batch_size)]
            self._in_flight.update(batch)
            try:
                await asyncio.gather(*(self._run_pending(pending) for pending in batch))
            finally:
                self._in_flight.difference_update(batch)

            # Small pause between batches so bursts don't hit the store all at once
            if self._queue:
                await asyncio.sleep(self.config.batch_delay)

    @staticmethod
    async def _run_pending(pending: PendingOperation) -> None:
        if pending.future.done():
            # Caller stopped waiting before the operation got a slot
            return
        try:
            result = await pending.run()
        except Exception as e:
            if not pending.future.done():
                pending.future.set_exception(e)
        else:
            if not pending.future.done():
                pending.future.set_result(result)

    async def health_check(self) -> HealthStatus:
        """Ping the store unless a recent successful check is still trusted."""
        now = time.monotonic()
        last_checked = self._health.last_checked
        if self._health.healthy and last_checked is not None and now - last_checked < self.config.health_check_interval:
            return HealthStatus(healthy=True, cached=True)

        start = time.perf_counter()
        try:
            healthy = bool(await asyncio.wait_for(self._store.ping(), timeout=self.config.operation_timeout))
        except Exception as e:
            self._mark_unhealthy()
            logger.warning("Store health check failed", extra={"error": str(e)})
            return HealthStatus(healthy=False, error=str(e))

        latency_ms = (time.perf_counter() - start) * 1000
        if healthy:
            self._mark_healthy()
        else:
            self._mark_unhealthy()
        return HealthStatus(healthy=healthy, latency_ms=latency_ms)

    async def ensure_healthy_connection(self) -> None:
        """Make sure the store is reachable, reconnecting once if the ping fails.

        Raises:
            StoreUnavailableError: If the store stays unreachable after reconnecting
        """
        health = await self.health_check()
        if health.healthy:
            return

        try:
            await self._store.connect()
            reachable = await asyncio.wait_for(self._store.ping(), timeout=self.config.operation_timeout)
        except Exception as e:
            self._mark_unhealthy()
            logger.error("Failed to establish healthy database connection", extra={"error": str(e)})
            raise StoreUnavailableError() from e

        if not reachable:
            self._mark_unhealthy()
            logger.error("Failed to establish healthy database connection", extra={"error": "ping returned no row"})
            raise StoreUnavailableError()

        self._mark_healthy()
        logger.info("Database connection re-established")

    def get_connection_stats(self) -> ConnectionStats:
        last_checked = self._health.last_checked
        return ConnectionStats(
            is_healthy=self._health.healthy,
            last_health_check=last_checked,
            seconds_since_last_check=(time.monotonic() - last_checked) if last_checked is not None else None,
            queue_length=len(self._queue),
            is_processing_queue=self._processor is not None and not self._processor.done(),
            queue_concurrency=self.config.queue_concurrency,
        )

    def _fail_pending(self, reason: str, *, include_in_flight: bool = False) -> int:
        doomed = list(self._queue)
        self._queue.clear()
        if include_in_flight:
            doomed.extend(self._in_flight)

        failed = 0
        for pending in doomed:
            if not pending.future.done():
                pending.future.set_exception(StoreUnavailableError(reason))
                failed += 1
        return failed

    async def force_cleanup(self) -> None:
        """Drop queued work and reset the connection pool (emergency use)."""
        logger.warning("Force cleaning up database connections")
        self._mark_unhealthy()
        dropped = self._fail_pending("Operation queue was cleared")
        if dropped:
            logger.warning("Dropped queued operations", extra={"count": dropped})
        await self._store.reset_pool()

    async def close(self) -> None:
        """Stop the queue and close the underlying store."""
        self._closed = True
        # Running operations are cancelled below, so their callers are failed here
        self._fail_pending("Store client is closed", include_in_flight=True)
        if self._processor is not None and not self._processor.done():
            self._processor.cancel()
            try:
                await self._processor
            except asyncio.CancelledError:
                pass
        self._processor = None
        self._health = ConnectionHealthState()
        await self._store.close()
