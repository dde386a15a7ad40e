"""Timezone resolution and calendar boundary service.

This module resolves each user's IANA timezone and computes the UTC instants
that bound "today", "tomorrow", "this week" and the "recently completed" cutoff
in that timezone.

Key Concepts:
- Timezone cache: per-instance map of user id to validated identifier with a
  TTL. When the store cannot be read, the last known value is served even if
  it has expired, then "UTC".
- Boundaries: local midnights converted to UTC with the timezone database, so
  days that are 23 or 25 hours long around DST transitions come out right.
- Nothing here raises to the caller: every failure degrades to a usable value
  and is logged.
"""

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time as dt_time, timedelta, tzinfo
from typing import Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

from taskscope.core.config import Constants, settings
from taskscope.core.logging import span
from taskscope.core.store_client import ResilientStoreClient
from taskscope.domain.user import UserPreferences
from taskscope.models.service_models import DateBoundaries


logger = logging.getLogger(__name__)

FALLBACK_TIMEZONE = "UTC"

_ISO_DATE_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_NUMERIC_DATE_PATTERN = re.compile(r"(\d{4})\D(\d{1,2})\D(\d{1,2})")


class PreferenceStore(Protocol):
    """Where user preferences are read from and written back to."""

    async def get_user_preferences(self, user_id: str) -> UserPreferences: ...

    async def update_user_preferences(self, user_id: str, changes: dict[str, Any]) -> UserPreferences: ...


@dataclass
class TimezoneCacheEntry:
    """A resolved timezone and the monotonic instant it expires at."""

    timezone: str
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


def _load_zone(timezone_id: Any) -> ZoneInfo | None:  # noqa: ANN401
    if not isinstance(timezone_id, str) or not timezone_id.strip():
        return None
    try:
        return ZoneInfo(timezone_id.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError):
        # OSError covers keys that name a directory in the tz database
        return None


def _local_midnight_utc(day: date, zone: tzinfo) -> datetime:
    """First instant of ``day`` in ``zone``, as a UTC datetime."""
    return datetime.combine(day, dt_time.min, tzinfo=zone).astimezone(UTC)


def _parse_iso_date_in_zone(value: str, zone: tzinfo) -> datetime:
    match = _ISO_DATE_PATTERN.match(value)
    if not match:
        msg = f"Not a YYYY-MM-DD date: {value!r}"
        raise ValueError(msg)
    return _local_midnight_utc(date(*(int(part) for part in match.groups())), zone)


def _parse_generic(value: str, zone: tzinfo) -> datetime:  # noqa: ARG001
    parsed = date_parser.parse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _parse_numeric_parts(value: str, zone: tzinfo) -> datetime:  # noqa: ARG001
    match = _NUMERIC_DATE_PATTERN.search(value)
    if not match:
        msg = f"No year-month-day parts in {value!r}"
        raise ValueError(msg)
    year, month, day = (int(part) for part in match.groups())
    return datetime(year, month, day, tzinfo=UTC)


# Tried in order; the first one that produces a datetime wins
DATE_PARSE_STRATEGIES: tuple[tuple[str, Callable[[str, tzinfo], datetime]], ...] = (
    ("zone_midnight", _parse_iso_date_in_zone),
    ("generic_parse", _parse_generic),
    ("numeric_parts_utc", _parse_numeric_parts),
)


def _clamp_window(days: Any) -> int:  # noqa: ANN401
    """Bound a completed-task window to ``[0, MAX_COMPLETED_WINDOW_DAYS]``."""
    try:
        days = int(days)
    except (TypeError, ValueError, OverflowError):
        return Constants.DEFAULT_COMPLETED_WINDOW_DAYS
    return max(0, min(days, Constants.MAX_COMPLETED_WINDOW_DAYS))


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TimezoneResolver:
    """Resolves user timezones and the UTC boundaries of their calendar days."""

    def __init__(
        self,
        store_client: ResilientStoreClient,
        preferences: PreferenceStore,
        *,
        now: Callable[[], datetime] | None = None,
        cache_ttl_seconds: float = Constants.TIMEZONE_CACHE_TTL_SECONDS,
        default_timezone: str | None = None,
    ) -> None:
        self._store_client = store_client
        self._preferences = preferences
        self._now_fn = now or _utc_now
        self._cache_ttl = cache_ttl_seconds
        self._cache: dict[str, TimezoneCacheEntry] = {}
        self._default_timezone = self.validate_timezone(default_timezone or settings.default_timezone)

    def _now(self) -> datetime:
        current = self._now_fn()
        if current.tzinfo is None:
            current = current.replace(tzinfo=UTC)
        return current

    @staticmethod
    def validate_timezone(timezone_id: Any) -> str:  # noqa: ANN401
        """Return the trimmed identifier if the tz database knows it, else "UTC"."""
        if _load_zone(timezone_id) is None:
            return FALLBACK_TIMEZONE
        return timezone_id.strip()

    async def get_user_timezone(self, user_id: str) -> str:
        """Resolve a user's timezone.

        Args:
            user_id: User whose preference to read

        Returns:
            A valid IANA identifier, or "UTC"
        """
        if not user_id:
            return FALLBACK_TIMEZONE

        entry = self._cache.get(user_id)
        if entry is not None and entry.is_fresh(time.monotonic()):
            return entry.timezone

        try:
            prefs = await self._store_client.with_retry(
                lambda: self._preferences.get_user_preferences(user_id),
                "getUserTimezone",
            )
        except Exception as e:
            return self._fallback_timezone(user_id, entry, e)

        if prefs.timezone:
            timezone = self.validate_timezone(prefs.timezone)
            if timezone != prefs.timezone.strip():
                logger.warning(
                    "Stored timezone is invalid",
                    extra={"user_id": user_id, "stored": prefs.timezone, "using": timezone},
                )
        else:
            timezone = await self._detect_and_set_default(user_id)

        self._cache[user_id] = TimezoneCacheEntry(timezone, time.monotonic() + self._cache_ttl)
        return timezone

    def _fallback_timezone(self, user_id: str, stale: TimezoneCacheEntry | None, error: Exception) -> str:
        candidates = (
            ("stale_cache", stale.timezone if stale is not None else None),
            ("utc", FALLBACK_TIMEZONE),
        )
        for source, timezone in candidates:
            if timezone:
                logger.warning(
                    "Falling back for user timezone",
                    extra={"user_id": user_id, "source": source, "timezone": timezone, "error": str(error)},
                )
                return timezone
        return FALLBACK_TIMEZONE

    async def _detect_and_set_default(self, user_id: str) -> str:
        """Pick the deployment default for a user with no timezone and try to store it."""
        timezone = self._default_timezone
        try:
            await self._store_client.with_retry(
                lambda: self._preferences.update_user_preferences(user_id, {"timezone": timezone}),
                "setDefaultTimezone",
            )
            logger.info("Set default timezone for user", extra={"user_id": user_id, "timezone": timezone})
        except Exception as e:
            logger.warning(
                "Failed to persist default timezone",
                extra={"user_id": user_id, "timezone": timezone, "error": str(e)},
            )
        return timezone

    def get_current_date_in_timezone(self, timezone_id: str) -> date:
        """Today's calendar date in ``timezone_id`` (UTC date if the zone is unknown)."""
        zone = _load_zone(timezone_id) or UTC
        return self._now().astimezone(zone).date()

    def _compute_boundaries(self, zone: tzinfo, completed_window_days: int) -> DateBoundaries:
        today = self._now().astimezone(zone).date()
        today_start = _local_midnight_utc(today, zone)
        tomorrow_start = _local_midnight_utc(today + timedelta(days=1), zone)
        return DateBoundaries(
            today_start=today_start,
            today_end=tomorrow_start,
            tomorrow_start=tomorrow_start,
            week_from_now=_local_midnight_utc(today + timedelta(days=7), zone),
            completed_cutoff=_local_midnight_utc(today - timedelta(days=completed_window_days), zone),
        )

    async def get_date_boundaries(
        self,
        user_id: str,
        completed_window_days: int = Constants.DEFAULT_COMPLETED_WINDOW_DAYS,
    ) -> DateBoundaries:
        """Compute the boundary set for a user's current day.

        Args:
            user_id: User whose timezone defines "today"
            completed_window_days: How many days back completed tasks stay visible,
                clamped to ``[0, MAX_COMPLETED_WINDOW_DAYS]``

        Returns:
            DateBoundaries in UTC
        """
        window = _clamp_window(completed_window_days)
        with span("timezone_service.get_date_boundaries"):
            timezone = await self.get_user_timezone(user_id)
            try:
                return self._compute_boundaries(ZoneInfo(timezone), window)
            except Exception as e:
                logger.error(
                    "Falling back to UTC date boundaries",
                    extra={"user_id": user_id, "timezone": timezone, "error": str(e)},
                )
                return self._compute_boundaries(UTC, window)

    def convert_to_utc(self, date_string: str, timezone_id: str) -> datetime:
        """Convert a ``YYYY-MM-DD`` date to the UTC instant of its midnight in ``timezone_id``.

        Malformed input is run through ``DATE_PARSE_STRATEGIES`` in order and
        ends at the current instant if nothing parses.
        """
        zone = _load_zone(timezone_id) or UTC
        text = date_string.strip() if isinstance(date_string, str) else ""

        for position, (name, strategy) in enumerate(DATE_PARSE_STRATEGIES):
            try:
                result = strategy(text, zone)
            except (ValueError, TypeError, OverflowError) as e:
                logger.debug("Date parse strategy failed", extra={"strategy": name, "input": text, "error": str(e)})
                continue
            if position > 0:
                logger.warning("Used date parse fallback", extra={"strategy": name, "input": text})
            return result

        logger.warning("Used date parse fallback", extra={"strategy": "current_instant", "input": text})
        return self._now().astimezone(UTC)

    def is_midnight_in_timezone(self, timezone_id: str) -> bool:
        """Whether the wall clock in ``timezone_id`` currently reads 00:00."""
        zone = _load_zone(timezone_id)
        if zone is None:
            return False
        local = self._now().astimezone(zone)
        return local.hour == 0 and local.minute == 0

    async def get_completed_task_window(self, user_id: str) -> int:
        """Days of completed tasks the user wants to see (7 if unknown)."""
        try:
            prefs = await self._store_client.with_retry(
                lambda: self._preferences.get_user_preferences(user_id),
                "getCompletedTaskWindow",
            )
        except Exception as e:
            logger.warning("Using default completed task window", extra={"user_id": user_id, "error": str(e)})
            return Constants.DEFAULT_COMPLETED_WINDOW_DAYS
        return prefs.completed_task_visibility.days

    def clear_user_cache(self, user_id: str) -> None:
        self._cache.pop(user_id, None)

    def clear_timezone_cache(self, timezone_id: str) -> int:
        """Drop every cached user resolved to ``timezone_id``; returns how many."""
        stale = [user_id for user_id, entry in self._cache.items() if entry.timezone == timezone_id]
        for user_id in stale:
            del self._cache[user_id]
        return len(stale)

    def clear_all_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)
