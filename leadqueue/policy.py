"""Validated queue configuration.

The configuration collaborator hands us loosely typed values (environment
strings, a JSON document). They are parsed and checked here exactly once;
the engine only ever sees the frozen dataclasses below.
"""
import json
from dataclasses import dataclass, field
from datetime import date, time, timedelta
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from leadqueue import settings
from leadqueue.errors import ConfigurationError
from leadqueue.logging_conf import logger

DISTRIBUTE_NEXT_DAY = "distribute_next_day"
OVERFLOW_STRATEGIES = (DISTRIBUTE_NEXT_DAY,)

DEFAULTS: Dict[str, Any] = {
    "work_days": [1, 2, 3, 4, 5],
    "holidays": [],
    "business_hours_start": "09:00",
    "business_hours_end": "17:00",
    "timezone": "UTC",
    "daily_limit": 45,
    "weekly_limit": None,
    "max_attempts": 3,
    "retry_base_delay_seconds": 120,
    "horizon_days": 30,
    "batch_size": 10,
    "send_timeout_seconds": 30,
    "stale_after_minutes": 30,
    "overflow_strategy": DISTRIBUTE_NEXT_DAY,
    "respect_business_hours": True,
    "metrics_cache_seconds": 30,
    "success_window_days": 7,
}


@dataclass(frozen=True)
class BusinessDayPolicy:
    """Working weekdays (ISO, 1=Monday), holidays and opening hours."""

    work_days: FrozenSet[int] = frozenset({1, 2, 3, 4, 5})
    holidays: FrozenSet[date] = frozenset()
    start: time = time(9, 0)
    end: time = time(17, 0)
    timezone: str = "UTC"

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class QueueConfig:
    policy: BusinessDayPolicy = field(default_factory=BusinessDayPolicy)
    daily_limit: int = 45
    weekly_limit: Optional[int] = None
    max_attempts: int = 3
    retry_base_delay: timedelta = timedelta(minutes=2)
    horizon_days: int = 30
    batch_size: int = 10
    send_timeout: timedelta = timedelta(seconds=30)
    stale_after: timedelta = timedelta(minutes=30)
    overflow_strategy: str = DISTRIBUTE_NEXT_DAY
    respect_business_hours: bool = True
    metrics_cache_ttl: timedelta = timedelta(seconds=30)
    success_window: timedelta = timedelta(days=7)

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]] = None) -> "QueueConfig":
        """Parse and validate a flat mapping; unknown keys are rejected."""
        raw = dict(raw or {})
        unknown = sorted(set(raw) - set(DEFAULTS))
        if unknown:
            raise ConfigurationError(f"Unknown queue settings: {', '.join(unknown)}")
        values = {**DEFAULTS, **raw}
        errors = []

        def parse(key, parser):
            try:
                return parser(values[key])
            except (TypeError, ValueError) as e:
                errors.append(f"{key}: {e}")
                return None

        work_days = parse("work_days", _parse_int_set)
        holidays = parse("holidays", _parse_date_set)
        start = parse("business_hours_start", _parse_time)
        end = parse("business_hours_end", _parse_time)
        timezone = parse("timezone", _parse_timezone)
        daily_limit = parse("daily_limit", int)
        weekly_limit = parse("weekly_limit", _parse_optional_int)
        max_attempts = parse("max_attempts", int)
        retry_base = parse("retry_base_delay_seconds", float)
        horizon_days = parse("horizon_days", int)
        batch_size = parse("batch_size", int)
        send_timeout = parse("send_timeout_seconds", float)
        stale_after = parse("stale_after_minutes", float)
        overflow = parse("overflow_strategy", lambda v: str(v).strip().lower())
        respect_hours = parse("respect_business_hours", _parse_bool)
        cache_seconds = parse("metrics_cache_seconds", float)
        window_days = parse("success_window_days", int)

        if work_days is not None:
            if not work_days:
                errors.append("work_days: at least one work day must be selected")
            elif any(d < 1 or d > 7 for d in work_days):
                errors.append("work_days: must be ISO weekdays between 1 (Monday) and 7 (Sunday)")
        if start is not None and end is not None and start >= end:
            errors.append("business hours: start time must be before end time")
        if daily_limit is not None and daily_limit <= 0:
            errors.append("daily_limit: must be greater than 0")
        if weekly_limit is not None and daily_limit is not None and weekly_limit < daily_limit:
            errors.append("weekly_limit: must be at least equal to daily_limit")
        if max_attempts is not None and max_attempts < 1:
            errors.append("max_attempts: must be at least 1")
        if retry_base is not None and retry_base < 0:
            errors.append("retry_base_delay_seconds: must not be negative")
        if horizon_days is not None and horizon_days < 1:
            errors.append("horizon_days: must be at least 1")
        if batch_size is not None and batch_size < 1:
            errors.append("batch_size: must be at least 1")
        if send_timeout is not None and send_timeout <= 0:
            errors.append("send_timeout_seconds: must be positive")
        if stale_after is not None and stale_after <= 0:
            errors.append("stale_after_minutes: must be positive")
        if (stale_after is not None and send_timeout is not None and stale_after > 0
                and stale_after * 60 <= send_timeout):
            errors.append("stale_after_minutes: must be longer than send_timeout_seconds")
        if overflow is not None and overflow not in OVERFLOW_STRATEGIES:
            errors.append(f"overflow_strategy: unsupported value {overflow!r}")
        if cache_seconds is not None and cache_seconds < 0:
            errors.append("metrics_cache_seconds: must not be negative")
        if window_days is not None and window_days < 1:
            errors.append("success_window_days: must be at least 1")

        if errors:
            raise ConfigurationError("Queue config errors:\n  " + "\n  ".join(errors))

        return cls(
            policy=BusinessDayPolicy(
                work_days=frozenset(work_days),
                holidays=frozenset(holidays),
                start=start,
                end=end,
                timezone=timezone,
            ),
            daily_limit=daily_limit,
            weekly_limit=weekly_limit,
            max_attempts=max_attempts,
            retry_base_delay=timedelta(seconds=retry_base),
            horizon_days=horizon_days,
            batch_size=batch_size,
            send_timeout=timedelta(seconds=send_timeout),
            stale_after=timedelta(minutes=stale_after),
            overflow_strategy=overflow,
            respect_business_hours=respect_hours,
            metrics_cache_ttl=timedelta(seconds=cache_seconds),
            success_window=timedelta(days=window_days),
        )


def load_queue_config(path=None, overrides: Optional[Mapping[str, Any]] = None) -> QueueConfig:
    """Load the queue policy for one run.

    Sources, later ones winning: built-in defaults, the JSON file given by
    ``path`` or ``QUEUE_CONFIG_FILE``, the environment, ``overrides``.
    """
    raw: Dict[str, Any] = {}
    path = path or settings.QUEUE_CONFIG_FILE
    if path:
        try:
            with open(Path(path), "r") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read queue config {path}: {e}")
        if not isinstance(document, dict):
            raise ConfigurationError(f"Queue config {path} must be a JSON object")
        raw.update(document)
    raw.update(settings.queue_env_overrides())
    raw.update(overrides or {})

    config = QueueConfig.from_mapping(raw)
    logger.info(
        f"Queue config loaded: daily_limit={config.daily_limit}, "
        f"weekly_limit={config.weekly_limit}, work_days={sorted(config.policy.work_days)}, "
        f"hours={config.policy.start:%H:%M}-{config.policy.end:%H:%M} {config.policy.timezone}"
    )
    return config


def _split(value):
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return list(value)


def _parse_int_set(value):
    return {int(v) for v in _split(value)}


def _parse_date_set(value):
    return {v if isinstance(v, date) else date.fromisoformat(str(v)) for v in _split(value)}


def _parse_time(value):
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value).strip())


def _parse_timezone(value):
    name = str(value).strip()
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"unknown timezone {name!r}")
    return name


def _parse_optional_int(value):
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "none", "null")):
        return None
    return int(value)


def _parse_bool(value):
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")
