"""
Schedule expressions.

A schedule string is either one of a handful of "every N" presets, which run as
exact fixed intervals measured from when they were armed, or a regular 5-field
cron expression evaluated in UTC.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from croniter import croniter

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

PRESET_INTERVALS_MS: dict[str, int] = {
    "*/1 * * * *": MINUTE_MS,
    "*/10 * * * *": 10 * MINUTE_MS,
    "*/30 * * * *": 30 * MINUTE_MS,
    "0 * * * *": HOUR_MS,
    "0 */6 * * *": 6 * HOUR_MS,
    "0 */12 * * *": 12 * HOUR_MS,
}


class ConfigurationError(ValueError):
    pass


class InvalidSchedule(ConfigurationError):
    def __init__(self, schedule: str, reason: str) -> None:
        super().__init__(f"Invalid schedule {schedule!r}: {reason}")
        self.schedule = schedule
        self.reason = reason


@dataclass(frozen=True)
class ScheduleHandle:
    expression: str
    interval_ms: int | None = None

    @property
    def is_interval(self) -> bool:
        return self.interval_ms is not None

    def describe(self) -> str:
        if self.interval_ms is not None:
            return f"every {self.interval_ms // 1000}s"
        return f"cron {self.expression} (UTC)"


def normalize(schedule: str) -> str:
    return " ".join(str(schedule or "").split())


def resolve(schedule: str) -> ScheduleHandle:
    expression = normalize(schedule)
    if not expression:
        raise InvalidSchedule(str(schedule), "empty expression")

    interval_ms = PRESET_INTERVALS_MS.get(expression)
    if interval_ms is not None:
        return ScheduleHandle(expression=expression, interval_ms=interval_ms)

    fields = expression.split(" ")
    if len(fields) != 5:
        raise InvalidSchedule(
            expression, f"expected 5 fields (minute hour day-of-month month day-of-week), got {len(fields)}"
        )
    try:
        croniter(expression, datetime.now(timezone.utc))
    except (ValueError, KeyError) as exc:
        raise InvalidSchedule(expression, str(exc) or exc.__class__.__name__) from exc
    return ScheduleHandle(expression=expression)


def next_run_time(handle: ScheduleHandle, now: datetime) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    if handle.interval_ms is not None:
        return now + timedelta(milliseconds=handle.interval_ms)
    nxt = croniter(handle.expression, now).get_next(datetime)
    if nxt.tzinfo is None:
        nxt = nxt.replace(tzinfo=timezone.utc)
    return nxt.astimezone(timezone.utc)
