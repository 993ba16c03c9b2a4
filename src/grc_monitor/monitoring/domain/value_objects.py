"""
Monitoring Value Objects
========================

Immutable value objects for the monitoring domain.

The schedule evaluator computes when a test fires next. Fixed intervals are
plain arithmetic; cron expressions are parsed with APScheduler's cron trigger
so the field grammar (ranges, steps, lists, names) matches the scheduler that
already drives the worker.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import List, Optional, Tuple

from apscheduler.triggers.cron import CronTrigger

from grc_monitor.core import ConfigurationException
from grc_monitor.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 10080  # one week
CRON_FALLBACK = timedelta(minutes=60)

# Cron numbers day-of-week from Sunday (0 and 7); APScheduler numbers from Monday.
# Translating to names sidesteps the difference.
_CRON_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


@dataclass(frozen=True)
class Schedule:
    """
    When a test runs: exactly one of a fixed interval or a cron expression.
    """

    interval_minutes: Optional[int] = None
    cron_expression: Optional[str] = None

    @property
    def is_interval(self) -> bool:
        return self.interval_minutes is not None

    @property
    def is_cron(self) -> bool:
        return bool(self.cron_expression)

    def validate(self) -> None:
        """
        Check the schedule can be evaluated.

        Raises:
            ConfigurationException: neither or both forms set, interval out of
                range, or an unparseable cron expression
        """
        if self.is_interval and self.is_cron:
            raise ConfigurationException(
                "interval_minutes and cron_expression are mutually exclusive"
            )
        if not self.is_interval and not self.is_cron:
            raise ConfigurationException(
                "a schedule needs either interval_minutes or cron_expression"
            )
        if self.is_interval and not (MIN_INTERVAL_MINUTES <= self.interval_minutes <= MAX_INTERVAL_MINUTES):
            raise ConfigurationException(
                f"interval_minutes must be between {MIN_INTERVAL_MINUTES} and {MAX_INTERVAL_MINUTES}",
                {"interval_minutes": self.interval_minutes}
            )
        if self.is_cron:
            try:
                parse_cron(self.cron_expression, "UTC")
            except ValueError as exc:
                raise ConfigurationException(
                    f"invalid cron expression: {exc}",
                    {"cron_expression": self.cron_expression}
                ) from exc


def _weekday_number(token: str) -> int:
    token = token.strip().lower()
    if token.isdigit():
        number = int(token)
        if number > 7:
            raise ValueError(f"day-of-week value out of range: {token}")
        return number % 7
    if token[:3] in _CRON_WEEKDAYS:
        return _CRON_WEEKDAYS.index(token[:3])
    raise ValueError(f"unknown day-of-week: {token}")


def _translate_day_of_week(field: str) -> str:
    """Rewrite a cron day-of-week field as an explicit list of weekday names."""
    if field in ("*", "?"):
        return "*"

    days = set()
    for part in field.split(","):
        span, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"invalid step in day-of-week: {part}")

        if span in ("*", "?"):
            first, last = 0, 6
        elif "-" in span:
            start_text, end_text = span.split("-", 1)
            first, last = _weekday_number(start_text), _weekday_number(end_text)
            # "5-7" and "fri-sun" end on Sunday, numbered 0 after folding
            if last < first and end_text.strip().lower()[:3] in ("7", "sun"):
                last = 7
            if last < first:
                raise ValueError(f"invalid day-of-week range: {span}")
        else:
            first = _weekday_number(span)
            last = 6 if step_text else first

        days.update(day % 7 for day in range(first, last + 1, step))

    return ",".join(_CRON_WEEKDAYS[day] for day in sorted(days))


@lru_cache(maxsize=512)
def parse_cron(expression: str, timezone_name: str) -> Tuple[CronTrigger, ...]:
    """
    Parse a 5-field cron expression into one or two APScheduler triggers.

    When both day-of-month and day-of-week are restricted, cron fires on
    days matching either field, so two triggers are returned and the earliest
    fire time wins.

    Raises:
        ValueError: wrong field count or any field APScheduler rejects
    """
    if not expression or not expression.strip():
        raise ValueError("empty cron expression")

    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"expected 5 fields, got {len(fields)}")

    minute, hour, day, month, day_of_week = fields
    day_of_week = _translate_day_of_week(day_of_week)
    day = "*" if day == "?" else day

    def trigger(day_field: str, dow_field: str) -> CronTrigger:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day_field,
            month=month,
            day_of_week=dow_field,
            timezone=timezone_name,
        )

    if day != "*" and day_of_week != "*":
        return (trigger(day, "*"), trigger("*", day_of_week))
    return (trigger(day, day_of_week),)


class ScheduleEvaluator:
    """
    Computes the next fire time of a test schedule.

    Pure with respect to the store: given a schedule and a reference time it
    returns a time strictly after the reference.
    """

    def __init__(self, timezone_name: str = "UTC"):
        self._timezone_name = timezone_name

    def next_fire(self, schedule: Schedule, reference: datetime) -> datetime:
        """
        Next fire time strictly greater than `reference`.

        Malformed or missing schedules fall back to one hour after the
        reference and log a warning instead of failing the run.
        """
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)

        if schedule.is_interval and not schedule.is_cron and schedule.interval_minutes >= MIN_INTERVAL_MINUTES:
            return reference + timedelta(minutes=schedule.interval_minutes)

        if schedule.is_cron and not schedule.is_interval:
            try:
                triggers = parse_cron(schedule.cron_expression.strip(), self._timezone_name)
            except ValueError as exc:
                logger.warning(
                    "Invalid cron expression, falling back to hourly",
                    extra={"cron_expression": schedule.cron_expression, "error": str(exc)}
                )
                return reference + CRON_FALLBACK

            # APScheduler returns the first match at or after `now`; nudge past
            # the reference so an exact match is not returned again.
            after = reference + timedelta(microseconds=1)
            candidates: List[datetime] = []
            for trigger in triggers:
                fire_time = trigger.get_next_fire_time(None, after)
                if fire_time is not None:
                    candidates.append(fire_time.astimezone(timezone.utc))
            if candidates:
                return min(candidates)

            logger.warning(
                "Cron expression never fires, falling back to hourly",
                extra={"cron_expression": schedule.cron_expression}
            )
            return reference + CRON_FALLBACK

        logger.warning(
            "Test has no usable schedule, falling back to hourly",
            extra={
                "interval_minutes": schedule.interval_minutes,
                "cron_expression": schedule.cron_expression,
            }
        )
        return reference + CRON_FALLBACK
