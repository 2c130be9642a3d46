from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any, Callable

from .k8s import ObjectNotFoundError, StoreError
from .models import SchedulePolicy, SchedulePolicyType, utc_now

POLICY_TIME_FORMAT = "%I:%M%p"
WEEKDAYS = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")


class SchedulePolicyError(RuntimeError):
    """Raised when a schedule policy cannot be loaded or is invalid."""


@dataclass(frozen=True)
class IntervalPolicy:
    interval_minutes: int


@dataclass(frozen=True)
class DailyPolicy:
    at: time


@dataclass(frozen=True)
class WeeklyPolicy:
    weekday: int  # 0 is Sunday
    at: time


@dataclass(frozen=True)
class MonthlyPolicy:
    date: int
    at: time


def parse_policy_time(value: Any) -> time:
    text = str(value or "").replace(" ", "").upper()
    try:
        return datetime.strptime(text, POLICY_TIME_FORMAT).time()
    except ValueError as error:
        raise SchedulePolicyError(f"Invalid policy time '{value}'. Expected a time like 10:30PM.") from error


def parse_weekday(value: Any) -> int:
    text = str(value or "").strip().lower()
    for index, name in enumerate(WEEKDAYS):
        if text in (name, name[:3]):
            return index
    raise SchedulePolicyError(f"Invalid policy day '{value}'.")


def parse_policy(policy: dict[str, Any], policy_type: SchedulePolicyType) -> Any:
    """Return the typed policy for ``policy_type`` or None when it is not configured."""
    section = policy.get(policy_type.value.lower())
    if not section:
        return None
    if policy_type == SchedulePolicyType.INTERVAL:
        try:
            minutes = int(section.get("intervalMinutes", 0))
        except (TypeError, ValueError) as error:
            raise SchedulePolicyError(f"Invalid intervalMinutes '{section.get('intervalMinutes')}'.") from error
        if minutes <= 0:
            raise SchedulePolicyError("intervalMinutes must be positive")
        return IntervalPolicy(interval_minutes=minutes)
    if policy_type == SchedulePolicyType.DAILY:
        return DailyPolicy(at=parse_policy_time(section.get("time")))
    if policy_type == SchedulePolicyType.WEEKLY:
        return WeeklyPolicy(weekday=parse_weekday(section.get("day")), at=parse_policy_time(section.get("time")))
    try:
        date = int(section.get("date", 0))
    except (TypeError, ValueError) as error:
        raise SchedulePolicyError(f"Invalid monthly date '{section.get('date')}'.") from error
    if not 1 <= date <= 31:
        raise SchedulePolicyError("monthly date must be between 1 and 31")
    return MonthlyPolicy(date=date, at=parse_policy_time(section.get("time")))


def scheduled_time(policy: DailyPolicy | WeeklyPolicy | MonthlyPolicy, now: datetime) -> datetime:
    """The slot for the period containing ``now``; it may lie in the future."""
    if isinstance(policy, DailyPolicy):
        day = now.date()
    elif isinstance(policy, WeeklyPolicy):
        # Weeks start on Sunday.
        current = (now.weekday() + 1) % 7
        day = now.date() - timedelta(days=current - policy.weekday)
    else:
        last_day = calendar.monthrange(now.year, now.month)[1]
        day = now.date().replace(day=min(policy.date, last_day))
    return datetime.combine(day, policy.at, tzinfo=now.tzinfo)


def trigger_required(policy: Any, last_trigger: datetime | None, now: datetime) -> bool:
    if policy is None:
        return False
    if isinstance(policy, IntervalPolicy):
        if last_trigger is None:
            return True
        return last_trigger + timedelta(minutes=policy.interval_minutes) <= now
    slot = scheduled_time(policy, now)
    if slot > now:
        return False
    return last_trigger is None or last_trigger < slot


class SchedulePolicyEvaluator:
    """Decides whether a named schedule policy is due. Policy times are UTC."""

    def __init__(self, store: Any, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def trigger_required(
        self,
        policy_name: str,
        policy_type: SchedulePolicyType,
        last_trigger: datetime | None,
    ) -> bool:
        try:
            record = self._store.get(SchedulePolicy, policy_name)
        except ObjectNotFoundError as error:
            raise SchedulePolicyError(f"Schedule policy '{policy_name}' not found") from error
        except StoreError as error:
            raise SchedulePolicyError(f"Unable to read schedule policy '{policy_name}': {error}") from error
        return trigger_required(parse_policy(record.policy, policy_type), last_trigger, self._clock())
