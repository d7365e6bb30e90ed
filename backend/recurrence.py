"""
Recurrence scheduling: next-occurrence calculation and the due/visibility check.

Both functions are pure: they take `now` explicitly and never touch the store.
"""

import logging
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import ValidationError

from models import Frequency, RepeatSettings, Task, TaskStatus
from time_utils import (
    add_days,
    add_months,
    add_weeks,
    days_in_month,
    same_day_or_before,
    start_of_next_month,
    sunday_weekday,
    to_instant,
)

logger = logging.getLogger(__name__)

# Any non-empty weekday set matches within 7 days; any day-of-month set within
# a couple of months. The caps only guard against malformed input.
MAX_WEEKLY_SCAN_DAYS = 7
MAX_MONTHLY_SCAN_MONTHS = 24


def _coerce_rule(rule: Union[RepeatSettings, dict, None]) -> Optional[RepeatSettings]:
    if rule is None:
        return None
    if isinstance(rule, RepeatSettings):
        return rule
    try:
        return RepeatSettings.model_validate(rule)
    except ValidationError as e:
        logger.debug("Ignoring invalid repeat settings: %s", e)
        return None


def _subtract_one_cycle(rule: RepeatSettings, occurrence: datetime) -> datetime:
    if rule.frequency == Frequency.WEEKLY:
        return add_weeks(occurrence, -rule.interval)
    if rule.frequency == Frequency.MONTHLY:
        return add_months(occurrence, -rule.interval)
    return add_days(occurrence, -rule.interval)


def resolve_anchor(
    rule: RepeatSettings,
    reference_date: Any = None,
    next_occurrence: Any = None,
    now: Any = None,
) -> Optional[datetime]:
    """
    Pick the instant the next occurrence is computed from.

    Priority: explicit reference date, then the rule's last completion, then the
    current next occurrence moved back one cycle, then `now`. The first source
    that is present wins even if it turns out to be unparseable, in which case
    None is returned.
    """
    if reference_date is not None:
        return to_instant(reference_date)
    if rule.last_completed_at is not None:
        return rule.last_completed_at
    if next_occurrence is not None:
        occurrence = to_instant(next_occurrence)
        if occurrence is None:
            return None
        return _subtract_one_cycle(rule, occurrence)
    return to_instant(now)


def _first_weekday_after(anchor: datetime, days_of_week: list[int]) -> Optional[datetime]:
    candidate = anchor
    for _ in range(MAX_WEEKLY_SCAN_DAYS):
        candidate = add_days(candidate, 1)
        if sunday_weekday(candidate) in days_of_week:
            return candidate
    return None


def _first_month_day_from(start: datetime, days_of_month: list[int]) -> Optional[datetime]:
    """First day on or after `start` whose day-of-month is in the set.

    Days that do not exist in a month (e.g. the 31st in April) are skipped,
    never clamped.
    """
    month_start = start
    for _ in range(MAX_MONTHLY_SCAN_MONTHS):
        last_day = days_in_month(month_start)
        for day in days_of_month:
            if month_start.day <= day <= last_day:
                return month_start.replace(day=day)
        month_start = start_of_next_month(month_start).replace(
            hour=start.hour,
            minute=start.minute,
            second=start.second,
            microsecond=start.microsecond,
        )
    return None


def _shift_months_on_set(occurrence: datetime, months: int, days_of_month: list[int]) -> Optional[datetime]:
    if months == 0:
        return occurrence
    shifted = add_months(occurrence, months)
    if shifted.day == occurrence.day:
        return shifted
    # Clamped into a shorter month: move on to the next day in the set that exists
    return _first_month_day_from(shifted, days_of_month)


def _next_weekly(rule: RepeatSettings, anchor: datetime, explicit_reference: bool) -> Optional[datetime]:
    if not rule.days_of_week:
        return add_weeks(anchor, rule.interval)

    if explicit_reference and rule.interval > 1 and sunday_weekday(anchor) in rule.days_of_week:
        return add_weeks(anchor, rule.interval)

    first = _first_weekday_after(anchor, rule.days_of_week)
    if first is None:
        return None
    return add_weeks(first, rule.interval - 1)


def _next_monthly(rule: RepeatSettings, anchor: datetime, explicit_reference: bool) -> Optional[datetime]:
    if not rule.days_of_month:
        return add_months(anchor, rule.interval)

    if explicit_reference and rule.interval > 1 and anchor.day in rule.days_of_month:
        return _shift_months_on_set(anchor, rule.interval, rule.days_of_month)

    first = _first_month_day_from(add_days(anchor, 1), rule.days_of_month)
    if first is None:
        return None
    return _shift_months_on_set(first, rule.interval - 1, rule.days_of_month)


def compute_next(
    rule: Union[RepeatSettings, dict, None],
    reference_date: Any = None,
    *,
    next_occurrence: Any = None,
    now: Any = None,
) -> Optional[datetime]:
    """
    Calculate the next occurrence of a recurring task.

    Args:
        rule: Repeat settings, as a model or a raw mapping
        reference_date: Explicit starting point chosen by the caller (e.g. a
            newly set due date). Takes priority over everything else.
        next_occurrence: The task's current next occurrence, used when neither
            a reference date nor a last completion is available
        now: Fallback anchor when nothing else is known

    Returns:
        The next occurrence, strictly after the anchor and in the anchor's
        timezone, or None when the rule is invalid, unsupported, has ended, or
        no valid anchor exists.
    """
    settings = _coerce_rule(rule)
    if settings is None:
        return None

    anchor = resolve_anchor(settings, reference_date, next_occurrence, now)
    if anchor is None:
        return None

    explicit_reference = reference_date is not None

    if settings.frequency == Frequency.DAILY:
        result = add_days(anchor, settings.interval)
    elif settings.frequency == Frequency.WEEKLY:
        result = _next_weekly(settings, anchor, explicit_reference)
    elif settings.frequency == Frequency.MONTHLY:
        result = _next_monthly(settings, anchor, explicit_reference)
    else:
        return None

    if result is None:
        return None

    if settings.end_date is not None and result > settings.end_date:
        return None

    return result


def is_due_now(task: Task, now: datetime) -> bool:
    """
    Check whether a task should currently be shown.

    One-off tasks are always shown. A recurring task is shown from the start of
    the calendar day of its next occurrence (days are taken in `now`'s
    timezone); once completed with no further occurrence it is hidden.
    """
    if task.repeat_settings is None:
        return True
    if task.next_occurrence is None:
        return task.status != TaskStatus.COMPLETED
    return same_day_or_before(task.next_occurrence, now)
