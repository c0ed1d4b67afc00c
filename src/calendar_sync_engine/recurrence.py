"""
Recurrence expansion: pure functions, no I/O.

Every public function walks the same candidate sequence, anchored at the
series' first start, so results are deterministic and restartable from any
window.
"""

import calendar
import dataclasses
import datetime
import logging
from collections.abc import Iterable
from collections.abc import Iterator
from itertools import islice

from dateutil.relativedelta import relativedelta

from calendar_sync_engine.models import LAST_WEEK_OF_MONTH
from calendar_sync_engine.models import WEEKS_OF_MONTH
from calendar_sync_engine.models import LocalEvent
from calendar_sync_engine.models import MonthlyBy
from calendar_sync_engine.models import RecurrencePattern
from calendar_sync_engine.models import RecurrenceType
from calendar_sync_engine.models import RecurringEventInstance
from calendar_sync_engine.models import RecurringSeries
from calendar_sync_engine.models import SeriesPreview
from calendar_sync_engine.models import ValidationReport
from calendar_sync_engine.models import WeekDay

_logger = logging.getLogger(__name__)

DEFAULT_MAX_OCCURRENCES = 365
DEFAULT_PREVIEW_COUNT = 5

# Hard cap on candidate dates examined by one walk.  A daily workdays-only
# pattern whose interval is a multiple of 7 and anchored on a weekend never
# produces an occurrence; without this cap an unbounded walk would spin.
_MAX_CANDIDATES = 100_000

_WEEKEND = frozenset({WeekDay.SATURDAY, WeekDay.SUNDAY})
_DAY_ABBR = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


def _as_date(value: datetime.date | datetime.datetime) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    return value


def _at_time_of(day: datetime.date, anchor: datetime.datetime) -> datetime.datetime:
    return datetime.datetime.combine(day, anchor.timetz())


def _instant_bound(
    value: datetime.date | datetime.datetime, anchor: datetime.datetime
) -> datetime.datetime | None:
    """A datetime bound in the anchor's awareness; None for a plain date."""
    if not isinstance(value, datetime.datetime):
        return None
    if value.tzinfo is None and anchor.tzinfo is not None:
        return value.replace(tzinfo=anchor.tzinfo)
    if value.tzinfo is not None and anchor.tzinfo is None:
        return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    if value.tzinfo is not None:
        return value.astimezone(anchor.tzinfo)
    return value


def _nth_weekday(year: int, month: int, week_day: WeekDay, week: int) -> datetime.date:
    """Return the Nth (or last) given weekday of a month."""
    last_day = calendar.monthrange(year, month)[1]
    if week == LAST_WEEK_OF_MONTH:
        last = datetime.date(year, month, last_day)
        return last - datetime.timedelta(days=(WeekDay.of(last) - week_day) % 7)
    first = datetime.date(year, month, 1)
    offset = (week_day - WeekDay.of(first)) % 7
    return first + datetime.timedelta(days=offset + 7 * (week - 1))


def _day_in_month(
    year: int, month: int, pattern: RecurrencePattern, anchor: datetime.date
) -> datetime.date:
    """Resolve the occurrence date for one month of a monthly/yearly pattern."""
    if (pattern.monthly_by or MonthlyBy.DAY_OF_MONTH) == MonthlyBy.DAY_OF_MONTH:
        day = pattern.day_of_month or anchor.day
        # Clamp, e.g. the 31st in February becomes the 28th/29th.
        return datetime.date(year, month, min(day, calendar.monthrange(year, month)[1]))

    week_day = pattern.week_day if pattern.week_day is not None else WeekDay.of(anchor)
    week = pattern.week_of_month
    if week is None:
        week = min((anchor.day - 1) // 7 + 1, 4)
    return _nth_weekday(year, month, WeekDay(week_day), week)


def _iter_candidate_dates(
    pattern: RecurrencePattern, anchor: datetime.date
) -> Iterator[datetime.date]:
    """Yield the pattern's raw dates in ascending order, starting at the anchor.

    Weekend filtering for workdays-only patterns is left to the caller so that
    every candidate can still be bounds-checked.
    """
    interval = max(pattern.interval, 1)

    if pattern.type == RecurrenceType.DAILY:
        day = anchor
        while True:
            yield day
            day += datetime.timedelta(days=interval)

    elif pattern.type == RecurrenceType.WEEKLY:
        days = sorted({WeekDay(d) for d in (pattern.days_of_week or [WeekDay.of(anchor)])})
        week_start = anchor - datetime.timedelta(days=WeekDay.of(anchor))
        while True:
            for week_day in days:
                day = week_start + datetime.timedelta(days=int(week_day))
                if day >= anchor:
                    yield day
            week_start += datetime.timedelta(weeks=interval)

    elif pattern.type == RecurrenceType.MONTHLY:
        first = anchor.replace(day=1)
        step = 0
        while True:
            month = first + relativedelta(months=step * interval)
            day = _day_in_month(month.year, month.month, pattern, anchor)
            if day >= anchor:
                yield day
            step += 1

    elif pattern.type == RecurrenceType.YEARLY:
        month = pattern.month or anchor.month
        year = anchor.year
        while True:
            day = _day_in_month(year, month, pattern, anchor)
            if day >= anchor:
                yield day
            year += interval


def _iter_occurrences(
    pattern: RecurrencePattern,
    anchor: datetime.date,
    until: datetime.date | None = None,
) -> Iterator[datetime.date]:
    """Yield occurrence dates honouring the pattern's end conditions.

    ``occurrences`` counts from the series anchor, not from any window, so a
    count-bounded series ends on the same date whatever range is requested.
    """
    count = 0
    for examined, day in enumerate(_iter_candidate_dates(pattern, anchor)):
        if examined >= _MAX_CANDIDATES:
            _logger.warning(
                f"Recurrence walk stopped after {_MAX_CANDIDATES} candidate dates "
                f"(type={pattern.type.value}, anchor={anchor})"
            )
            return
        if until is not None and day > until:
            return
        if pattern.end_date is not None and day > pattern.end_date:
            return
        if (
            pattern.workdays_only
            and pattern.type == RecurrenceType.DAILY
            and WeekDay.of(day) in _WEEKEND
        ):
            continue
        if pattern.occurrences is not None and count >= pattern.occurrences:
            return
        count += 1
        yield day


def generate_instances(
    pattern: RecurrencePattern,
    base_event,
    start: datetime.date | datetime.datetime,
    end: datetime.date | datetime.datetime,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> list[RecurringEventInstance]:
    """Expand ``pattern`` into concrete instances inside ``[start, end]``.

    ``base_event`` supplies the series anchor and duration through its
    ``start``/``end`` datetimes.  Bounds apply in order: the window and the
    pattern's ``end_date`` (whichever is earlier), the pattern's
    ``occurrences`` count, then ``max_occurrences`` as a hard ceiling on the
    number of instances returned.

    Date bounds are inclusive whole days.  Datetime bounds are instants:
    only instances starting within ``[start, end]`` are returned.
    """
    anchor: datetime.datetime = base_event.start
    duration = base_event.end - base_event.start
    first_instant = _instant_bound(start, anchor)
    last_instant = _instant_bound(end, anchor)

    window_start = _as_date(first_instant or start)
    window_end = _as_date(last_instant or end)
    if pattern.end_date is not None and pattern.end_date < window_end:
        window_end = pattern.end_date

    instances: list[RecurringEventInstance] = []
    for day in _iter_occurrences(pattern, anchor.date(), until=window_end):
        if day < window_start:
            continue
        instance_start = _at_time_of(day, anchor)
        if first_instant is not None and instance_start < first_instant:
            continue
        if last_instant is not None and instance_start > last_instant:
            break
        if len(instances) >= max_occurrences:
            break
        instances.append(
            RecurringEventInstance(
                date=day,
                start_time=instance_start,
                end_time=instance_start + duration,
            )
        )
    return instances


def get_next_occurrence(
    pattern: RecurrencePattern,
    from_date: datetime.date | datetime.datetime,
    series_start: datetime.datetime | None = None,
) -> datetime.datetime | None:
    """Return the first occurrence strictly after ``from_date``, or None.

    Without ``series_start`` the series is anchored at ``from_date`` itself,
    which is enough for date-bounded and unbounded patterns.  Count-bounded
    patterns need the real series start to know when the count runs out.
    """
    if series_start is not None:
        anchor = series_start
    elif isinstance(from_date, datetime.datetime):
        anchor = from_date
    else:
        anchor = datetime.datetime.combine(from_date, datetime.time.min)

    horizon = _as_date(from_date) + datetime.timedelta(days=366 * max(pattern.interval, 1) + 31)
    for day in _iter_occurrences(pattern, anchor.date(), until=horizon):
        occurrence = _at_time_of(day, anchor)
        if isinstance(from_date, datetime.datetime):
            if occurrence > from_date:
                return occurrence
        elif day > from_date:
            return occurrence
    return None


def is_recurrence_valid(pattern: RecurrencePattern) -> ValidationReport:
    """Check a pattern before any generation is attempted."""
    errors: list[str] = []

    if pattern.interval < 1:
        errors.append("Interval must be at least 1")

    if pattern.type == RecurrenceType.WEEKLY:
        if not pattern.days_of_week:
            errors.append("Weekly recurrence must specify at least one day of the week")
    elif pattern.days_of_week:
        errors.append("Days of week only apply to weekly recurrence")

    if pattern.type in (RecurrenceType.MONTHLY, RecurrenceType.YEARLY):
        if pattern.monthly_by == MonthlyBy.DAY_OF_WEEK:
            if pattern.week_of_month is None or pattern.week_day is None:
                errors.append("Day-of-week recurrence must specify both week of month and weekday")
            elif pattern.week_of_month not in WEEKS_OF_MONTH:
                errors.append("Week of month must be 1-4 or -1 (last)")
        elif pattern.day_of_month is not None and not 1 <= pattern.day_of_month <= 31:
            errors.append("Day of month must be between 1 and 31")

    if pattern.month is not None and not 1 <= pattern.month <= 12:
        errors.append("Month must be between 1 and 12")

    if pattern.end_date is not None and pattern.occurrences is not None:
        errors.append("Cannot specify both end date and occurrence count")

    if pattern.occurrences is not None and pattern.occurrences < 1:
        errors.append("Occurrence count must be at least 1")

    return ValidationReport(valid=not errors, errors=errors)


def get_series_preview(
    pattern: RecurrencePattern,
    base_event,
    preview_count: int = DEFAULT_PREVIEW_COUNT,
) -> SeriesPreview:
    """Summarise a series: its first few instances, total size and last date."""
    anchor: datetime.datetime = base_event.start
    duration = base_event.end - base_event.start

    upcoming = []
    for day in islice(_iter_occurrences(pattern, anchor.date()), preview_count):
        instance_start = _at_time_of(day, anchor)
        upcoming.append(
            RecurringEventInstance(
                date=day, start_time=instance_start, end_time=instance_start + duration
            )
        )

    if pattern.occurrences is not None:
        last = None
        for last in _iter_occurrences(pattern, anchor.date()):
            pass
        return SeriesPreview(upcoming, pattern.occurrences, last)

    if pattern.end_date is not None:
        total = sum(1 for _ in _iter_occurrences(pattern, anchor.date(), until=pattern.end_date))
        return SeriesPreview(upcoming, total, pattern.end_date)

    return SeriesPreview(upcoming, None, None)


def describe_pattern(pattern: RecurrencePattern) -> str:
    """Human-readable summary such as 'Repeats every 2 weeks on Mon, Wed'."""
    unit = {
        RecurrenceType.DAILY: "day",
        RecurrenceType.WEEKLY: "week",
        RecurrenceType.MONTHLY: "month",
        RecurrenceType.YEARLY: "year",
    }[pattern.type]
    if pattern.interval > 1:
        text = f"Repeats every {pattern.interval} {unit}s"
    else:
        text = f"Repeats every {unit}"

    if pattern.type == RecurrenceType.DAILY and pattern.workdays_only:
        text += " (weekdays only)"
    elif pattern.type == RecurrenceType.WEEKLY and pattern.days_of_week:
        names = ", ".join(_DAY_ABBR[d] for d in sorted({int(d) for d in pattern.days_of_week}))
        text += f" on {names}"
    elif pattern.type in (RecurrenceType.MONTHLY, RecurrenceType.YEARLY):
        month = f" of {calendar.month_name[pattern.month]}" if pattern.month else ""
        if pattern.monthly_by == MonthlyBy.DAY_OF_WEEK and pattern.week_day is not None:
            ordinal = {1: "first", 2: "second", 3: "third", 4: "fourth", -1: "last"}.get(
                pattern.week_of_month, "?"
            )
            text += f" on the {ordinal} {_DAY_ABBR[pattern.week_day]}{month}"
        elif pattern.day_of_month:
            text += f" on day {pattern.day_of_month}{month}"

    if pattern.end_date is not None:
        text += f" until {pattern.end_date.isoformat()}"
    elif pattern.occurrences is not None:
        text += f" for {pattern.occurrences} times"
    return text


# ---------------------------------------------------------------------------
# Series helpers
# ---------------------------------------------------------------------------


def occurrence_event_id(master_id: str, day: datetime.date) -> str:
    """Stable id of an expanded occurrence of a recurring master."""
    return f"{master_id}:{day:%Y%m%d}"


def expand_to_events(
    base_event: LocalEvent,
    start: datetime.date | datetime.datetime,
    end: datetime.date | datetime.datetime,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> list[LocalEvent]:
    """Materialise a recurring master into one LocalEvent per occurrence."""
    if base_event.recurrence_pattern is None:
        return [base_event]
    instances = generate_instances(
        base_event.recurrence_pattern, base_event, start, end, max_occurrences
    )
    return [
        dataclasses.replace(
            base_event,
            id=occurrence_event_id(base_event.id, inst.date),
            start=inst.start_time,
            end=inst.end_time,
            parent_event_id=base_event.id,
            original_date=inst.date,
            recurrence_pattern=None,
        )
        for inst in instances
    ]


def expand_series(
    series: RecurringSeries,
    base_event,
    exception_events: Iterable[LocalEvent],
    start: datetime.date | datetime.datetime,
    end: datetime.date | datetime.datetime,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> RecurringSeries:
    """Fill ``series.instances`` for a window, applying its exceptions.

    An exception event replaces the instance on its ``original_date``
    (``is_modified``); a cancelled exception marks it ``is_skipped``.
    """
    overrides = {
        ev.original_date: ev
        for ev in exception_events
        if ev.id in series.exceptions and ev.original_date is not None
    }
    instances = generate_instances(series.pattern, base_event, start, end, max_occurrences)
    for inst in instances:
        override = overrides.get(inst.date)
        if override is None:
            continue
        if override.is_cancelled:
            inst.is_skipped = True
        else:
            inst.is_modified = True
            inst.start_time = override.start
            inst.end_time = override.end
    series.instances = instances
    return series
