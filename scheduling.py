"""
Shift time helpers.

Date/time composition for the shift forms, the named shift buckets used by the
list endpoints (upcoming, past, active, today, vacant, available), the
cancellation cutoff and check-in durations. Nothing in here touches the
database: every function works on plain values or on objects exposing
``start_time``, ``end_time``, ``status``, ``max_volunteers`` and
``current_volunteers``.
"""
from datetime import datetime, date, time, timedelta
import math

SHIFT_OPEN = "OPEN"
SHIFT_FULL = "FULL"
SHIFT_CANCELLED = "CANCELLED"
SHIFT_COMPLETED = "COMPLETED"
SHIFT_STATUSES = (SHIFT_OPEN, SHIFT_FULL, SHIFT_CANCELLED, SHIFT_COMPLETED)

DEFAULT_CANCELLATION_CUTOFF_MINUTES = 60
MAX_PER_PAGE = 100


def combine_date_time(day: date, time_of_day: time) -> datetime:
    """Build a timestamp from separate date and time form fields."""
    if day is None or time_of_day is None:
        raise ValueError("Both a date and a time are required")
    return datetime.combine(day, time_of_day)


def compose_shift_window(day, start, end, end_day=None):
    """Return ``(start_dt, end_dt)`` for a shift entered as date + times.

    Without an explicit end date the shift ends on the same day, so the end
    time has to come after the start time. Overnight shifts pass ``end_day``.
    """
    start_dt = combine_date_time(day, start)
    end_dt = combine_date_time(end_day or day, end)
    if end_dt <= start_dt:
        raise ValueError("End time must be after start time")
    return start_dt, end_dt


def start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min)


# ==========================
# BUCKETS
# ==========================

def is_upcoming(shift, now):
    return shift.start_time > now


def is_past(shift, now):
    return shift.end_time < now


def is_active(shift, now):
    return shift.start_time <= now <= shift.end_time and shift.status != SHIFT_CANCELLED


def is_today(shift, now):
    today = start_of_day(now)
    return today <= shift.start_time < today + timedelta(days=1)


def has_vacancy(shift):
    return shift.current_volunteers < shift.max_volunteers


def is_vacant(shift, now):
    return is_upcoming(shift, now) and has_vacancy(shift) and shift.status != SHIFT_CANCELLED


def is_available(shift, now):
    """Vacant and still accepting signups."""
    return is_vacant(shift, now) and shift.status == SHIFT_OPEN


BUCKETS = {
    "all": lambda shift, now: True,
    "upcoming": is_upcoming,
    "past": is_past,
    "active": is_active,
    "today": is_today,
    "vacant": is_vacant,
    "available": is_available,
}


def matches_search(shift, search):
    needle = (search or "").strip().lower()
    if not needle:
        return True
    haystack = (shift.title, shift.location, shift.description)
    return any(needle in (value or "").lower() for value in haystack)


def filter_shifts(shifts, bucket="upcoming", now=None, on_date=None, search=None):
    """Apply a bucket, an optional calendar date and a text search, sorted by start.

    Raises ValueError for an unknown bucket name.
    """
    if bucket not in BUCKETS:
        raise ValueError(f"Unknown shift filter: {bucket}")
    now = now or datetime.now()
    predicate = BUCKETS[bucket]

    filtered = [s for s in shifts if predicate(s, now)]
    if on_date is not None:
        day_start = datetime.combine(on_date, time.min)
        day_end = day_start + timedelta(days=1)
        filtered = [s for s in filtered if day_start <= s.start_time < day_end]
    if search:
        filtered = [s for s in filtered if matches_search(s, search)]
    return sorted(filtered, key=lambda s: s.start_time)


def status_for_roster(current_status, signup_count, capacity):
    """Shift status after the roster changed. Cancelled/completed shifts keep theirs."""
    if current_status in (SHIFT_CANCELLED, SHIFT_COMPLETED):
        return current_status
    return SHIFT_FULL if signup_count >= capacity else SHIFT_OPEN


# ==========================
# CUTOFF / DURATIONS
# ==========================

def minutes_until(start: datetime, now: datetime) -> float:
    return (start - now).total_seconds() / 60


def can_cancel(start: datetime, now: datetime, cutoff_minutes=DEFAULT_CANCELLATION_CUTOFF_MINUTES) -> bool:
    """A volunteer may cancel only while the shift is strictly more than the cutoff away."""
    return minutes_until(start, now) > cutoff_minutes


def check_in_window(start: datetime, end: datetime, early_minutes: int):
    return start - timedelta(minutes=early_minutes), end


def duration_minutes(check_in_time: datetime, check_out_time: datetime) -> int:
    if check_in_time is None or check_out_time is None:
        return 0
    return max(0, int((check_out_time - check_in_time).total_seconds() // 60))


def split_minutes(total_minutes: int):
    """Return ``(hours, minutes)`` for a number of minutes."""
    total_minutes = max(0, int(total_minutes))
    return total_minutes // 60, total_minutes % 60


def hours_total(logs) -> float:
    """Sum hours + minutes/60 over objects with ``hours`` and ``minutes``."""
    return sum((log.hours or 0) + (log.minutes or 0) / 60 for log in logs)


def normalize_hours(logs):
    """Total of a set of logs as whole hours plus leftover minutes."""
    hours = sum(log.hours or 0 for log in logs)
    minutes = sum(log.minutes or 0 for log in logs)
    return hours + minutes // 60, minutes % 60


# ==========================
# PAGINATION
# ==========================

def paginate(items, page=1, per_page=20):
    """Slice a list for one page. Returns a dict with the slice and page metadata."""
    items = list(items)
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    try:
        per_page = int(per_page)
    except (TypeError, ValueError):
        per_page = 20
    page = max(1, page)
    per_page = min(MAX_PER_PAGE, max(1, per_page))

    total = len(items)
    start = (page - 1) * per_page
    return {
        "items": items[start:start + per_page],
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": math.ceil(total / per_page) if total else 0,
    }
