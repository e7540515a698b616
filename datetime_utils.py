"""
Date and time helpers for event scheduling.

Event forms send a calendar date (YYYY-MM-DD) and a clock time (HH:MM) as two
separate fields. They are combined into one naive datetime in the creator's
local timezone and checked against the current time before the event is
stored. No UTC offset is carried anywhere.
"""

import re
from collections import namedtuple
from datetime import date, datetime, timedelta

# Layout only; each segment is checked for ASCII digits separately
DATE_PATTERN = re.compile(r'^[^-\s]{4}-[^-\s]{2}-[^-\s]{2}$')
TIME_PATTERN = re.compile(r'^[^:\s]{2}:[^:\s]{2}$')
# Wire format also accepts the legacy "YYYY-MM-DD HH:MM:SS" layout
WIRE_PATTERN = re.compile(r'^([0-9]{4}-[0-9]{2}-[0-9]{2})[T ]([0-9]{2}:[0-9]{2})(?::[0-9]{2})?$')
WIRE_FORMAT = '%Y-%m-%dT%H:%M:%S'

POLICY_STRICT = 'strict'
POLICY_TOLERANCE = 'tolerance'
POLICIES = (POLICY_STRICT, POLICY_TOLERANCE)
DEFAULT_TOLERANCE = timedelta(minutes=5)


class DateTimeInputError(ValueError):
    """Base class for date/time problems the user can fix by editing the form"""

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class MalformedInput(DateTimeInputError):
    pass


class UnparsableNumber(MalformedInput):
    pass


class EventInPast(DateTimeInputError):
    pass


ValidationResult = namedtuple('ValidationResult', ['accepted', 'reason', 'instant'])


def _to_int(segment, field):
    # int() alone would also accept full-width and other non-ASCII digits
    if not (segment.isascii() and segment.isdigit()):
        raise UnparsableNumber(f"{field} must be a number, got '{segment}'")
    return int(segment)


def parse_calendar_date(date_str):
    """Parse YYYY-MM-DD into a date, rejecting impossible days like Feb 31"""
    if not isinstance(date_str, str) or not DATE_PATTERN.fullmatch(date_str):
        raise MalformedInput(f"Date must be in YYYY-MM-DD format, got '{date_str}'")

    year_part, month_part, day_part = date_str.split('-')
    year = _to_int(year_part, 'Year')
    month = _to_int(month_part, 'Month')
    day = _to_int(day_part, 'Day')

    if not 1 <= month <= 12:
        raise MalformedInput(f"Month must be between 01 and 12, got '{month_part}'")
    try:
        return date(year, month, day)
    except ValueError:
        raise MalformedInput(f"'{date_str}' is not a valid calendar date")


def parse_clock_time(time_str):
    """Parse HH:MM (24-hour) into an (hour, minute) pair"""
    if not isinstance(time_str, str) or not TIME_PATTERN.fullmatch(time_str):
        raise MalformedInput(f"Time must be in HH:MM (24-hour) format, got '{time_str}'")

    hour_part, minute_part = time_str.split(':')
    hour = _to_int(hour_part, 'Hour')
    minute = _to_int(minute_part, 'Minute')

    if not 0 <= hour <= 23:
        raise MalformedInput(f"Hour must be between 00 and 23, got '{hour_part}'")
    if not 0 <= minute <= 59:
        raise MalformedInput(f"Minute must be between 00 and 59, got '{minute_part}'")
    return hour, minute


def combine_date_and_time(date_str, time_str):
    """
    Combine a date string and a time string into a local datetime.

    The result is built from the integer fields directly; seconds are always 0.
    Raises MalformedInput (or its UnparsableNumber subtype) on bad input.
    """
    day = parse_calendar_date(date_str)
    hour, minute = parse_clock_time(time_str)
    return datetime(day.year, day.month, day.day, hour, minute, 0)


def to_wire(instant):
    """Serialize to the API's datetime field: YYYY-MM-DDTHH:MM:00, no zone"""
    return instant.replace(second=0, microsecond=0).strftime(WIRE_FORMAT)


def split_wire_datetime(value):
    """Split a wire datetime back into (date_str, time_str) for edit forms"""
    match = WIRE_PATTERN.fullmatch(value) if isinstance(value, str) else None
    if not match:
        raise MalformedInput(f"Datetime must be in YYYY-MM-DDTHH:MM:SS format, got '{value}'")
    return match.group(1), match.group(2)


def check_not_in_past(instant, now, policy=POLICY_TOLERANCE, tolerance=DEFAULT_TOLERANCE):
    """
    Decide whether an event instant is acceptable for a new or edited event.

    Args:
        instant: The combined event datetime
        now: The current datetime, supplied by the caller
        policy: POLICY_STRICT rejects anything at or before now.
                POLICY_TOLERANCE rejects only instants earlier than now - tolerance.
        tolerance: timedelta used by the tolerance policy

    Returns:
        (accepted: bool, reason: str or None)
    """
    if policy == POLICY_STRICT:
        if instant <= now:
            return False, 'Event date and time must be in the future'
        return True, None

    if policy != POLICY_TOLERANCE:
        raise ValueError(f"Unknown past-date policy: {policy}")

    if instant < now - tolerance:
        minutes = int(tolerance.total_seconds() // 60)
        if minutes:
            return False, f'Event date and time cannot be more than {minutes} minutes in the past'
        return False, 'Event date and time cannot be in the past'
    return True, None


def ensure_not_in_past(instant, now, policy=POLICY_TOLERANCE, tolerance=DEFAULT_TOLERANCE):
    accepted, reason = check_not_in_past(instant, now, policy, tolerance)
    if not accepted:
        raise EventInPast(reason)
    return instant


def validate_event_datetime(date_str, time_str, now, policy=POLICY_TOLERANCE,
                            tolerance=DEFAULT_TOLERANCE):
    """Combine and validate in one step, returning a ValidationResult instead of raising"""
    try:
        instant = combine_date_and_time(date_str, time_str)
        ensure_not_in_past(instant, now, policy, tolerance)
    except DateTimeInputError as e:
        return ValidationResult(False, e.message, None)
    return ValidationResult(True, None, instant)


def is_date_before_today(date_str, today):
    """True when a YYYY-MM-DD date falls strictly before today (a date)"""
    return parse_calendar_date(date_str) < today
