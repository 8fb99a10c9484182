"""
Studio calendar utilities.

Every expiration and birthday comparison in the engine works on the studio's
local civil date, never on the UTC date of the server clock. A class at
9 PM in New York is still "today" for the studio even though UTC has
already rolled over.
"""
import calendar
from datetime import date, datetime, time, timedelta

import pytz
from flask import current_app, has_app_context

# Default timezone fallback
DEFAULT_TIMEZONE = 'America/New_York'


def is_valid_timezone(tz_string):
    """
    Validate timezone string against pytz database.

    Args:
        tz_string: Timezone string to validate (e.g., 'America/New_York')

    Returns:
        bool: True if valid IANA timezone
    """
    if not tz_string:
        return False
    return tz_string in pytz.all_timezones


def studio_timezone():
    """Return the configured studio timezone, falling back to the default."""
    name = DEFAULT_TIMEZONE
    if has_app_context():
        name = current_app.config.get('STUDIO_TIMEZONE') or DEFAULT_TIMEZONE
    if not is_valid_timezone(name):
        name = DEFAULT_TIMEZONE
    return pytz.timezone(name)


def studio_now():
    """Current aware datetime in the studio timezone."""
    return datetime.now(pytz.utc).astimezone(studio_timezone())


def studio_today():
    """Current civil date at the studio."""
    return studio_now().date()


def end_of_studio_day(day):
    """
    Last instant of a studio civil date, as a naive UTC datetime.

    Args:
        day: date in the studio calendar

    Returns:
        datetime: 23:59:59.999999 local time converted to UTC (tzinfo dropped)
    """
    tz = studio_timezone()
    local_end = tz.localize(datetime.combine(day, time.max))
    return local_end.astimezone(pytz.utc).replace(tzinfo=None)


def add_months(start, months):
    """
    Calendar-month arithmetic with day clamping.

    Jan 31 + 1 month is the last day of February, not March 2/3.
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def month_day(value):
    """
    Month and day of a stored birthday, read from its literal components.

    Accepts a date or an ISO 'YYYY-MM-DD' string. The string form is split
    rather than parsed so no timezone conversion can shift the day.

    Returns:
        tuple: (month, day) or None when the value is empty or malformed
    """
    if not value:
        return None
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.month, value.day
    parts = str(value).strip()[:10].split('-')
    if len(parts) != 3:
        return None
    try:
        return int(parts[1]), int(parts[2])
    except ValueError:
        return None


def days_until(day, today=None):
    """Whole days from today (studio calendar) until the given date."""
    today = today or studio_today()
    return (day - today).days


def studio_day_bounds(day):
    """Naive UTC [start, end) datetimes covering one studio civil day."""
    tz = studio_timezone()
    start = tz.localize(datetime.combine(day, time.min)).astimezone(pytz.utc)
    end = tz.localize(datetime.combine(day + timedelta(days=1), time.min)).astimezone(pytz.utc)
    return start.replace(tzinfo=None), end.replace(tzinfo=None)
