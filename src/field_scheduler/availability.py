"""
Working hours, blackout dates and candidate slot generation.

Organization settings arrive as a loosely-typed dictionary (camelCase keys
from the CRM settings page, or snake_case from newer records). They are
resolved once per scheduling operation into an immutable
SchedulingPreferences, with explicit defaults for anything missing:

- Monday to Friday: 9:00 AM to 5:00 PM
- Saturday: 10:00 AM to 2:00 PM
- Sunday: closed
"""

from datetime import datetime, date, time, timedelta, timezone, tzinfo
from typing import Any, Dict, Iterator, Optional, Tuple
from zoneinfo import ZoneInfo

from .models import SchedulingPreferences, WorkingHours


WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')

# Default schedule configuration
DEFAULT_WORKING_HOURS: Dict[str, Dict[str, Any]] = {
    'monday': {'start': '09:00', 'end': '17:00'},
    'tuesday': {'start': '09:00', 'end': '17:00'},
    'wednesday': {'start': '09:00', 'end': '17:00'},
    'thursday': {'start': '09:00', 'end': '17:00'},
    'friday': {'start': '09:00', 'end': '17:00'},
    'saturday': {'start': '10:00', 'end': '14:00'},
    'sunday': {'closed': True},
}
DEFAULT_BUFFER_TIME = 15
DEFAULT_MAX_DAILY_APPOINTMENTS = 8
DEFAULT_TRAVEL_TIME = 30
SLOT_INTERVAL_MINUTES = 30

# Raw settings key -> SchedulingPreferences field
_KEY_ALIASES = {
    'workingHours': 'working_hours',
    'bufferTime': 'buffer_time',
    'maxDailyAppointments': 'max_daily_appointments',
    'preferredTechnicians': 'preferred_technicians',
    'blackoutDates': 'blackout_dates',
    'travelTime': 'travel_time',
    'slotInterval': 'slot_interval',
}


def resolve_preferences(raw: Optional[Dict[str, Any]]) -> SchedulingPreferences:
    """
    Builds SchedulingPreferences from raw organization settings.

    Missing keys take the defaults above. A partial working-hours map is
    merged over the default week, so an organization that only configures
    Saturday keeps the default Monday-Friday window.

    Args:
        raw: The organization's scheduling settings, or None when absent.

    Returns:
        SchedulingPreferences: A fresh, immutable preferences object.
    """
    values: Dict[str, Any] = {}
    for key, value in (raw or {}).items():
        values[_KEY_ALIASES.get(key, key)] = value

    working_hours = {day: dict(window) for day, window in DEFAULT_WORKING_HOURS.items()}
    for day, window in (values.get('working_hours') or {}).items():
        day = day.lower()
        if day not in working_hours:
            continue
        if isinstance(window, WorkingHours):
            window = window.model_dump()
        working_hours[day] = dict(window or {'closed': True})

    values['working_hours'] = {day: WorkingHours(**window) for day, window in working_hours.items()}
    values.setdefault('buffer_time', DEFAULT_BUFFER_TIME)
    values.setdefault('max_daily_appointments', DEFAULT_MAX_DAILY_APPOINTMENTS)
    values.setdefault('travel_time', DEFAULT_TRAVEL_TIME)
    values.setdefault('slot_interval', SLOT_INTERVAL_MINUTES)
    # Drop explicit nulls so field defaults apply
    values = {k: v for k, v in values.items() if v is not None}
    return SchedulingPreferences(**values)


def get_timezone(prefs: SchedulingPreferences) -> tzinfo:
    """Returns the organization's timezone object."""
    if prefs.timezone.upper() == 'UTC':
        return timezone.utc
    return ZoneInfo(prefs.timezone)


def _parse_clock(value: str) -> Tuple[int, int]:
    hour, _, minute = value.partition(':')
    return int(hour), int(minute or 0)


def _at(target_date: date, clock: str, tz: tzinfo) -> datetime:
    hour, minute = _parse_clock(clock)
    if hour == 24:
        # "24:00" closes at midnight of the following day
        return datetime.combine(target_date + timedelta(days=1), time(0, minute), tzinfo=tz)
    return datetime.combine(target_date, time(hour, minute), tzinfo=tz)


def is_blackout(target_date: date, prefs: SchedulingPreferences) -> bool:
    return target_date in prefs.blackout_dates


def working_window(target_date: date, prefs: SchedulingPreferences) -> Optional[Tuple[datetime, datetime]]:
    """
    Gets the opening window for a date.

    Args:
        target_date: The calendar date (organization-local).
        prefs: Resolved scheduling preferences.

    Returns:
        Optional[Tuple[datetime, datetime]]: Timezone-aware (open, close), or
            None if the weekday is closed or the date is a blackout date.
    """
    if is_blackout(target_date, prefs):
        return None

    hours = prefs.working_hours.get(WEEKDAYS[target_date.weekday()])
    if hours is None or hours.closed:
        return None

    tz = get_timezone(prefs)
    opens = _at(target_date, hours.start, tz)
    closes = _at(target_date, hours.end, tz)
    if closes <= opens:
        return None
    return opens, closes


def generate_slots(
    target_date: date,
    duration_minutes: int,
    prefs: SchedulingPreferences,
) -> Iterator[Tuple[datetime, datetime]]:
    """
    Lazily enumerates candidate (start, end) pairs for a date.

    Starts step by prefs.slot_interval minutes from opening time. A candidate
    is discarded when its end would fall after closing time. Each call
    returns a new generator, so the sequence can be restarted per date.

    Args:
        target_date: The date to generate slots for.
        duration_minutes: Length of the appointment being placed.
        prefs: Resolved scheduling preferences.

    Yields:
        Tuple[datetime, datetime]: Timezone-aware slot boundaries.
    """
    if duration_minutes <= 0:
        return

    window = working_window(target_date, prefs)
    if window is None:
        return

    opens, closes = window
    step = timedelta(minutes=prefs.slot_interval)
    duration = timedelta(minutes=duration_minutes)

    start = opens
    while start + duration <= closes:
        yield start, start + duration
        start += step


def to_local_date(value, prefs: SchedulingPreferences) -> date:
    """Converts a date or datetime to the organization-local calendar date."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(get_timezone(prefs)).date()
        return value.date()
    return value


def localize(value: datetime, prefs: SchedulingPreferences) -> datetime:
    """Attaches the organization timezone to a naive datetime; aware values pass through."""
    if value.tzinfo is None:
        return value.replace(tzinfo=get_timezone(prefs))
    return value


def day_bounds(target_date: date, prefs: SchedulingPreferences) -> Tuple[datetime, datetime]:
    """Start of the local day and start of the next one."""
    tz = get_timezone(prefs)
    start = datetime.combine(target_date, time(0, 0), tzinfo=tz)
    return start, start + timedelta(days=1)
