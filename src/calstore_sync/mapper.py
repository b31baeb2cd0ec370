"""Translation between Google Calendar events and store field maps.

Field maps are keyed by column display name. Every function here is pure.
"""

import json
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from dateutil import parser as date_parser
import pytz

from .models import ColumnType, FieldMap, TargetSchema

TITLE = "Title"
DESCRIPTION = "Description"
START_DATE = "Start Date"
END_DATE = "End Date"
ALL_DAY = "All Day"
CATEGORY = "Category"
LOCATION = "Location"
RECURRENCE = "Recurrence"
REMINDERS = "Reminders"
MEET_LINK = "Google Meet"
COLOR = "Color"
ATTENDEES = "Attendees"

# (name, type) pairs; order is the column order of a fresh schema
REQUIRED_COLUMNS: List[Tuple[str, ColumnType]] = [
    (TITLE, ColumnType.TEXT),
    (START_DATE, ColumnType.DATETIME),
    (END_DATE, ColumnType.DATETIME),
    (ALL_DAY, ColumnType.CHECKBOX),
    (CATEGORY, ColumnType.SELECT),
]
DESCRIPTIVE_COLUMNS: List[Tuple[str, ColumnType]] = [
    (DESCRIPTION, ColumnType.TEXT),
    (LOCATION, ColumnType.TEXT),
    (RECURRENCE, ColumnType.TEXT),
    (REMINDERS, ColumnType.JSON),
]
OPTIONAL_COLUMNS: List[Tuple[str, ColumnType]] = [
    (MEET_LINK, ColumnType.URL),
    (COLOR, ColumnType.TEXT),
    (ATTENDEES, ColumnType.JSON),
]

DEFAULT_CATEGORY = "other"
CATEGORIES = ("meeting", "deadline", "milestone", "reminder", "personal", "other")

# Google event colorId -> (category, hex)
GOOGLE_COLORS: Dict[str, Tuple[str, str]] = {
    "1": ("meeting", "#7986cb"),     # Lavender
    "2": ("personal", "#33b679"),    # Sage
    "3": ("milestone", "#8e24aa"),   # Grape
    "4": ("deadline", "#e67c73"),    # Flamingo
    "5": ("reminder", "#f6bf26"),    # Banana
    "6": ("deadline", "#f4511e"),    # Tangerine
    "7": ("meeting", "#039be5"),     # Peacock
    "8": ("other", "#616161"),       # Graphite
    "9": ("meeting", "#3f51b5"),     # Blueberry
    "10": ("personal", "#0b8043"),   # Basil
    "11": ("deadline", "#d50000"),   # Tomato
}

CATEGORY_COLOR_IDS: Dict[str, Optional[str]] = {
    "meeting": "9",
    "deadline": "11",
    "milestone": "3",
    "reminder": "5",
    "personal": "10",
    "other": None,
}

CATEGORY_PROPERTY = "storeCategory"

GUEST_PERMISSIONS = ("guestsCanModify", "guestsCanInviteOthers", "guestsCanSeeOtherGuests")


def is_all_day(event: Dict[str, Any]) -> bool:
    """An event is all-day when its start has a date and no dateTime."""
    start = event.get('start') or {}
    return bool(start.get('date')) and not start.get('dateTime')


def resolve_color(event: Dict[str, Any], fallback_color: Optional[str]) -> Tuple[str, Optional[str]]:
    """Return (category, hex color) for an event.

    A known colorId maps through GOOGLE_COLORS. An unknown or absent
    colorId yields the "other" category and the calendar's color.
    """
    color_id = event.get('colorId')
    if color_id is not None:
        known = GOOGLE_COLORS.get(str(color_id))
        if known:
            return known
    return DEFAULT_CATEGORY, fallback_color


def extract_meet_link(event: Dict[str, Any]) -> Optional[str]:
    conference = event.get('conferenceData') or {}
    for entry_point in conference.get('entryPoints') or []:
        if entry_point.get('entryPointType') == 'video' and entry_point.get('uri'):
            return entry_point['uri']
    return event.get('hangoutLink') or None


def extract_attendees(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Return the stored form ``{"attendees": [...], "permissions": {...}}``, or None."""
    permissions = {key: bool(event[key]) for key in GUEST_PERMISSIONS if key in event}
    attendees = []
    for attendee in event.get('attendees') or []:
        if not attendee.get('email'):
            continue
        entry = {
            'email': attendee['email'],
            'rsvpStatus': attendee.get('responseStatus') or 'needsAction',
            'isOrganizer': bool(attendee.get('organizer')),
            'isOptional': bool(attendee.get('optional')),
        }
        if attendee.get('displayName'):
            entry['displayName'] = attendee['displayName']
        attendees.append(entry)
    if not attendees and not permissions:
        return None
    return {'attendees': attendees, 'permissions': permissions}


def parse_provider_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp from the provider into an aware datetime."""
    if not value:
        return None
    try:
        parsed = date_parser.isoparse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=pytz.UTC)
    return parsed


def _inclusive_end(end_date: Optional[str]) -> Optional[str]:
    # Google all-day ends are exclusive
    if not end_date:
        return end_date
    try:
        day = date.fromisoformat(end_date)
    except ValueError:
        return end_date
    return (day - timedelta(days=1)).isoformat()


def to_store_fields(
    event: Dict[str, Any],
    schema: TargetSchema,
    fallback_color: Optional[str] = None,
) -> FieldMap:
    """Map a provider event to a sparse field map for ``schema``.

    Only fields whose column exists in the schema are emitted. The meet
    link is left out entirely when the event has none so an existing
    value is never overwritten with null.
    """
    start = event.get('start') or {}
    end = event.get('end') or {}
    all_day = is_all_day(event)
    category, color = resolve_color(event, fallback_color)

    end_value = end.get('dateTime') or end.get('date')
    if all_day:
        end_value = _inclusive_end(end.get('date'))

    recurrence = event.get('recurrence')
    reminders = event.get('reminders') or {}

    candidates: FieldMap = {
        TITLE: event.get('summary') or '',
        DESCRIPTION: event.get('description') or '',
        START_DATE: start.get('dateTime') or start.get('date'),
        END_DATE: end_value,
        ALL_DAY: all_day,
        CATEGORY: category,
        LOCATION: event.get('location'),
        RECURRENCE: '\n'.join(recurrence) if isinstance(recurrence, list) else None,
        REMINDERS: reminders.get('overrides'),
        COLOR: color,
    }

    meet_link = extract_meet_link(event)
    if meet_link:
        candidates[MEET_LINK] = meet_link

    guests = extract_attendees(event)
    if guests:
        candidates[ATTENDEES] = guests

    return {name: value for name, value in candidates.items() if schema.has_column(name)}


def _parse_recurrence(value: Any) -> Optional[List[str]]:
    if not value:
        return None
    if isinstance(value, list):
        return [str(rule) for rule in value if rule]
    text = str(value).strip()
    if text.startswith('['):
        try:
            rules = json.loads(text)
        except json.JSONDecodeError:
            rules = None
        if isinstance(rules, list):
            return [str(rule) for rule in rules if rule]
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return lines or None


def _parse_reminders(value: Any) -> Optional[List[Dict[str, Any]]]:
    if not value:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    if not isinstance(value, list):
        return None
    overrides = []
    for reminder in value:
        if isinstance(reminder, dict) and 'minutes' in reminder:
            overrides.append({
                'method': reminder.get('method', 'popup'),
                'minutes': int(reminder['minutes']),
            })
    return overrides or None


def _parse_attendees(value: Any) -> Tuple[List[Dict[str, Any]], Dict[str, bool]]:
    if not value:
        return [], {}
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return [], {}
    if not isinstance(value, dict):
        return [], {}

    attendees = []
    for attendee in value.get('attendees') or []:
        if not isinstance(attendee, dict) or not attendee.get('email'):
            continue
        # The organizer flag is read-only on the provider side
        entry = {
            'email': attendee['email'],
            'responseStatus': attendee.get('rsvpStatus') or 'needsAction',
            'optional': bool(attendee.get('isOptional')),
        }
        if attendee.get('displayName'):
            entry['displayName'] = attendee['displayName']
        attendees.append(entry)

    permissions = value.get('permissions') or {}
    if not isinstance(permissions, dict):
        permissions = {}
    return attendees, {
        key: bool(permissions[key])
        for key in GUEST_PERMISSIONS
        if permissions.get(key) is not None
    }


def _as_date(value: Any) -> Optional[date]:
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date_parser.isoparse(str(value)).date()


def _as_datetime(value: Any, timezone: str) -> Optional[datetime]:
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = date_parser.isoparse(str(value))
    if parsed.tzinfo is None:
        parsed = pytz.timezone(timezone).localize(parsed)
    return parsed


def to_provider_event(values: FieldMap, default_timezone: str = "Europe/Paris") -> Dict[str, Any]:
    """Build a Google event body from a row's field map.

    Raises:
        ValueError: If the row has no start date
    """
    all_day = bool(values.get(ALL_DAY))
    body: Dict[str, Any] = {
        'summary': values.get(TITLE) or '',
        'description': values.get(DESCRIPTION) or '',
    }
    if values.get(LOCATION):
        body['location'] = values[LOCATION]

    if all_day:
        start_day = _as_date(values.get(START_DATE))
        if start_day is None:
            raise ValueError("Row has no start date")
        end_day = _as_date(values.get(END_DATE)) or start_day
        body['start'] = {'date': start_day.isoformat()}
        body['end'] = {'date': (end_day + timedelta(days=1)).isoformat()}
    else:
        start_at = _as_datetime(values.get(START_DATE), default_timezone)
        if start_at is None:
            raise ValueError("Row has no start date")
        end_at = _as_datetime(values.get(END_DATE), default_timezone) or start_at + timedelta(hours=1)
        body['start'] = {'dateTime': start_at.isoformat(), 'timeZone': default_timezone}
        body['end'] = {'dateTime': end_at.isoformat(), 'timeZone': default_timezone}

    recurrence = _parse_recurrence(values.get(RECURRENCE))
    if recurrence:
        body['recurrence'] = recurrence

    overrides = _parse_reminders(values.get(REMINDERS))
    if overrides:
        body['reminders'] = {'useDefault': False, 'overrides': overrides}

    attendees, permissions = _parse_attendees(values.get(ATTENDEES))
    if attendees:
        body['attendees'] = attendees
    body.update(permissions)

    category = values.get(CATEGORY) or DEFAULT_CATEGORY
    color_id = CATEGORY_COLOR_IDS.get(category)
    if color_id:
        body['colorId'] = color_id
    body['extendedProperties'] = {'private': {CATEGORY_PROPERTY: category}}

    return body
