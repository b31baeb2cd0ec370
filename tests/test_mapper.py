"""Tests for event <-> field map translation."""

import pytest
import pytz

from calstore_sync.mapper import (
    ALL_DAY, ATTENDEES, CATEGORY, COLOR, DESCRIPTION, END_DATE, LOCATION, MEET_LINK, RECURRENCE, REMINDERS,
    START_DATE, TITLE, DESCRIPTIVE_COLUMNS, OPTIONAL_COLUMNS, REQUIRED_COLUMNS,
    extract_meet_link, is_all_day, parse_provider_timestamp, resolve_color, to_provider_event,
    to_store_fields,
)
from calstore_sync.models import ColumnDefinition, TargetSchema


def make_schema(column_specs):
    return TargetSchema(
        schema_id='schema-1',
        logical_id='db-1',
        owner_id='user-1',
        name='Work (Google Calendar)',
        physical_table_name='dbt_1',
        column_definitions=[
            ColumnDefinition(id=f'col-{i}', name=name, type=column_type, order=i)
            for i, (name, column_type) in enumerate(column_specs)
        ],
    )


FULL_SCHEMA = make_schema(REQUIRED_COLUMNS + DESCRIPTIVE_COLUMNS + OPTIONAL_COLUMNS)
MINIMAL_SCHEMA = make_schema(REQUIRED_COLUMNS)


class TestAllDay:

    def test_date_only_start_is_all_day(self):
        assert is_all_day({'start': {'date': '2024-05-01'}, 'end': {'date': '2024-05-02'}})

    def test_timed_event_is_not_all_day(self):
        assert not is_all_day({'start': {'dateTime': '2024-05-01T10:00:00Z'}})

    def test_explicit_timestamp_wins_over_date(self):
        assert not is_all_day({'start': {'date': '2024-05-01', 'dateTime': '2024-05-01T10:00:00Z'}})

    def test_missing_start(self):
        assert not is_all_day({})


class TestResolveColor:

    def test_known_color_id(self):
        assert resolve_color({'colorId': '11'}, '#123456') == ('deadline', '#d50000')

    def test_unknown_color_id_falls_back_to_other_and_calendar_color(self):
        assert resolve_color({'colorId': '42'}, '#123456') == ('other', '#123456')

    def test_no_color_id_inherits_calendar_color(self):
        assert resolve_color({}, '#123456') == ('other', '#123456')


class TestMeetLink:

    def test_video_entry_point_preferred(self):
        event = {
            'conferenceData': {'entryPoints': [
                {'entryPointType': 'phone', 'uri': 'tel:+33-1-23'},
                {'entryPointType': 'video', 'uri': 'https://meet.google.com/abc-defg-hij'},
            ]},
            'hangoutLink': 'https://meet.google.com/legacy',
        }
        assert extract_meet_link(event) == 'https://meet.google.com/abc-defg-hij'

    def test_falls_back_to_hangout_link(self):
        event = {'conferenceData': {'entryPoints': [{'entryPointType': 'phone', 'uri': 'tel:1'}]},
                 'hangoutLink': 'https://meet.google.com/legacy'}
        assert extract_meet_link(event) == 'https://meet.google.com/legacy'

    def test_absent(self):
        assert extract_meet_link({}) is None


class TestToStoreFields:

    def test_timed_event(self):
        event = {
            'id': 'e1',
            'summary': 'Standup',
            'description': 'Daily',
            'location': 'Room 1',
            'colorId': '9',
            'start': {'dateTime': '2024-05-01T10:00:00+02:00'},
            'end': {'dateTime': '2024-05-01T10:15:00+02:00'},
            'recurrence': ['RRULE:FREQ=DAILY', 'EXDATE:20240502T080000Z'],
            'reminders': {'useDefault': False, 'overrides': [{'method': 'popup', 'minutes': 10}]},
        }

        fields = to_store_fields(event, FULL_SCHEMA, '#123456')

        assert fields[TITLE] == 'Standup'
        assert fields[DESCRIPTION] == 'Daily'
        assert fields[LOCATION] == 'Room 1'
        assert fields[START_DATE] == '2024-05-01T10:00:00+02:00'
        assert fields[END_DATE] == '2024-05-01T10:15:00+02:00'
        assert fields[ALL_DAY] is False
        assert fields[CATEGORY] == 'meeting'
        assert fields[COLOR] == '#3f51b5'
        assert fields[RECURRENCE] == 'RRULE:FREQ=DAILY\nEXDATE:20240502T080000Z'
        assert fields[REMINDERS] == [{'method': 'popup', 'minutes': 10}]

    def test_all_day_end_becomes_inclusive(self):
        event = {'id': 'e1', 'start': {'date': '2024-05-01'}, 'end': {'date': '2024-05-03'}}

        fields = to_store_fields(event, FULL_SCHEMA)

        assert fields[ALL_DAY] is True
        assert fields[START_DATE] == '2024-05-01'
        assert fields[END_DATE] == '2024-05-02'

    def test_sparse_output_follows_schema(self):
        event = {'id': 'e1', 'summary': 'x', 'description': 'y', 'hangoutLink': 'https://meet.google.com/x',
                 'start': {'dateTime': '2024-05-01T10:00:00Z'}, 'end': {'dateTime': '2024-05-01T11:00:00Z'}}

        fields = to_store_fields(event, MINIMAL_SCHEMA)

        assert set(fields) == {TITLE, START_DATE, END_DATE, ALL_DAY, CATEGORY}

    def test_meet_link_omitted_when_absent(self):
        event = {'id': 'e1', 'start': {'dateTime': '2024-05-01T10:00:00Z'}}

        fields = to_store_fields(event, FULL_SCHEMA)

        assert MEET_LINK not in fields

    def test_meet_link_written_when_present(self):
        event = {'id': 'e1', 'start': {'dateTime': '2024-05-01T10:00:00Z'},
                 'hangoutLink': 'https://meet.google.com/x'}

        assert to_store_fields(event, FULL_SCHEMA)[MEET_LINK] == 'https://meet.google.com/x'

    def test_attendees_and_guest_permissions(self):
        event = {
            'id': 'e1',
            'start': {'dateTime': '2024-05-01T10:00:00Z'},
            'attendees': [
                {'email': 'boss@example.com', 'displayName': 'Boss', 'organizer': True,
                 'responseStatus': 'accepted'},
                {'email': 'guest@example.com', 'optional': True},
                {'displayName': 'Room without address'},
            ],
            'guestsCanModify': True,
            'guestsCanSeeOtherGuests': False,
        }

        fields = to_store_fields(event, FULL_SCHEMA)

        assert fields[ATTENDEES] == {
            'attendees': [
                {'email': 'boss@example.com', 'displayName': 'Boss', 'rsvpStatus': 'accepted',
                 'isOrganizer': True, 'isOptional': False},
                {'email': 'guest@example.com', 'rsvpStatus': 'needsAction',
                 'isOrganizer': False, 'isOptional': True},
            ],
            'permissions': {'guestsCanModify': True, 'guestsCanSeeOtherGuests': False},
        }

    def test_attendees_omitted_when_absent(self):
        event = {'id': 'e1', 'start': {'dateTime': '2024-05-01T10:00:00Z'}}

        assert ATTENDEES not in to_store_fields(event, FULL_SCHEMA)

    def test_missing_summary_becomes_empty_title(self):
        fields = to_store_fields({'id': 'e1', 'start': {'date': '2024-05-01'}}, FULL_SCHEMA)
        assert fields[TITLE] == ''
        assert fields[RECURRENCE] is None


class TestToProviderEvent:

    def test_all_day_end_is_exclusive(self):
        body = to_provider_event({
            TITLE: 'Holiday', ALL_DAY: True, START_DATE: '2024-05-01', END_DATE: '2024-05-02',
        })

        assert body['start'] == {'date': '2024-05-01'}
        assert body['end'] == {'date': '2024-05-03'}

    def test_timed_event_carries_time_zone(self):
        body = to_provider_event({
            TITLE: 'Call', ALL_DAY: False,
            START_DATE: '2024-05-01T10:00:00', END_DATE: '2024-05-01T11:00:00',
        }, default_timezone='Europe/Paris')

        assert body['start'] == {'dateTime': '2024-05-01T10:00:00+02:00', 'timeZone': 'Europe/Paris'}
        assert body['end']['timeZone'] == 'Europe/Paris'

    def test_timed_event_without_end_lasts_one_hour(self):
        body = to_provider_event({START_DATE: '2024-05-01T10:00:00+00:00'})
        assert body['end']['dateTime'] == '2024-05-01T11:00:00+00:00'

    def test_recurrence_json_list(self):
        body = to_provider_event({START_DATE: '2024-05-01', ALL_DAY: True,
                                  RECURRENCE: '["RRULE:FREQ=WEEKLY", "EXDATE;VALUE=DATE:20240508"]'})
        assert body['recurrence'] == ['RRULE:FREQ=WEEKLY', 'EXDATE;VALUE=DATE:20240508']

    def test_recurrence_single_rule(self):
        body = to_provider_event({START_DATE: '2024-05-01', ALL_DAY: True, RECURRENCE: 'RRULE:FREQ=MONTHLY'})
        assert body['recurrence'] == ['RRULE:FREQ=MONTHLY']

    def test_reminders_become_overrides(self):
        body = to_provider_event({START_DATE: '2024-05-01', ALL_DAY: True,
                                  REMINDERS: [{'minutes': 30}, {'method': 'email', 'minutes': 1440}]})
        assert body['reminders'] == {
            'useDefault': False,
            'overrides': [{'method': 'popup', 'minutes': 30}, {'method': 'email', 'minutes': 1440}],
        }

    def test_category_maps_to_color_and_private_property(self):
        body = to_provider_event({START_DATE: '2024-05-01', ALL_DAY: True, CATEGORY: 'milestone'})
        assert body['colorId'] == '3'
        assert body['extendedProperties'] == {'private': {'storeCategory': 'milestone'}}

    def test_other_category_has_no_color(self):
        body = to_provider_event({START_DATE: '2024-05-01', ALL_DAY: True})
        assert 'colorId' not in body
        assert body['extendedProperties']['private']['storeCategory'] == 'other'

    def test_attendees_and_guest_permissions(self):
        body = to_provider_event({START_DATE: '2024-05-01', ALL_DAY: True, ATTENDEES: {
            'attendees': [
                {'email': 'boss@example.com', 'displayName': 'Boss', 'rsvpStatus': 'accepted',
                 'isOrganizer': True},
                {'email': 'guest@example.com', 'isOptional': True},
                {'displayName': 'No address'},
            ],
            'permissions': {'guestsCanModify': False, 'guestsCanInviteOthers': None},
        }})

        assert body['attendees'] == [
            {'email': 'boss@example.com', 'displayName': 'Boss', 'responseStatus': 'accepted',
             'optional': False},
            {'email': 'guest@example.com', 'responseStatus': 'needsAction', 'optional': True},
        ]
        assert body['guestsCanModify'] is False
        assert 'guestsCanInviteOthers' not in body

    def test_attendees_json_text(self):
        body = to_provider_event({START_DATE: '2024-05-01', ALL_DAY: True,
                                  ATTENDEES: '{"attendees": [{"email": "a@example.com"}]}'})
        assert body['attendees'] == [{'email': 'a@example.com', 'responseStatus': 'needsAction', 'optional': False}]

    def test_no_attendees(self):
        body = to_provider_event({START_DATE: '2024-05-01', ALL_DAY: True})
        assert 'attendees' not in body
        assert 'guestsCanModify' not in body

    def test_missing_start_is_rejected(self):
        with pytest.raises(ValueError):
            to_provider_event({TITLE: 'No date'})


class TestParseProviderTimestamp:

    def test_rfc3339(self):
        parsed = parse_provider_timestamp('2024-04-30T12:00:00.000Z')
        assert parsed.tzinfo is not None
        assert parsed.astimezone(pytz.UTC).hour == 12

    def test_empty_and_invalid(self):
        assert parse_provider_timestamp(None) is None
        assert parse_provider_timestamp('not a date') is None
