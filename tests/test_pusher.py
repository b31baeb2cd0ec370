"""Tests for pushing store rows to the provider."""

import pytest
import pytest_asyncio

from calstore_sync.mapper import ATTENDEES, MEET_LINK
from calstore_sync.models import LogDirection, SyncType
from calstore_sync.provisioner import SchemaProvisioner
from calstore_sync.pusher import OutboundPusher, is_special_calendar
from calstore_sync.services import ProviderError

CALENDAR = 'work@example.com'
HOLIDAYS = 'en.french#holiday@group.v.calendar.google.com'

ROW_VALUES = {
    'Title': 'Launch',
    'Start Date': '2024-06-01T10:00:00',
    'End Date': '2024-06-01T11:00:00',
    'All Day': False,
    'Category': 'milestone',
}


@pytest.fixture
def pusher(settings, db_manager, store, provider):
    return OutboundPusher(settings, db_manager, store, provider)


@pytest_asyncio.fixture
async def schema(settings, db_manager, store, sync_config):
    return await SchemaProvisioner(settings, db_manager, store).resolve(sync_config)


@pytest_asyncio.fixture
async def row(store, schema):
    row_id = await store.insert_row(schema, ROW_VALUES, 0)
    return await store.get_row(schema, row_id)


def test_special_calendars():
    assert is_special_calendar(HOLIDAYS)
    assert not is_special_calendar(CALENDAR)
    assert not is_special_calendar('team@group.calendar.google.com')


class TestPush:

    @pytest.mark.asyncio
    async def test_first_push_creates_event_and_mapping(self, pusher, provider, db_manager, sync_config, row):
        result = await pusher.push(row)

        assert result.created
        assert result.sync_config_id == sync_config.id
        assert len(provider.inserted) == 1
        event = provider.inserted[0]
        assert event['summary'] == 'Launch'
        assert event['start'] == {'dateTime': '2024-06-01T10:00:00+02:00', 'timeZone': 'Europe/Paris'}
        assert event['colorId'] == '3'

        mapping = pusher.mappings.find_by_row(row.schema_id, row.row_id)
        assert mapping.provider_event_id == result.provider_event_id
        assert mapping.provider_calendar_id == CALENDAR

        log = db_manager.get_recent_sync_logs(sync_config.id)[0]
        assert log.sync_type == SyncType.PUSH
        assert log.direction == LogDirection.TO_PROVIDER
        assert log.created == 1

    @pytest.mark.asyncio
    async def test_second_push_patches_the_same_event(self, pusher, provider, store, schema, row):
        first = await pusher.push(row)
        await store.update_row(schema, row.row_id, {'Title': 'Launch v2'})

        second = await pusher.push(await store.get_row(schema, row.row_id))

        assert not second.created
        assert second.provider_event_id == first.provider_event_id
        assert len(provider.inserted) == 1
        assert provider.patched[0]['summary'] == 'Launch v2'

    @pytest.mark.asyncio
    async def test_vanished_event_is_recreated(self, pusher, provider, row):
        first = await pusher.push(row)
        provider.events.clear()

        second = await pusher.push(row)

        assert second.created
        assert second.provider_event_id != first.provider_event_id
        assert pusher.mappings.find('evt-1', CALENDAR) is None
        assert pusher.mappings.find_by_row(row.schema_id, row.row_id).provider_event_id == second.provider_event_id

    @pytest.mark.asyncio
    async def test_no_writable_calendar(self, pusher, provider, db_manager, sync_config, row):
        db_manager.update_sync_config(sync_config.id, direction='from_provider')

        assert await pusher.push(row) is None
        assert provider.inserted == []

    @pytest.mark.asyncio
    async def test_special_calendar_is_never_written(self, pusher, provider, db_manager, sync_config, row):
        db_manager.update_sync_config(sync_config.id, provider_calendar_id=HOLIDAYS)

        assert await pusher.push(row) is None
        assert provider.inserted == []

    @pytest.mark.asyncio
    async def test_explicit_target_must_be_writable(self, pusher, db_manager, connection, row):
        unbound = db_manager.create_sync_config(connection.id, 'home@example.com', 'Home')

        assert await pusher.push(row, target_config=unbound) is None

    @pytest.mark.asyncio
    async def test_soft_deleted_row_is_not_pushed(self, pusher, provider, store, schema, row):
        await store.soft_delete_row(schema, row.row_id)

        assert await pusher.push(await store.get_row(schema, row.row_id)) is None
        assert provider.inserted == []


class TestMeetLinks:

    @pytest.mark.asyncio
    async def test_meet_link_from_insert_is_written_back(self, pusher, provider, store, schema, row):
        result = await pusher.push(row, add_meet=True)

        assert result.meet_link == f'https://meet.google.com/{result.provider_event_id}'
        assert (await store.get_row(schema, row.row_id)).values[MEET_LINK] == result.meet_link

    @pytest.mark.asyncio
    async def test_meet_link_is_refetched_when_insert_lacks_it(self, pusher, provider, store, schema, row):
        provider.meet_on_insert = False
        provider.meet_on_get = True

        result = await pusher.push(row, add_meet=True)

        assert result.meet_link == f'https://meet.google.com/{result.provider_event_id}'
        assert (await store.get_row(schema, row.row_id)).values[MEET_LINK] == result.meet_link

    @pytest.mark.asyncio
    async def test_no_meet_requested(self, pusher, provider, row):
        result = await pusher.push(row)

        assert result.meet_link is None
        assert 'conferenceData' not in provider.inserted[0]


class TestRetract:

    @pytest.mark.asyncio
    async def test_retract_deletes_event_and_mapping(self, pusher, provider, row):
        await pusher.push(row)

        assert await pusher.retract(row.schema_id, row.row_id)

        assert provider.events == {}
        assert pusher.mappings.find_by_row(row.schema_id, row.row_id) is None
        assert not await pusher.retract(row.schema_id, row.row_id)

    @pytest.mark.asyncio
    async def test_already_deleted_event_counts_as_retracted(self, pusher, provider, row):
        await pusher.push(row)
        provider.events.clear()

        assert await pusher.retract(row.schema_id, row.row_id)
        assert pusher.mappings.find_by_row(row.schema_id, row.row_id) is None

    @pytest.mark.asyncio
    async def test_provider_failure_still_forgets_mapping(self, pusher, provider, row):
        await pusher.push(row)
        provider.delete_error = ProviderError("backend error")

        with pytest.raises(ProviderError):
            await pusher.retract(row.schema_id, row.row_id)

        assert pusher.mappings.find_by_row(row.schema_id, row.row_id) is None


class TestReadOnlyMappedCalendar:

    @pytest.mark.asyncio
    async def test_calendar_switched_to_inbound_only(self, pusher, provider, db_manager, sync_config, row):
        await pusher.push(row)
        db_manager.update_sync_config(sync_config.id, direction='from_provider')

        assert await pusher.push(row) is None
        assert provider.patched == []
        assert len(provider.inserted) == 1

    @pytest.mark.asyncio
    async def test_disabled_calendar(self, pusher, provider, db_manager, sync_config, row):
        await pusher.push(row)
        db_manager.update_sync_config(sync_config.id, enabled=False)

        assert await pusher.push(row) is None
        assert provider.patched == []
        assert len(provider.inserted) == 1

    @pytest.mark.asyncio
    async def test_calendar_became_special(self, pusher, provider, db_manager, sync_config, row):
        await pusher.push(row)
        db_manager.update_sync_config(sync_config.id, provider_calendar_id=HOLIDAYS)

        assert await pusher.push(row) is None
        assert provider.patched == []
        assert len(provider.inserted) == 1


class TestInvitations:

    @pytest.mark.asyncio
    async def test_guests_are_invited(self, pusher, provider, store, schema, row):
        await store.update_row(schema, row.row_id, {ATTENDEES: {
            'attendees': [{'email': 'guest@example.com', 'displayName': 'Guest'}],
            'permissions': {'guestsCanModify': True, 'guestsCanInviteOthers': False},
        }})

        await pusher.push(await store.get_row(schema, row.row_id))

        event = provider.inserted[0]
        assert event['attendees'] == [
            {'email': 'guest@example.com', 'displayName': 'Guest', 'responseStatus': 'needsAction', 'optional': False},
        ]
        assert event['guestsCanModify'] is True
        assert event['guestsCanInviteOthers'] is False
        assert provider.send_updates == ['all']

    @pytest.mark.asyncio
    async def test_update_notifies_guests(self, pusher, provider, store, schema, row):
        await pusher.push(row)
        await store.update_row(schema, row.row_id, {ATTENDEES: {'attendees': [{'email': 'guest@example.com'}]}})

        await pusher.push(await store.get_row(schema, row.row_id))

        assert provider.patched[0]['attendees'][0]['email'] == 'guest@example.com'
        assert provider.send_updates == [None, 'all']

    @pytest.mark.asyncio
    async def test_no_guests_no_notifications(self, pusher, provider, row):
        await pusher.push(row)

        assert 'attendees' not in provider.inserted[0]
        assert provider.send_updates == [None]
