import itertools
from typing import Any, Dict, List, Optional

import pytest
from pydantic_settings import SettingsConfigDict

from calstore_sync.config import Settings, SyncSettings
from calstore_sync.database import DatabaseManager
from calstore_sync.services import CursorInvalidError, EventNotFoundError, ProviderClient
from calstore_sync.store import SqlRowStore
from calstore_sync.sync_engine import SyncEngine


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        data_dir=tmp_path,
        database_url=f'sqlite:///{tmp_path}/sync.db',
        google_access_token='test-token',
        sync=SyncSettings(schema_reload_delay_seconds=0),
    )
    values.update(overrides)
    return TestSettings(**values)


class FakeProviderClient(ProviderClient):
    """In-memory calendar provider."""

    def __init__(self):
        self.pages: Dict[str, List[List[Dict[str, Any]]]] = {}
        self.final_sync_token = 'sync-final'
        self.invalid_sync_tokens = set()
        self.list_calls: List[Dict[str, Any]] = []
        self.events: Dict[tuple, Dict[str, Any]] = {}
        self.inserted: List[Dict[str, Any]] = []
        self.patched: List[Dict[str, Any]] = []
        self.send_updates: List[Optional[str]] = []
        self.meet_on_insert = True
        self.meet_on_get = False
        self.delete_error: Optional[Exception] = None
        self.calendars: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

    def set_pages(self, calendar_id: str, *pages: List[Dict[str, Any]]) -> None:
        self.pages[calendar_id] = [list(page) for page in pages]

    async def list_events(self, calendar_id, params):
        self.list_calls.append(dict(params))
        if params.get('syncToken') in self.invalid_sync_tokens:
            raise CursorInvalidError("Sync token expired")

        pages = self.pages.get(calendar_id, [[]])
        index = int(params.get('pageToken', 'page-0').split('-')[1])
        response: Dict[str, Any] = {'items': pages[index]}
        if index + 1 < len(pages):
            response['nextPageToken'] = f'page-{index + 1}'
        else:
            response['nextSyncToken'] = self.final_sync_token
        return response

    async def get_event(self, calendar_id, event_id):
        event = self.events.get((calendar_id, event_id))
        if event is None:
            raise EventNotFoundError(f"Google event {event_id} not found")
        event = dict(event)
        if self.meet_on_get:
            event['hangoutLink'] = f'https://meet.google.com/{event_id}'
        return event

    async def insert_event(self, calendar_id, body, conference_data_version=1, send_updates=None):
        self.send_updates.append(send_updates)
        event_id = f'evt-{next(self._ids)}'
        event = dict(body, id=event_id)
        conference = event.pop('conferenceData', None)
        if conference and self.meet_on_insert:
            event['conferenceData'] = {
                'entryPoints': [{'entryPointType': 'video', 'uri': f'https://meet.google.com/{event_id}'}]
            }
        self.events[(calendar_id, event_id)] = event
        self.inserted.append(event)
        return event

    async def patch_event(self, calendar_id, event_id, body, conference_data_version=1, send_updates=None):
        self.send_updates.append(send_updates)
        if (calendar_id, event_id) not in self.events:
            raise EventNotFoundError(f"Google event {event_id} not found")
        event = dict(self.events[(calendar_id, event_id)])
        event.update(body)
        self.events[(calendar_id, event_id)] = event
        self.patched.append(event)
        return event

    async def delete_event(self, calendar_id, event_id):
        if self.delete_error is not None:
            raise self.delete_error
        if self.events.pop((calendar_id, event_id), None) is None:
            raise EventNotFoundError(f"Google event {event_id} not found")

    async def list_calendars(self):
        return list(self.calendars)


def make_event(event_id, summary='Event', start='2024-05-01T10:00:00+02:00',
               end='2024-05-01T11:00:00+02:00', **extra):
    event = {
        'id': event_id,
        'status': 'confirmed',
        'summary': summary,
        'start': {'dateTime': start},
        'end': {'dateTime': end},
        'updated': '2024-04-30T12:00:00.000Z',
    }
    event.update(extra)
    return event


def cancelled(event_id):
    return {'id': event_id, 'status': 'cancelled'}


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def store(settings):
    row_store = SqlRowStore(settings.store_database_url)
    row_store.init_store()
    return row_store


@pytest.fixture
def provider():
    return FakeProviderClient()


@pytest.fixture
def engine(settings, db_manager, store, provider):
    return SyncEngine(settings, db_manager, store, provider)


@pytest.fixture
def connection(db_manager):
    return db_manager.create_connection('user-1', 'user@example.com')


@pytest.fixture
def sync_config(db_manager, connection):
    return db_manager.create_sync_config(
        connection.id, 'work@example.com', 'Work', display_color='#123456'
    )
