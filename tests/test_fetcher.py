"""Tests for paginated event fetching."""

from datetime import datetime

import pytest
import pytz

from calstore_sync.fetcher import PageFetcher
from calstore_sync.services import CursorInvalidError

from conftest import make_event


@pytest.fixture
def fetcher(settings, provider):
    return PageFetcher(settings, provider)


def test_incremental_params_carry_only_the_token(fetcher):
    params = fetcher.build_params('token-1')

    assert params == {
        'maxResults': 2500,
        'singleEvents': True,
        'syncToken': 'token-1',
        'showDeleted': True,
    }


def test_full_params_use_the_sync_window(fetcher):
    now = datetime(2024, 5, 1, 12, 0, tzinfo=pytz.UTC)

    params = fetcher.build_params(None, now=now)

    assert 'syncToken' not in params
    assert params['timeMin'] == '2024-02-01T12:00:00+00:00'
    assert params['timeMax'] == '2025-05-01T12:00:00+00:00'
    assert params['orderBy'] == 'startTime'
    assert params['singleEvents'] is True


@pytest.mark.asyncio
async def test_pages_follow_page_tokens(fetcher, provider):
    provider.set_pages('cal', [make_event('a')], [make_event('b'), make_event('c')])

    pages = [page async for page in fetcher.pages('cal', 'token-1')]

    assert [len(p.items) for p in pages] == [1, 2]
    assert pages[0].next_page_token == 'page-1'
    assert pages[0].next_sync_token is None
    assert pages[1].next_sync_token == 'sync-final'
    assert provider.list_calls[1]['pageToken'] == 'page-1'
    assert provider.list_calls[1]['syncToken'] == 'token-1'


@pytest.mark.asyncio
async def test_rejected_cursor_propagates(fetcher, provider):
    provider.invalid_sync_tokens.add('stale')

    with pytest.raises(CursorInvalidError):
        async for _ in fetcher.pages('cal', 'stale'):
            pass
