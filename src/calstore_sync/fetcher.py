"""Paginated event fetching with sync tokens or a time window."""

import logging
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, Optional

import pytz

from .config import Settings
from .models import EventPage
from .services import ProviderClient

logger = logging.getLogger(__name__)


class PageFetcher:
    """Iterates the pages of a calendar's event list."""

    def __init__(self, settings: Settings, client: ProviderClient):
        self.settings = settings
        self.client = client
        self.logger = logger.getChild('fetcher')

    def build_params(self, cursor_token: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Build list parameters for an incremental or a full fetch.

        Sync tokens cannot be combined with time filters or ordering, so an
        incremental request carries only the token.
        """
        params: Dict[str, Any] = {
            'maxResults': self.settings.sync.max_results_per_page,
            'singleEvents': True,
        }
        if cursor_token:
            params['syncToken'] = cursor_token
            params['showDeleted'] = True
        else:
            now = now or datetime.now(pytz.UTC)
            params.update({
                'timeMin': (now - timedelta(days=self.settings.sync.sync_past_days)).isoformat(),
                'timeMax': (now + timedelta(days=self.settings.sync.sync_future_days)).isoformat(),
                'orderBy': 'startTime',
            })
        return params

    async def pages(self, calendar_id: str, cursor_token: Optional[str]) -> AsyncIterator[EventPage]:
        """Yield pages until the provider stops returning a page token.

        Raises:
            CursorInvalidError: If the provider rejects ``cursor_token``
        """
        base_params = self.build_params(cursor_token)
        page_token: Optional[str] = None
        page_number = 0

        while True:
            params = dict(base_params)
            if page_token:
                params['pageToken'] = page_token

            response = await self.client.list_events(calendar_id, params)
            page_number += 1
            page = EventPage(
                items=response.get('items', []),
                next_page_token=response.get('nextPageToken'),
                next_sync_token=response.get('nextSyncToken'),
            )
            self.logger.debug(f"Fetched page {page_number} of {calendar_id} with {len(page.items)} events")
            yield page

            page_token = page.next_page_token
            if not page_token:
                break
