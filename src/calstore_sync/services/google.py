"""Google Calendar provider client with async support."""

import asyncio
import functools
from typing import Any, Callable, Dict, List, Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from tenacity.wait import wait_base

from .base import (
    ProviderClient, ProviderError, AuthenticationError, RateLimitError, CursorInvalidError,
    CalendarNotFoundError, EventNotFoundError, TokenProvider, StaticTokenProvider,
    AuthorizedUserFileTokenProvider, logger as base_logger,
)
from ..config import Settings


def _rate_limit_retry(func):
    """Retry a coroutine on RateLimitError using the instance's retry policy."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        retrying = retry(
            stop=stop_after_attempt(self.retry_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type(RateLimitError),
            reraise=True,
        )
        return await retrying(func)(self, *args, **kwargs)

    return wrapper


class GoogleCalendarClient(ProviderClient):
    """Google Calendar v3 client.

    All blocking googleapiclient calls run in the default executor.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        retry_attempts: int = 3,
        retry_wait: Optional[wait_base] = None,
        service_factory: Optional[Callable[[Any], Any]] = None,
    ):
        """Initialize the client.

        Args:
            token_provider: Supplies valid credentials
            retry_attempts: Attempts for rate-limited requests
            retry_wait: Backoff between attempts (exponential by default)
            service_factory: Builds the API resource from credentials (tests)
        """
        self.token_provider = token_provider
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=4, max=10)
        self.logger = base_logger.getChild('google')
        self._service_factory = service_factory or (
            lambda creds: build('calendar', 'v3', credentials=creds, cache_discovery=False)
        )
        self._service = None
        self._service_creds = None

    @classmethod
    def from_settings(cls, settings: Settings) -> 'GoogleCalendarClient':
        if settings.google_access_token:
            provider: TokenProvider = StaticTokenProvider(settings.google_access_token)
        else:
            provider = AuthorizedUserFileTokenProvider(settings.google_token_path, settings.google_scopes)
        return cls(provider, retry_attempts=settings.retry_attempts)

    def _get_service(self):
        creds = self.token_provider.get_credentials()
        if self._service is None or creds is not self._service_creds:
            self._service = self._service_factory(creds)
            self._service_creds = creds
        return self._service

    async def _execute(self, make_request: Callable[[Any], Any]) -> Any:
        service = self._get_service()
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: make_request(service).execute())

    def _translate(
        self,
        e: HttpError,
        what: str,
        *,
        cursor_request: bool = False,
        calendar_scope: bool = False,
    ) -> ProviderError:
        status = e.resp.status
        if status in (401, 403):
            return AuthenticationError(f"Google rejected credentials while {what}: {e}")
        if status == 429:
            self.logger.warning("Google API rate limited, retrying...")
            return RateLimitError(f"Rate limited while {what}: {e}")
        if status == 410 and cursor_request:
            self.logger.warning("Google sync token expired/invalid (410)")
            return CursorInvalidError("Sync token expired")
        if status == 404 and calendar_scope:
            return CalendarNotFoundError(f"Google calendar not found while {what}")
        if status in (404, 410):
            return EventNotFoundError(f"Google event not found while {what}")
        return ProviderError(f"Failed {what}: {e}")

    @_rate_limit_retry
    async def list_events(self, calendar_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self._execute(
                lambda service: service.events().list(calendarId=calendar_id, **params)
            )
        except HttpError as e:
            raise self._translate(
                e,
                f"listing events of {calendar_id}",
                cursor_request='syncToken' in params,
                calendar_scope=True,
            ) from e

    @_rate_limit_retry
    async def get_event(self, calendar_id: str, event_id: str) -> Dict[str, Any]:
        try:
            return await self._execute(
                lambda service: service.events().get(calendarId=calendar_id, eventId=event_id)
            )
        except HttpError as e:
            raise self._translate(e, f"getting event {event_id}") from e

    @_rate_limit_retry
    async def insert_event(
        self,
        calendar_id: str,
        body: Dict[str, Any],
        conference_data_version: int = 1,
        send_updates: Optional[str] = None,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            'calendarId': calendar_id,
            'body': body,
            'conferenceDataVersion': conference_data_version,
        }
        if send_updates:
            kwargs['sendUpdates'] = send_updates
        try:
            return await self._execute(lambda service: service.events().insert(**kwargs))
        except HttpError as e:
            raise self._translate(e, f"creating event in {calendar_id}", calendar_scope=True) from e

    @_rate_limit_retry
    async def patch_event(
        self,
        calendar_id: str,
        event_id: str,
        body: Dict[str, Any],
        conference_data_version: int = 1,
        send_updates: Optional[str] = None,
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            'calendarId': calendar_id,
            'eventId': event_id,
            'body': body,
            'conferenceDataVersion': conference_data_version,
        }
        if send_updates:
            kwargs['sendUpdates'] = send_updates
        try:
            return await self._execute(lambda service: service.events().patch(**kwargs))
        except HttpError as e:
            raise self._translate(e, f"updating event {event_id}") from e

    @_rate_limit_retry
    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        try:
            await self._execute(
                lambda service: service.events().delete(calendarId=calendar_id, eventId=event_id)
            )
        except HttpError as e:
            raise self._translate(e, f"deleting event {event_id}") from e

    @_rate_limit_retry
    async def list_calendars(self) -> List[Dict[str, Any]]:
        calendars: List[Dict[str, Any]] = []
        page_token = None
        while True:
            try:
                response = await self._execute(
                    lambda service: service.calendarList().list(pageToken=page_token)
                )
            except HttpError as e:
                raise self._translate(e, "listing calendars") from e
            calendars.extend(response.get('items', []))
            page_token = response.get('nextPageToken')
            if not page_token:
                break
        return calendars
