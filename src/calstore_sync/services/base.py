"""Provider client interface and token providers."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
import logging

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base exception for calendar provider errors."""
    pass


class AuthenticationError(ProviderError):
    """Authentication-related errors."""
    pass


class RateLimitError(ProviderError):
    """Rate limiting errors."""
    pass


class CursorInvalidError(ProviderError):
    """The provider rejected an incremental sync token (HTTP 410)."""
    pass


class CalendarNotFoundError(ProviderError):
    """Calendar not found errors."""
    pass


class EventNotFoundError(ProviderError):
    """Event not found or already gone."""
    pass


class TokenProvider(ABC):
    """Source of valid bearer credentials for the provider."""

    @abstractmethod
    def get_credentials(self) -> Credentials:
        """Return credentials that are valid for the next request.

        Raises:
            AuthenticationError: If no valid credentials can be produced
        """
        pass


class StaticTokenProvider(TokenProvider):
    """Wraps a pre-issued access token; refresh is the caller's concern."""

    def __init__(self, access_token: str):
        if not access_token:
            raise AuthenticationError("An access token is required")
        self._credentials = Credentials(token=access_token)

    def get_credentials(self) -> Credentials:
        return self._credentials


class AuthorizedUserFileTokenProvider(TokenProvider):
    """Loads an authorized-user token file and refreshes it when expired."""

    def __init__(self, token_path: Path, scopes: Sequence[str]):
        self.token_path = Path(token_path)
        self.scopes = list(scopes)
        self._credentials: Optional[Credentials] = None

    def get_credentials(self) -> Credentials:
        if self._credentials is None:
            if not self.token_path.exists():
                raise AuthenticationError(f"Google token file not found: {self.token_path}")
            self._credentials = Credentials.from_authorized_user_file(
                str(self.token_path),
                self.scopes
            )

        creds = self._credentials
        if not creds.valid:
            if creds.expired and creds.refresh_token:
                logger.info("Refreshing expired Google credentials")
                try:
                    creds.refresh(Request())
                except Exception as e:
                    raise AuthenticationError(f"Failed to refresh Google credentials: {e}") from e
                with open(self.token_path, 'w') as token:
                    token.write(creds.to_json())
                self.token_path.chmod(0o600)
            else:
                raise AuthenticationError("Google credentials are invalid and cannot be refreshed")
        return creds


class ProviderClient(ABC):
    """Async interface over the provider's calendar API.

    Implementations are constructed once and passed explicitly to the
    engine and pusher so tests can inject a fake.
    """

    @abstractmethod
    async def list_events(self, calendar_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Fetch one page of events.

        Args:
            calendar_id: Provider calendar ID
            params: Query parameters (syncToken or timeMin/timeMax, pageToken, ...)

        Returns:
            Raw response with ``items``, ``nextPageToken`` and ``nextSyncToken``

        Raises:
            CursorInvalidError: If ``params`` carries a syncToken the provider rejects
            CalendarNotFoundError: If the calendar does not exist
            ProviderError: For any other failure
        """
        pass

    @abstractmethod
    async def get_event(self, calendar_id: str, event_id: str) -> Dict[str, Any]:
        """Fetch a single event.

        Raises:
            EventNotFoundError: If the event does not exist
        """
        pass

    @abstractmethod
    async def insert_event(
        self,
        calendar_id: str,
        body: Dict[str, Any],
        conference_data_version: int = 1,
        send_updates: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create an event and return the provider's representation."""
        pass

    @abstractmethod
    async def patch_event(
        self,
        calendar_id: str,
        event_id: str,
        body: Dict[str, Any],
        conference_data_version: int = 1,
        send_updates: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Patch an event.

        Raises:
            EventNotFoundError: If the event does not exist or was deleted
        """
        pass

    @abstractmethod
    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event.

        Raises:
            EventNotFoundError: If the event is already gone (404/410)
        """
        pass

    @abstractmethod
    async def list_calendars(self) -> List[Dict[str, Any]]:
        """Return the raw calendar list entries."""
        pass
