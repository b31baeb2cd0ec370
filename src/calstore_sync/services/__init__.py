"""Calendar provider client interfaces and implementations."""

from .base import (
    ProviderClient,
    ProviderError,
    AuthenticationError,
    RateLimitError,
    CursorInvalidError,
    CalendarNotFoundError,
    EventNotFoundError,
    TokenProvider,
    StaticTokenProvider,
    AuthorizedUserFileTokenProvider,
)
from .google import GoogleCalendarClient

__all__ = [
    'ProviderClient',
    'ProviderError',
    'AuthenticationError',
    'RateLimitError',
    'CursorInvalidError',
    'CalendarNotFoundError',
    'EventNotFoundError',
    'TokenProvider',
    'StaticTokenProvider',
    'AuthorizedUserFileTokenProvider',
    'GoogleCalendarClient',
]
