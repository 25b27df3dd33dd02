"""Remote calendar client interface and implementations."""

from .base import (
    RemoteCalendarClient, CalendarServiceError, AuthenticationError, EventNotFoundError,
    RateLimitError, TransientNetworkError, RemoteTimeoutError
)
from .google import GoogleCalendarClient

__all__ = [
    'RemoteCalendarClient',
    'CalendarServiceError',
    'AuthenticationError',
    'EventNotFoundError',
    'RateLimitError',
    'TransientNetworkError',
    'RemoteTimeoutError',
    'GoogleCalendarClient',
]
