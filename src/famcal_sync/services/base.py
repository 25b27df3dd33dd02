"""Remote calendar client interface with async support."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
import logging

from ..models import ChangeSet, EventFields, RemoteEvent
from ..config import Settings

logger = logging.getLogger(__name__)


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""
    pass


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""
    pass


class RateLimitError(CalendarServiceError):
    """Rate limiting errors."""
    pass


class EventNotFoundError(CalendarServiceError):
    """Event not found errors."""
    pass


class TransientNetworkError(CalendarServiceError):
    """Connection failures and provider-side 5xx responses."""
    pass


class RemoteTimeoutError(TransientNetworkError):
    """A remote call exceeded the configured timeout."""
    pass


class RemoteCalendarClient(ABC):
    """Abstract, capability-scoped client to a provider's events API."""

    def __init__(self, settings: Settings, provider: str):
        """Initialize remote client.

        Args:
            settings: Application settings
            provider: Provider name used for logging
        """
        self.settings = settings
        self.provider = provider
        self.logger = logger.getChild(provider)
        self._rate_limiter = asyncio.Semaphore(
            max(1, settings.rate_limit_requests_per_minute // 60)
        )

    @abstractmethod
    async def list_changed_since(
        self,
        user_id: str,
        since: datetime,
        sync_token: Optional[str] = None
    ) -> ChangeSet:
        """Get provider events modified after a timestamp.

        Args:
            user_id: User whose calendar to read
            since: Exclusive lower bound on the provider's updated time
            sync_token: Provider incremental-sync token from the previous run

        Returns:
            Change set including deletions and a token for the next run

        Raises:
            CalendarServiceError: If changes cannot be retrieved
        """
        pass

    @abstractmethod
    async def get(self, user_id: str, external_id: str) -> RemoteEvent:
        """Get a specific provider event.

        Args:
            user_id: User whose calendar to read
            external_id: Provider event ID

        Returns:
            Provider event, possibly marked deleted

        Raises:
            EventNotFoundError: If event not found
            CalendarServiceError: If event cannot be retrieved
        """
        pass

    @abstractmethod
    async def create(self, user_id: str, fields: EventFields) -> RemoteEvent:
        """Create a provider event.

        Args:
            user_id: User whose calendar to write
            fields: Event content

        Returns:
            Created event carrying its new external ID

        Raises:
            CalendarServiceError: If event cannot be created
        """
        pass

    @abstractmethod
    async def update(self, user_id: str, external_id: str, fields: EventFields) -> RemoteEvent:
        """Replace the content of a provider event.

        Args:
            user_id: User whose calendar to write
            external_id: Provider event ID
            fields: Event content

        Returns:
            Updated event

        Raises:
            EventNotFoundError: If event not found
            CalendarServiceError: If event cannot be updated
        """
        pass

    @abstractmethod
    async def delete(self, user_id: str, external_id: str) -> None:
        """Delete a provider event; deleting a missing event is not an error.

        Args:
            user_id: User whose calendar to write
            external_id: Provider event ID

        Raises:
            CalendarServiceError: If event cannot be deleted
        """
        pass

    async def close(self) -> None:
        """Release client resources."""
        return None

    async def _rate_limited_request(self, coro):
        """Execute a coroutine with rate limiting.

        Args:
            coro: Coroutine to execute

        Returns:
            Coroutine result
        """
        async with self._rate_limiter:
            return await coro
