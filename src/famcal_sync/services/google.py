"""Google Calendar client implementation with async support."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from dateutil.parser import isoparse
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import pytz
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    RemoteCalendarClient, CalendarServiceError, AuthenticationError, EventNotFoundError,
    RateLimitError, TransientNetworkError
)
from ..config import Settings
from ..errors import InvalidEventError
from ..models import (
    EPOCH, MAX_DESCRIPTION_LENGTH, MAX_LOCATION_LENGTH, MAX_TITLE_LENGTH, ChangeSet, EventFields,
    RemoteEvent, ensure_utc, normalize_text, utcnow
)


class ResourceGone(EventNotFoundError):
    """HTTP 410: the sync token expired or the event was already deleted."""
    pass


def _parse_when(when: Dict[str, Any]) -> Optional[datetime]:
    """Parse a Google start/end object into a UTC datetime."""
    if not when:
        return None
    if 'date' in when:
        # All-day events are anchored at midnight UTC
        return isoparse(when['date']).replace(tzinfo=pytz.UTC)
    if 'dateTime' in when:
        return ensure_utc(isoparse(when['dateTime']))
    return None


def format_google_event(event_data: Dict[str, Any]) -> RemoteEvent:
    """Convert a Google Calendar event resource into a RemoteEvent.

    Args:
        event_data: Event resource as returned by the Calendar API

    Returns:
        RemoteEvent projection

    Raises:
        InvalidEventError: If the payload lacks an ID or has unparseable times
        pydantic.ValidationError: If the fields fail model validation
    """
    event_id = event_data.get('id')
    if not event_id:
        raise InvalidEventError("Google event without id")

    start = event_data.get('start') or {}
    end = event_data.get('end') or {}

    try:
        start_at = _parse_when(start)
        end_at = _parse_when(end)
        updated_at = isoparse(event_data['updated']) if event_data.get('updated') else utcnow()
    except (ValueError, OverflowError) as e:
        raise InvalidEventError(f"Google event {event_id} has unparseable times: {e}")

    recurrence = event_data.get('recurrence') or []

    return RemoteEvent(
        external_id=event_id,
        title=event_data.get('summary', ''),
        description=event_data.get('description'),
        location=event_data.get('location'),
        start_at=start_at,
        end_at=end_at,
        all_day='date' in start,
        recurrence="\n".join(recurrence) if recurrence else None,
        updated_at=updated_at,
        deleted=event_data.get('status') == 'cancelled',
    )


def to_google_body(fields: EventFields) -> Dict[str, Any]:
    """Convert event content into a Google Calendar event body.

    Args:
        fields: Event content

    Returns:
        Body suitable for events().insert/update

    Raises:
        InvalidEventError: If the event has no start time
    """
    if fields.start_at is None:
        raise InvalidEventError("Cannot send an event without a start time to Google")

    body: Dict[str, Any] = {
        'summary': normalize_text(fields.title, MAX_TITLE_LENGTH),
        'description': normalize_text(fields.description, MAX_DESCRIPTION_LENGTH),
        'location': normalize_text(fields.location, MAX_LOCATION_LENGTH),
        'status': 'confirmed',
    }

    end = fields.effective_end()
    if fields.all_day:
        start_date = fields.start_at.date()
        end_date = end.date()
        if end_date <= start_date:
            # Google treats all-day end dates as exclusive
            end_date = start_date + timedelta(days=1)
        body['start'] = {'date': start_date.isoformat()}
        body['end'] = {'date': end_date.isoformat()}
    else:
        body['start'] = {'dateTime': fields.start_at.isoformat(), 'timeZone': 'UTC'}
        body['end'] = {'dateTime': end.isoformat(), 'timeZone': 'UTC'}

    if fields.recurrence:
        body['recurrence'] = [line for line in fields.recurrence.splitlines() if line.strip()]

    return body


class GoogleCalendarClient(RemoteCalendarClient):
    """Google Calendar client serving many users from their stored tokens."""

    def __init__(self, settings: Settings):
        """Initialize Google Calendar client.

        Args:
            settings: Application settings
        """
        super().__init__(settings, 'google')
        self.calendar_id = settings.google_calendar_id
        self._services: Dict[str, Any] = {}

    def _load_credentials(self, user_id: str) -> Credentials:
        """Load and refresh a user's authorized token file."""
        token_path = self.settings.google_token_path(user_id)
        if not token_path.exists():
            raise AuthenticationError(
                f"No Google token for user {user_id}; expected {token_path}"
            )

        creds = Credentials.from_authorized_user_file(str(token_path), self.settings.google_scopes)
        if not creds.valid:
            if creds.expired and creds.refresh_token:
                try:
                    creds.refresh(Request())
                except RefreshError as e:
                    raise AuthenticationError(f"Google token refresh failed for user {user_id}: {e}")
                with open(token_path, 'w') as token:
                    token.write(creds.to_json())
                # Set secure file permissions (owner read/write only)
                token_path.chmod(0o600)
            else:
                raise AuthenticationError(f"Google token for user {user_id} is invalid")
        return creds

    async def _service(self, user_id: str):
        """Get or build the Calendar API resource for a user."""
        service = self._services.get(user_id)
        if service is None:
            loop = asyncio.get_event_loop()
            creds = await loop.run_in_executor(None, lambda: self._load_credentials(user_id))
            service = build('calendar', 'v3', credentials=creds, cache_discovery=False)
            self._services[user_id] = service
            self.logger.info(f"Authenticated Google Calendar for user {user_id}")
        return service

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(RateLimitError),
        reraise=True
    )
    async def _execute(self, user_id: str, make_request: Callable[[Any], Any]) -> Any:
        """Run one API request in the thread pool and map its failures.

        Args:
            user_id: User whose credentials to use
            make_request: Builds the request from the service resource

        Returns:
            Decoded response

        Raises:
            RateLimitError: On 429 or quota 403 (retried)
            EventNotFoundError: On 404
            TransientNetworkError: On 5xx or connection failures
            CalendarServiceError: On other HTTP errors
        """
        service = await self._service(user_id)

        async def _call():
            return await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: make_request(service).execute()
            )

        try:
            return await self._rate_limited_request(_call())
        except HttpError as e:
            status = e.resp.status
            if status == 429 or (status == 403 and 'rateLimitExceeded' in str(e)):
                self.logger.warning("Google API rate limited, retrying...")
                raise RateLimitError(f"Rate limited: {e}")
            if status == 401:
                self._services.pop(user_id, None)
                raise AuthenticationError(f"Google rejected credentials for user {user_id}: {e}")
            if status == 404:
                raise EventNotFoundError(f"Google resource not found: {e}")
            if status == 410:
                raise ResourceGone(f"Google resource gone: {e}")
            if status >= 500:
                raise TransientNetworkError(f"Google API unavailable ({status}): {e}")
            raise CalendarServiceError(f"Google API error ({status}): {e}")
        except (TimeoutError, ConnectionError) as e:
            raise TransientNetworkError(f"Google API connection failed: {e}")

    async def list_changed_since(
        self,
        user_id: str,
        since: datetime,
        sync_token: Optional[str] = None
    ) -> ChangeSet:
        """Get changed events, using the sync token when one is available."""
        try:
            return await self._list_pages(user_id, since, sync_token)
        except ResourceGone:
            if not sync_token:
                raise CalendarServiceError("Google rejected time-bounded change query (410)")
            self.logger.warning(
                f"Google sync token expired for user {user_id}; falling back to time-bounded query"
            )
        try:
            return await self._list_pages(user_id, since, None)
        except ResourceGone:
            raise CalendarServiceError("Google rejected time-bounded change query (410)")

    async def _list_pages(
        self,
        user_id: str,
        since: datetime,
        sync_token: Optional[str]
    ) -> ChangeSet:
        params: Dict[str, Any] = {
            'calendarId': self.calendar_id,
            'maxResults': 2500,
            'showDeleted': True,
        }
        if sync_token:
            params['syncToken'] = sync_token
        elif since <= EPOCH:
            # First run: import a bounded window instead of the whole history
            now = utcnow()
            params['timeMin'] = (now - timedelta(days=self.settings.sync_past_days)).isoformat()
            params['timeMax'] = (now + timedelta(days=self.settings.sync_future_days)).isoformat()
        else:
            params['updatedMin'] = since.isoformat()

        events: List[RemoteEvent] = []
        invalid: List[str] = []
        next_sync_token: Optional[str] = None
        page_token: Optional[str] = None

        while True:
            page_params = dict(params)
            if page_token:
                page_params['pageToken'] = page_token

            result = await self._execute(
                user_id,
                lambda service: service.events().list(**page_params)
            )

            for event_data in result.get('items', []):
                try:
                    events.append(format_google_event(event_data))
                except (InvalidEventError, ValueError) as e:
                    self.logger.warning(f"Failed to format Google event {event_data.get('id')}: {e}")
                    invalid.append(f"Invalid remote event {event_data.get('id')}: {e}")

            page_token = result.get('nextPageToken')
            next_sync_token = result.get('nextSyncToken') or next_sync_token
            if not page_token:
                break

        return ChangeSet(
            events=events,
            next_sync_token=next_sync_token,
            invalid=invalid,
        )

    async def get(self, user_id: str, external_id: str) -> RemoteEvent:
        """Get a specific Google Calendar event."""
        event_data = await self._execute(
            user_id,
            lambda service: service.events().get(calendarId=self.calendar_id, eventId=external_id)
        )
        return format_google_event(event_data)

    async def create(self, user_id: str, fields: EventFields) -> RemoteEvent:
        """Create a new Google Calendar event."""
        body = to_google_body(fields)
        created = await self._execute(
            user_id,
            lambda service: service.events().insert(calendarId=self.calendar_id, body=body)
        )
        self.logger.info(f"Created Google event {created.get('id')} for user {user_id}")
        return format_google_event(created)

    async def update(self, user_id: str, external_id: str, fields: EventFields) -> RemoteEvent:
        """Update a Google Calendar event."""
        body = to_google_body(fields)
        updated = await self._execute(
            user_id,
            lambda service: service.events().update(
                calendarId=self.calendar_id,
                eventId=external_id,
                body=body
            )
        )
        return format_google_event(updated)

    async def delete(self, user_id: str, external_id: str) -> None:
        """Delete a Google Calendar event."""
        try:
            await self._execute(
                user_id,
                lambda service: service.events().delete(
                    calendarId=self.calendar_id,
                    eventId=external_id
                )
            )
        except EventNotFoundError:
            # 404/410: already gone
            self.logger.debug(f"Google event {external_id} already deleted")

    async def close(self) -> None:
        """Drop cached API resources."""
        self._services.clear()
