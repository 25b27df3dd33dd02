"""Tests for the Google Calendar client and payload translation."""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
import pytz
from googleapiclient.errors import HttpError

from famcal_sync.errors import InvalidEventError
from famcal_sync.models import EPOCH, ChangeSet, EventFields
from famcal_sync.services import (
    AuthenticationError, CalendarServiceError, EventNotFoundError, GoogleCalendarClient,
    TransientNetworkError
)
from famcal_sync.services.google import ResourceGone, format_google_event, to_google_body


def http_error(status, reason="error"):
    return HttpError(SimpleNamespace(status=status, reason=reason), b'{}')


class FakeRequest:
    def __init__(self, outcome):
        self.outcome = outcome

    def execute(self):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeEvents:
    def __init__(self, pages=None, outcome=None):
        self.pages = list(pages or [])
        self.outcome = outcome
        self.list_params = []
        self.deleted = []

    def list(self, **params):
        self.list_params.append(params)
        return FakeRequest(self.pages.pop(0))

    def get(self, calendarId, eventId):
        return FakeRequest(self.outcome)

    def delete(self, calendarId, eventId):
        self.deleted.append(eventId)
        return FakeRequest(self.outcome)


class FakeService:
    def __init__(self, events):
        self._events = events

    def events(self):
        return self._events


@pytest.fixture
def client(settings):
    return GoogleCalendarClient(settings)


def use_service(client, monkeypatch, events):
    service = FakeService(events)

    async def fake_service(user_id):
        return service

    monkeypatch.setattr(client, "_service", fake_service)
    return events


class TestFormatGoogleEvent:
    """Tests for Google payload -> RemoteEvent."""

    def test_timed_event(self):
        event = format_google_event({
            'id': 'abc',
            'summary': 'Soccer practice',
            'location': 'North field',
            'start': {'dateTime': '2024-03-02T10:00:00+01:00'},
            'end': {'dateTime': '2024-03-02T11:30:00+01:00'},
            'updated': '2024-03-01T08:00:00.000Z',
            'etag': '"3"',
        })

        assert event.external_id == 'abc'
        assert event.title == 'Soccer practice'
        assert event.start_at == datetime(2024, 3, 2, 9, 0, tzinfo=pytz.UTC)
        assert event.end_at == datetime(2024, 3, 2, 10, 30, tzinfo=pytz.UTC)
        assert not event.all_day
        assert not event.deleted
        assert event.updated_at == datetime(2024, 3, 1, 8, 0, tzinfo=pytz.UTC)

    def test_all_day_event(self):
        event = format_google_event({
            'id': 'bday',
            'summary': 'Grandma birthday',
            'start': {'date': '2024-05-10'},
            'end': {'date': '2024-05-11'},
            'recurrence': ['RRULE:FREQ=YEARLY'],
            'updated': '2024-03-01T08:00:00Z',
        })

        assert event.all_day
        assert event.start_at == datetime(2024, 5, 10, tzinfo=pytz.UTC)
        assert event.recurrence == 'RRULE:FREQ=YEARLY'

    def test_cancelled_event_is_deleted(self):
        event = format_google_event({'id': 'gone', 'status': 'cancelled'})

        assert event.deleted
        assert event.start_at is None

    def test_missing_id(self):
        with pytest.raises(InvalidEventError):
            format_google_event({'summary': 'No id'})

    def test_unparseable_time(self):
        with pytest.raises(InvalidEventError):
            format_google_event({'id': 'x', 'start': {'dateTime': 'tomorrow-ish'}})


class TestToGoogleBody:
    """Tests for event content -> Google payload."""

    def test_timed_event_without_end_gets_an_hour(self):
        start = datetime(2024, 3, 2, 9, 0, tzinfo=pytz.UTC)

        body = to_google_body(EventFields(title="Dentist", start_at=start))

        assert body['summary'] == "Dentist"
        assert body['status'] == 'confirmed'
        assert body['start'] == {'dateTime': start.isoformat(), 'timeZone': 'UTC'}
        assert body['end']['dateTime'] == (start + timedelta(hours=1)).isoformat()

    def test_all_day_end_is_exclusive(self):
        start = datetime(2024, 5, 10, tzinfo=pytz.UTC)

        body = to_google_body(EventFields(title="Trip", start_at=start, end_at=start, all_day=True))

        assert body['start'] == {'date': '2024-05-10'}
        assert body['end'] == {'date': '2024-05-11'}

    def test_recurrence_and_text_cleanup(self):
        start = datetime(2024, 3, 2, 9, 0, tzinfo=pytz.UTC)
        fields = EventFields(
            title="  Piano\x00 ",
            start_at=start,
            recurrence="RRULE:FREQ=WEEKLY;BYDAY=SA\nEXDATE:20240316T090000Z\n",
        )

        body = to_google_body(fields)

        assert body['summary'] == "Piano"
        assert body['recurrence'] == ["RRULE:FREQ=WEEKLY;BYDAY=SA", "EXDATE:20240316T090000Z"]

    def test_round_trip_keeps_content(self):
        start = datetime(2024, 3, 2, 9, 0, tzinfo=pytz.UTC)
        fields = EventFields(title="Swim", start_at=start, location="Pool", description="Goggles")
        body = to_google_body(fields)

        echoed = format_google_event({**body, 'id': 'g1', 'updated': '2024-03-01T00:00:00Z'})

        assert echoed.same_content(fields)

    def test_round_trip_of_padded_and_overlong_text_keeps_content(self):
        start = datetime(2024, 3, 2, 9, 0, tzinfo=pytz.UTC)
        fields = EventFields(
            title=" Soccer practice\x00\n",
            start_at=start,
            location="Field 3 ",
            description="x" * 9000,
        )
        body = to_google_body(fields)

        echoed = format_google_event({**body, 'id': 'g1', 'updated': '2024-03-01T00:00:00Z'})

        assert echoed.title == "Soccer practice"
        assert len(echoed.description) == 8192
        assert echoed.description.endswith('...')
        assert echoed.same_content(fields)

    def test_missing_start(self):
        with pytest.raises(InvalidEventError):
            to_google_body(EventFields(title="Someday"))


class TestGoogleCalendarClient:
    """Tests for GoogleCalendarClient request handling."""

    @pytest.mark.asyncio
    async def test_missing_token_is_authentication_error(self, client):
        with pytest.raises(AuthenticationError):
            await client.get('alice', 'abc')

    @pytest.mark.asyncio
    async def test_first_listing_uses_time_window_and_pages(self, client, monkeypatch):
        events = use_service(client, monkeypatch, FakeEvents(pages=[
            {
                'items': [
                    {'id': 'a', 'summary': 'One', 'start': {'date': '2024-03-02'},
                     'updated': '2024-03-01T00:00:00Z'},
                    {'id': 'broken', 'summary': 'No start', 'updated': '2024-03-01T00:00:00Z'},
                ],
                'nextPageToken': 'page-2',
            },
            {
                'items': [{'id': 'b', 'status': 'cancelled'}],
                'nextSyncToken': 'sync-1',
            },
        ]))

        change_set = await client.list_changed_since('alice', EPOCH)

        assert [e.external_id for e in change_set.events] == ['a', 'b']
        assert change_set.next_sync_token == 'sync-1'
        assert len(change_set.invalid) == 1 and 'broken' in change_set.invalid[0]
        first, second = events.list_params
        assert first['showDeleted'] is True
        assert 'timeMin' in first and 'timeMax' in first
        assert 'syncToken' not in first
        assert second['pageToken'] == 'page-2'

    @pytest.mark.asyncio
    async def test_incremental_listing_prefers_sync_token(self, client, monkeypatch):
        events = use_service(client, monkeypatch, FakeEvents(pages=[{'items': []}]))
        since = datetime(2024, 3, 1, tzinfo=pytz.UTC)

        await client.list_changed_since('alice', since, 'sync-1')

        params = events.list_params[0]
        assert params['syncToken'] == 'sync-1'
        assert 'updatedMin' not in params and 'timeMin' not in params

    @pytest.mark.asyncio
    async def test_listing_without_token_uses_updated_min(self, client, monkeypatch):
        events = use_service(client, monkeypatch, FakeEvents(pages=[{'items': []}]))
        since = datetime(2024, 3, 1, tzinfo=pytz.UTC)

        await client.list_changed_since('alice', since)

        assert events.list_params[0]['updatedMin'] == since.isoformat()

    @pytest.mark.asyncio
    async def test_expired_sync_token_falls_back(self, client, monkeypatch):
        calls = []

        async def fake_list_pages(user_id, since, sync_token):
            calls.append(sync_token)
            if sync_token:
                raise ResourceGone("410")
            return ChangeSet(next_sync_token='fresh')

        monkeypatch.setattr(client, "_list_pages", fake_list_pages)

        change_set = await client.list_changed_since('alice', EPOCH, 'stale')

        assert calls == ['stale', None]
        assert change_set.next_sync_token == 'fresh'

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,expected", [
        (404, EventNotFoundError),
        (410, EventNotFoundError),
        (401, AuthenticationError),
        (503, TransientNetworkError),
        (400, CalendarServiceError),
    ])
    async def test_http_errors_are_mapped(self, client, monkeypatch, status, expected):
        use_service(client, monkeypatch, FakeEvents(outcome=http_error(status)))

        with pytest.raises(expected):
            await client.get('alice', 'abc')

    @pytest.mark.asyncio
    async def test_delete_of_missing_event_is_quiet(self, client, monkeypatch):
        events = use_service(client, monkeypatch, FakeEvents(outcome=http_error(404)))

        await client.delete('alice', 'abc')

        assert events.deleted == ['abc']
