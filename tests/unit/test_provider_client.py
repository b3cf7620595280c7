"""
プロバイダークライアントのテスト（偽のGoogle Calendar APIを使用）
"""

from datetime import datetime, timedelta, timezone

import aiohttp
import pytest

from clinic_calendar_sync.config.enhanced_config import ProviderConfig
from clinic_calendar_sync.core.exceptions import (
    EventNotFound, InvalidZone, MalformedEvent, ProviderRateLimited, ProviderRejected, ProviderUnavailable,
    ReauthorizationRequired
)
from clinic_calendar_sync.core.time_representation import TimeRange
from clinic_calendar_sync.layers.provider_layer.provider_client import SYNC_SOURCE, ProviderClient

from conftest import API_BASE, EVENTS_URL, FakeResponse, make_appointment

MARCH = TimeRange(datetime(2025, 3, 1, tzinfo=timezone.utc), datetime(2025, 4, 1, tzinfo=timezone.utc))


def _add_busy(calendar, count, day=3):
    ids = []
    for index in range(count):
        start = datetime(2025, 3, day, 14 + index, 0, tzinfo=timezone.utc)
        ids.append(calendar.add_event(f"Busy {index}", start.isoformat(), (start + timedelta(minutes=30)).isoformat()))
    return ids


class TestListBusyEvents:
    """予定一覧の取得"""

    @pytest.mark.asyncio
    async def test_all_pages_are_fetched(self, vault, session, calendar, connection):
        client = ProviderClient(vault, session, ProviderConfig(api_base_url=API_BASE, page_size=2))
        expected = _add_busy(calendar, 5)

        listing = await client.list_busy_events(connection.id, MARCH)

        assert [event.external_id for event in listing] == expected
        assert listing.pages == 3
        assert not listing.truncated

    @pytest.mark.asyncio
    async def test_request_parameters(self, provider_client, session, connection):
        await provider_client.list_busy_events(connection.id, MARCH)

        params = session.calls_to(EVENTS_URL, 'GET')[0]['params']
        assert params['timeMin'] == "2025-03-01T00:00:00Z"
        assert params['timeMax'] == "2025-04-01T00:00:00Z"
        assert params['singleEvents'] == 'true'
        assert params['orderBy'] == 'startTime'

    @pytest.mark.asyncio
    async def test_transparent_and_cancelled_are_filtered(self, provider_client, calendar, connection):
        busy = calendar.add_event("Dentist", "2025-03-03T15:00:00Z", "2025-03-03T16:00:00Z")
        calendar.add_event("Focus time", "2025-03-03T17:00:00Z", "2025-03-03T18:00:00Z", transparency="transparent")
        calendar.add_event("Dropped", "2025-03-04T17:00:00Z", "2025-03-04T18:00:00Z", status="cancelled")

        listing = await provider_client.list_busy_events(connection.id, MARCH)

        assert [event.external_id for event in listing] == [busy]
        assert all(event.is_busy for event in listing)
        assert listing.skipped_free == 1

    @pytest.mark.asyncio
    async def test_cap_truncates_listing(self, vault, session, calendar, connection):
        client = ProviderClient(vault, session, ProviderConfig(api_base_url=API_BASE, page_size=2, max_events=3))
        _add_busy(calendar, 5)

        listing = await client.list_busy_events(connection.id, MARCH)

        assert len(listing) == 3
        assert listing.truncated

    @pytest.mark.asyncio
    async def test_exactly_at_cap_is_not_truncated(self, vault, session, calendar, connection):
        client = ProviderClient(vault, session, ProviderConfig(api_base_url=API_BASE, page_size=2, max_events=4))
        _add_busy(calendar, 4)

        listing = await client.list_busy_events(connection.id, MARCH)

        assert len(listing) == 4
        assert not listing.truncated

    @pytest.mark.asyncio
    async def test_all_day_and_zoned_events_are_normalized(self, provider_client, calendar, connection):
        all_day = calendar.add_event("Conference", "2025-03-09", "2025-03-10", all_day=True)
        zoned = calendar.add_event("Lunch", "2025-03-10T12:00:00", "2025-03-10T13:00:00", time_zone="Asia/Tokyo")

        listing = await provider_client.list_busy_events(connection.id, MARCH, default_zone="America/Chicago")
        events = {event.external_id: event for event in listing}

        assert events[all_day].all_day
        assert events[all_day].start == datetime(2025, 3, 9, 6, 0, tzinfo=timezone.utc)
        assert events[all_day].end == datetime(2025, 3, 10, 5, 0, tzinfo=timezone.utc)
        assert events[zoned].start == datetime(2025, 3, 10, 3, 0, tzinfo=timezone.utc)
        assert events[zoned].last_modified is not None

    @pytest.mark.asyncio
    async def test_unreadable_events_are_reported_not_dropped(self, provider_client, calendar, connection):
        busy = calendar.add_event("Dentist", "2025-03-03T15:00:00Z", "2025-03-03T16:00:00Z")
        broken = calendar.add_event("Broken", "2025-03-04T15:00:00Z", "2025-03-04T16:00:00Z")
        calendar.events[broken]["end"] = {}
        mars = calendar.add_event("Retreat", "2025-03-05", "2025-03-06", all_day=True, time_zone="Mars/Olympus")

        listing = await provider_client.list_busy_events(connection.id, MARCH)

        assert [event.external_id for event in listing] == [busy]
        rejected = dict(listing.rejected)
        assert isinstance(rejected[broken], MalformedEvent)
        assert isinstance(rejected[mars], InvalidZone)

    @pytest.mark.asyncio
    async def test_get_event_raises_for_unreadable_event(self, provider_client, calendar, connection):
        broken = calendar.add_event("Broken", "2025-03-04T15:00:00Z", "2025-03-04T16:00:00Z")
        calendar.events[broken]["start"] = "2025-03-04T15:00:00Z"

        with pytest.raises(MalformedEvent) as exc_info:
            await provider_client.get_event(connection.id, broken)

        assert exc_info.value.details["external_event_id"] == broken


class TestAuthorizationRetry:
    """401時の強制リフレッシュ"""

    @pytest.mark.asyncio
    async def test_401_triggers_exactly_one_refresh(self, provider_client, calendar, connection, session):
        calendar.valid_access_tokens.clear()
        _add_busy(calendar, 1)

        listing = await provider_client.list_busy_events(connection.id, MARCH)

        assert len(listing) == 1
        assert calendar.refresh_grants == 1
        assert len(session.calls_to(EVENTS_URL, 'GET')) == 2

    @pytest.mark.asyncio
    async def test_second_401_requires_reauthorization(self, provider_client, calendar, connection):
        calendar.fail_next('GET', 401, 401)

        with pytest.raises(ReauthorizationRequired):
            await provider_client.list_busy_events(connection.id, MARCH)

        assert calendar.refresh_grants == 1

    @pytest.mark.asyncio
    async def test_401_with_revoked_refresh_token(self, provider_client, calendar, connection):
        calendar.valid_access_tokens.clear()
        calendar.valid_refresh_tokens.clear()

        with pytest.raises(ReauthorizationRequired):
            await provider_client.list_busy_events(connection.id, MARCH)


class TestStatusMapping:
    """HTTPステータスと例外の対応"""

    @pytest.mark.asyncio
    async def test_429_with_retry_after(self, provider_client, calendar, connection):
        calendar.fail_next('GET', FakeResponse(429, {'error': {'message': 'Too many'}}, headers={'Retry-After': '7'}))

        with pytest.raises(ProviderRateLimited) as exc_info:
            await provider_client.list_busy_events(connection.id, MARCH)

        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_403_rate_limit_reason(self, provider_client, calendar, connection):
        calendar.fail_next('GET', FakeResponse(403, {'error': {
            'code': 403, 'message': 'Rate Limit Exceeded',
            'errors': [{'domain': 'usageLimits', 'reason': 'rateLimitExceeded'}]
        }}))

        with pytest.raises(ProviderRateLimited):
            await provider_client.list_busy_events(connection.id, MARCH)

    @pytest.mark.asyncio
    async def test_403_forbidden_is_rejected(self, provider_client, calendar, connection):
        calendar.fail_next('GET', FakeResponse(403, {'error': {
            'code': 403, 'message': 'Forbidden', 'errors': [{'reason': 'forbidden'}]
        }}))

        with pytest.raises(ProviderRejected) as exc_info:
            await provider_client.list_busy_events(connection.id, MARCH)

        assert exc_info.value.status == 403
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fault", [500, 503, aiohttp.ClientConnectionError("reset")])
    async def test_server_and_network_errors_are_unavailable(self, provider_client, calendar, connection, fault):
        calendar.fail_next('GET', fault)

        with pytest.raises(ProviderUnavailable):
            await provider_client.list_busy_events(connection.id, MARCH)


class TestEventWrites:
    """作成・更新・削除・単一取得"""

    @pytest.mark.asyncio
    async def test_create_event_payload(self, provider_client, calendar, connection):
        appointment = make_appointment("appt-1", datetime(2025, 3, 9, 7, 30, tzinfo=timezone.utc), minutes=120,
                                       notes="Bring intake forms")

        external_id = await provider_client.create_event(connection.id, appointment, "America/Chicago")

        body = calendar.events[external_id]
        assert body['summary'] == "Session appt-1"
        assert body['description'] == "Bring intake forms"
        assert body['start'] == {'dateTime': '2025-03-09T01:30:00-06:00', 'timeZone': 'America/Chicago'}
        assert body['end'] == {'dateTime': '2025-03-09T04:30:00-05:00', 'timeZone': 'America/Chicago'}
        assert body['extendedProperties']['private'] == {
            'clinic_appointment_id': 'appt-1', 'sync_source': SYNC_SOURCE
        }

    @pytest.mark.asyncio
    async def test_update_missing_event_raises_not_found(self, provider_client, connection):
        appointment = make_appointment("appt-1", datetime(2025, 3, 3, 15, 0, tzinfo=timezone.utc))

        with pytest.raises(EventNotFound):
            await provider_client.update_event(connection.id, "evt-missing", appointment, "America/Chicago")

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, provider_client, calendar, connection):
        [event_id] = _add_busy(calendar, 1)

        assert await provider_client.delete_event(connection.id, event_id) is True
        assert await provider_client.delete_event(connection.id, event_id) is False
        assert event_id not in calendar.events

    @pytest.mark.asyncio
    async def test_get_event(self, provider_client, calendar, connection):
        busy = calendar.add_event("Dentist", "2025-03-03T15:00:00Z", "2025-03-03T16:00:00Z")
        free = calendar.add_event("Focus", "2025-03-03T17:00:00Z", "2025-03-03T18:00:00Z", transparency="transparent")

        assert (await provider_client.get_event(connection.id, busy)).title == "Dentist"
        assert (await provider_client.get_event(connection.id, free)).is_busy is False
        assert await provider_client.get_event(connection.id, "evt-missing") is None
