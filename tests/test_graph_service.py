"""Tests for the Graph delta client against a mocked transport."""

import httpx
import pytest

from calmirror.services import (
    AuthenticationError, CalendarServiceError, CursorExpiredError, GraphCalendarService, TransientRemoteError
)

from conftest import make_settings

BASE = 'https://graph.microsoft.com/v1.0'


def graph_event(event_id, **fields):
    item = {
        'id': event_id,
        'iCalUId': f'uid-{event_id}',
        'subject': 'Staff Meeting',
        'start': {'dateTime': '2024-03-01T10:00:00.0000000', 'timeZone': 'UTC'},
        'end': {'dateTime': '2024-03-01T11:00:00.0000000', 'timeZone': 'UTC'},
        'location': {'displayName': 'Main Chapel'},
        'body': {'contentType': 'text', 'content': 'Setup: 30 min'},
        'lastModifiedDateTime': '2024-02-01T08:00:00Z',
        'changeKey': 'ck-1',
    }
    item.update(fields)
    return item


class Recorder:
    """Serves queued responses and keeps the requests it saw."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return self.responses.pop(0)


@pytest.fixture
def make_service(tmp_path):
    def _make(*responses, **overrides):
        recorder = Recorder(*responses)
        service = GraphCalendarService(make_settings(tmp_path, **overrides), transport=httpx.MockTransport(recorder))
        return service, recorder
    return _make


@pytest.mark.asyncio
async def test_first_page_builds_delta_url_and_headers(make_service):
    service, recorder = make_service(httpx.Response(200, json={
        'value': [graph_event('AAMk-1')],
        '@odata.nextLink': f'{BASE}/users/owner/calendars/cal/events/delta?$skiptoken=abc',
    }))

    page = await service.fetch_delta_page('owner@example.com', 'cal-1', page_size=50)
    await service.close()

    request = recorder.requests[0]
    assert request.url.path == '/v1.0/users/owner@example.com/calendars/cal-1/events/delta'
    assert request.headers['Authorization'] == 'Bearer test-token'
    assert 'odata.maxpagesize=50' in request.headers['Prefer']
    assert page.continuation.endswith('$skiptoken=abc')
    assert page.new_delta_token is None
    assert not page.is_final


@pytest.mark.asyncio
async def test_final_page_and_event_mapping(make_service):
    delta_link = f'{BASE}/users/owner/calendars/cal/events/delta?$deltatoken=xyz'
    service, recorder = make_service(httpx.Response(200, json={
        'value': [
            graph_event('AAMk-1', attendees=[{
                'type': 'required',
                'emailAddress': {'address': 'jane@example.com', 'name': 'Jane'},
                'status': {'response': 'accepted'},
            }]),
            graph_event('AAMk-2', location={}, locations=[{'displayName': 'Room 402'}, {'displayName': 'Nursery'}]),
            {'id': 'AAMk-3', '@removed': {'reason': 'deleted'}},
        ],
        '@odata.deltaLink': delta_link,
    }))

    page = await service.fetch_delta_page('owner', 'cal', continuation=f'{BASE}/next')

    assert str(recorder.requests[0].url) == f'{BASE}/next'
    assert page.is_final
    assert page.new_delta_token == delta_link

    first, second, removed = page.items
    assert first.global_uid == 'uid-AAMk-1'
    assert first.location == 'Main Chapel'
    assert first.body == 'Setup: 30 min'
    assert first.attendees[0]['email'] == 'jane@example.com'
    assert first.start.hour == 10
    assert second.location == 'Room 402; Nursery'
    assert removed.removed
    assert removed.id == 'AAMk-3'


@pytest.mark.asyncio
async def test_stored_cursor_is_requested_verbatim(make_service):
    token = f'{BASE}/users/owner/calendars/cal/events/delta?$deltatoken=old'
    service, recorder = make_service(httpx.Response(200, json={'value': [], '@odata.deltaLink': token}))

    await service.fetch_delta_page('owner', 'cal', cursor_token=token)

    url = recorder.requests[0].url
    assert url.path == '/v1.0/users/owner/calendars/cal/events/delta'
    assert url.params['$deltatoken'] == 'old'


@pytest.mark.asyncio
async def test_unformattable_item_is_reported(make_service):
    service, _ = make_service(httpx.Response(200, json={
        'value': [{'subject': 'no id'}, graph_event('AAMk-1')],
        '@odata.deltaLink': 'd',
    }))

    page = await service.fetch_delta_page('owner', 'cal')

    assert [item.id for item in page.items] == ['AAMk-1']
    assert page.malformed[0]['remote_id'] == ''
    assert 'id' in page.malformed[0]['reason']


@pytest.mark.asyncio
async def test_gone_maps_to_cursor_expired(make_service):
    service, _ = make_service(httpx.Response(410, json={'error': {'code': 'SyncStateNotFound'}}))

    with pytest.raises(CursorExpiredError):
        await service.fetch_delta_page('owner', 'cal', cursor_token=f'{BASE}/delta?$deltatoken=old')


@pytest.mark.asyncio
async def test_unauthorized_is_not_retried(make_service):
    service, recorder = make_service(
        httpx.Response(401, json={'error': {'message': 'Access token has expired'}}),
        retry_attempts=3,
    )

    with pytest.raises(AuthenticationError) as exc_info:
        await service.fetch_delta_page('owner', 'cal')

    assert 'Access token has expired' in str(exc_info.value)
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried(make_service):
    service, recorder = make_service(
        httpx.Response(503, text='busy'),
        httpx.Response(429, headers={'Retry-After': '0'}),
        httpx.Response(200, json={'value': [], '@odata.deltaLink': 'd'}),
        retry_attempts=3,
    )

    page = await service.fetch_delta_page('owner', 'cal')

    assert page.new_delta_token == 'd'
    assert len(recorder.requests) == 3


@pytest.mark.asyncio
async def test_retries_exhausted_raise_transient(make_service):
    service, recorder = make_service(
        httpx.Response(502), httpx.Response(502),
        retry_attempts=2,
    )

    with pytest.raises(TransientRemoteError):
        await service.fetch_delta_page('owner', 'cal')
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_other_client_errors(make_service):
    service, _ = make_service(httpx.Response(404, json={'error': {'message': 'Calendar not found'}}))

    with pytest.raises(CalendarServiceError) as exc_info:
        await service.fetch_delta_page('owner', 'missing')

    assert exc_info.value.status_code == 404
    assert not isinstance(exc_info.value, TransientRemoteError)


@pytest.mark.asyncio
async def test_missing_token(make_service):
    service, recorder = make_service(graph_access_token=None)

    with pytest.raises(AuthenticationError):
        await service.fetch_delta_page('owner', 'cal')
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_connection_check(make_service):
    service, recorder = make_service(
        httpx.Response(200, json={'value': [graph_event('AAMk-1')], '@odata.nextLink': f'{BASE}/next'}),
        httpx.Response(403, json={'error': {'message': 'Forbidden'}}),
    )

    ok = await service.test_connection('owner', 'cal')
    denied = await service.test_connection('owner', 'cal')

    assert ok == {'success': True, 'sample_events': 1, 'has_more': True}
    assert 'odata.maxpagesize=1' in recorder.requests[0].headers['Prefer']
    assert denied['success'] is False
    assert denied['error_type'] == 'AuthenticationError'
