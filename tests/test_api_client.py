from datetime import datetime

import pytest
import requests

from api_client import ApiError, ClubApiClient
from datetime_utils import POLICY_STRICT


class FakeResponse:
    def __init__(self, status_code, payload=None, text=''):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError('No JSON object could be decoded')
        return self._payload


class FakeSession:
    """Records each call and replays a canned response"""

    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse(200, {'success': True})
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response


def make_client(session, **kwargs):
    kwargs.setdefault('clock', lambda: datetime(2025, 6, 1, 12, 0, 0))
    return ClubApiClient('http://club.test/api/', session=session, **kwargs)


def test_create_event_sends_wire_datetime_and_token():
    session = FakeSession(FakeResponse(201, {'success': True, 'event': {'id': 1}}))
    client = make_client(session, token_provider=lambda: 'abc123')

    event = client.create_event('2025-12-27', '16:32', title='React Workshop', location='Tech Lab')

    assert event == {'id': 1}
    method, url, kwargs = session.calls[0]
    assert (method, url) == ('POST', 'http://club.test/api/events')
    assert kwargs['json'] == {'title': 'React Workshop', 'location': 'Tech Lab',
                              'datetime': '2025-12-27T16:32:00'}
    assert kwargs['headers']['Authorization'] == 'Bearer abc123'


def test_past_event_is_rejected_before_sending():
    session = FakeSession()
    client = make_client(session)

    with pytest.raises(ApiError) as exc_info:
        client.create_event('2025-06-01', '11:50', title='Too late')

    assert exc_info.value.field == 'datetime'
    assert '5 minutes' in exc_info.value.message
    assert session.calls == []


def test_client_policy_is_configurable():
    session = FakeSession(FakeResponse(201, {'event': {'id': 2}}))
    lenient = make_client(session)
    lenient.create_event('2025-06-01', '11:59', title='Just now')

    strict = make_client(FakeSession(), policy=POLICY_STRICT)
    with pytest.raises(ApiError):
        strict.create_event('2025-06-01', '11:59', title='Just now')


def test_malformed_date_is_rejected_locally():
    session = FakeSession()
    with pytest.raises(ApiError) as exc_info:
        make_client(session).create_event('27/12/2025', '16:32')
    assert 'YYYY-MM-DD' in exc_info.value.message
    assert session.calls == []


def test_update_without_schedule_skips_validation():
    session = FakeSession(FakeResponse(200, {'event': {'id': 3, 'title': 'New title'}}))
    make_client(session).update_event(3, title='New title')
    assert session.calls[0][2]['json'] == {'title': 'New title'}


def test_date_only_update_is_left_to_the_server():
    session = FakeSession(FakeResponse(200, {'event': {'id': 1, 'datetime': '2025-09-01T10:00:00'}}))
    event = make_client(session).update_event(1, date_str='2025-09-01')

    assert event['datetime'] == '2025-09-01T10:00:00'
    method, url, kwargs = session.calls[0]
    assert (method, url) == ('PUT', 'http://club.test/api/events/1')
    assert kwargs['json'] == {'date': '2025-09-01'}


def test_time_only_update_rejected_by_server():
    session = FakeSession(FakeResponse(400, {'success': False, 'field': 'datetime',
                                             'error': 'Event date and time cannot be more than 5 minutes in the past'}))
    with pytest.raises(ApiError) as exc_info:
        make_client(session).update_event(1, time_str='08:00')
    assert session.calls[0][2]['json'] == {'time': '08:00'}
    assert exc_info.value.field == 'datetime'


def test_full_schedule_update_is_checked_locally():
    session = FakeSession()
    with pytest.raises(ApiError):
        make_client(session).update_event(1, date_str='2025-05-01', time_str='10:00')
    assert session.calls == []


def test_no_token_means_no_auth_header():
    session = FakeSession(FakeResponse(200, {'events': []}))
    assert make_client(session).list_events(category='Workshop') == []
    _, _, kwargs = session.calls[0]
    assert 'Authorization' not in kwargs['headers']
    assert kwargs['params'] == {'category': 'Workshop'}


def test_server_error_message_is_propagated():
    session = FakeSession(FakeResponse(400, {'success': False, 'error': 'Event date and time must be in the future',
                                             'field': 'datetime'}))
    with pytest.raises(ApiError) as exc_info:
        make_client(session).create_event('2025-07-01', '10:00', title='x')
    assert exc_info.value.status_code == 400
    assert exc_info.value.field == 'datetime'
    assert exc_info.value.message == 'Event date and time must be in the future'


def test_unauthorized_calls_hook():
    expired = []
    session = FakeSession(FakeResponse(401, {'error': 'Unauthorized'}))
    client = make_client(session, token_provider=lambda: 'stale', on_unauthorized=lambda: expired.append(True))

    with pytest.raises(ApiError) as exc_info:
        client.delete_event(4)
    assert exc_info.value.status_code == 401
    assert expired == [True]


def test_non_json_error_body():
    session = FakeSession(FakeResponse(502, text='Bad Gateway'))
    with pytest.raises(ApiError) as exc_info:
        make_client(session).get_event(1)
    assert exc_info.value.message == 'Bad Gateway'


def test_network_error_becomes_api_error():
    session = FakeSession(error=requests.exceptions.ConnectionError('connection refused'))
    with pytest.raises(ApiError) as exc_info:
        make_client(session).upcoming_events()
    assert exc_info.value.message.startswith('Network error')
    assert exc_info.value.status_code is None


def test_login_returns_token():
    session = FakeSession(FakeResponse(200, {'success': True, 'token': 'tok'}))
    assert make_client(session).login('admin', 'pw') == 'tok'
    assert session.calls[0][2]['json'] == {'username': 'admin', 'password': 'pw'}
