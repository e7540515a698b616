"""
Client for the club REST API.

The session token is passed in as a callable (token_provider) rather than read
from shared state, so whatever issues requests decides where the token lives.
Event create/update run the same date/time check as the server before sending.
"""

import logging
from datetime import datetime

import requests

import config
from datetime_utils import DEFAULT_TOLERANCE, POLICY_TOLERANCE, to_wire, validate_event_datetime

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Non-2xx response or network failure talking to the club API"""

    def __init__(self, message, status_code=None, field=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.field = field


class ClubApiClient:
    def __init__(self, base_url=None, token_provider=None, session=None, timeout=10,
                 on_unauthorized=None, policy=POLICY_TOLERANCE, tolerance=DEFAULT_TOLERANCE,
                 clock=None):
        self.base_url = (base_url or config.CLUB_API_BASE_URL).rstrip('/')
        self.token_provider = token_provider
        self.session = session or requests.Session()
        self.timeout = timeout
        self.on_unauthorized = on_unauthorized
        self.policy = policy
        self.tolerance = tolerance
        self.clock = clock

    def _headers(self):
        headers = {'Content-Type': 'application/json'}
        token = self.token_provider() if self.token_provider else None
        if token:
            headers['Authorization'] = f'Bearer {token}'
        return headers

    def request(self, method, path, json=None, params=None):
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, json=json, params=params,
                                            headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"{method} {url} failed: {e}")
            raise ApiError(f'Network error: {e}')

        if response.status_code == 401 and self.on_unauthorized:
            self.on_unauthorized()

        try:
            payload = response.json()
        except ValueError:
            payload = {'error': response.text}

        if not 200 <= response.status_code < 300:
            message = payload.get('error') or payload.get('message') or f'HTTP {response.status_code}'
            logger.warning(f"{method} {url} -> {response.status_code}: {message}")
            raise ApiError(message, response.status_code, payload.get('field'))
        return payload

    # Auth

    def login(self, username, password):
        """Returns the admin token; storing it is up to the caller's token_provider"""
        return self.request('POST', '/auth/login', {'username': username, 'password': password})['token']

    def logout(self):
        return self.request('POST', '/auth/logout')

    # Events

    def _event_payload(self, date_str, time_str, fields):
        now = self.clock() if self.clock else datetime.now()
        result = validate_event_datetime(date_str, time_str, now, self.policy, self.tolerance)
        if not result.accepted:
            raise ApiError(result.reason, field='datetime')
        payload = dict(fields)
        payload['datetime'] = to_wire(result.instant)
        return payload

    def list_events(self, **filters):
        return self.request('GET', '/events', params=filters or None)['events']

    def upcoming_events(self):
        return self.request('GET', '/events/upcoming')['events']

    def get_event(self, event_id):
        return self.request('GET', f'/events/{event_id}')['event']

    def create_event(self, date_str, time_str, **fields):
        """Validate the date and time locally, then send them as the `datetime` field"""
        payload = self._event_payload(date_str, time_str, fields)
        return self.request('POST', '/events', payload)['event']

    def update_event(self, event_id, date_str=None, time_str=None, **fields):
        """
        With both date and time the new schedule is checked locally first.
        With only one of them the server fills in the other half from the stored
        event, so it is sent as a plain `date` or `time` field and checked there.
        """
        if date_str is not None and time_str is not None:
            payload = self._event_payload(date_str, time_str, fields)
        else:
            payload = dict(fields)
            if date_str is not None:
                payload['date'] = date_str
            if time_str is not None:
                payload['time'] = time_str
        return self.request('PUT', f'/events/{event_id}', payload)['event']

    def delete_event(self, event_id):
        return self.request('DELETE', f'/events/{event_id}')

    def register_for_event(self, event_id, name, email, **extra):
        payload = dict(extra, name=name, email=email)
        return self.request('POST', f'/events/{event_id}/register', payload)

    # Members, news, contact

    def register_member(self, **fields):
        return self.request('POST', '/members/register', fields)

    def list_news(self, **filters):
        return self.request('GET', '/news', params=filters or None)['news']

    def submit_contact(self, name, email, message, subject=''):
        payload = {'name': name, 'email': email, 'subject': subject, 'message': message}
        return self.request('POST', '/contact', payload)
