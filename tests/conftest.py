from datetime import datetime

import pytest

import config
import flask_app
from flask_app import app
from storage import Collection

# Every API test runs at this local time
FIXED_NOW = datetime(2025, 6, 1, 12, 0, 0)


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / 'data')


@pytest.fixture
def client(data_dir, monkeypatch):
    monkeypatch.setitem(app.config, 'DATA_DIR', data_dir)
    monkeypatch.setitem(app.config, 'TESTING', True)
    monkeypatch.setitem(app.config, 'MAIL_SUPPRESS_SEND', True)
    monkeypatch.setitem(app.config, 'MAIL_DEFAULT_SENDER', 'club@example.com')
    monkeypatch.setitem(app.config, 'ALLOWED_EMAIL_DOMAINS', [])
    monkeypatch.setitem(app.config, 'EVENT_PAST_POLICY', 'tolerance')
    monkeypatch.setitem(app.config, 'EVENT_PAST_TOLERANCE_MINUTES', 5)
    monkeypatch.setattr(flask_app, 'get_local_now', lambda: FIXED_NOW)
    flask_app._admin_tokens.clear()
    flask_app.initialize_data_dir()
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def auth_headers(client):
    resp = client.post('/api/auth/login', json={
        'username': config.ADMIN_USERNAME,
        'password': config.ADMIN_PASSWORD,
    })
    assert resp.status_code == 200
    return {'Authorization': f"Bearer {resp.get_json()['token']}"}


@pytest.fixture
def seed(data_dir):
    """Insert documents straight into a collection, bypassing API validation"""
    def _seed(name, /, **document):
        _, _, stored = Collection(data_dir, name).insert(document)
        return stored
    return _seed
