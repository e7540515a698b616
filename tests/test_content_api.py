import flask_app
from flask_app import mail


def test_health(client):
    payload = client.get('/api/health').get_json()
    assert payload['status'] == 'ok'
    assert payload['timestamp'] == '2025-06-01T12:00:00'


def test_auth_verify_and_logout(client, auth_headers):
    assert client.get('/api/auth/verify', headers=auth_headers).get_json()['valid'] is True
    assert client.post('/api/auth/login', json={'username': 'admin', 'password': 'wrong'}).status_code == 401

    assert client.post('/api/auth/logout', headers=auth_headers).status_code == 200
    assert client.get('/api/auth/verify', headers=auth_headers).status_code == 401


def test_club_info_hides_mail_settings(client, auth_headers):
    resp = client.put('/api/admin/club-info',
                      json={'tagline': 'Build things', 'email_config': {'MAIL_USERNAME': 'secret'}},
                      headers=auth_headers)
    assert resp.status_code == 200

    public = client.get('/api/club-info').get_json()
    assert public['tagline'] == 'Build things'
    assert public['short_name'] == 'ESCDC'
    assert 'email_config' not in public

    admin = client.get('/api/admin/club-info', headers=auth_headers).get_json()
    assert admin['email_config'] == {'MAIL_USERNAME': 'secret'}


def test_dashboard_counts(client, auth_headers, seed):
    seed('events', title='Next', datetime='2025-07-01T10:00:00', status='upcoming')
    seed('events', title='Done', datetime='2025-01-01T10:00:00', status='completed')
    seed('contacts', name='A', email='a@example.com', message='hi', status='new')

    stats = client.get('/api/admin/dashboard', headers=auth_headers).get_json()
    assert stats['events_count'] == 2
    assert stats['upcoming_events_count'] == 1
    assert stats['new_messages_count'] == 1
    assert client.get('/api/admin/dashboard').status_code == 401


def test_contact_flow(client, auth_headers):
    resp = client.post('/api/contact', json={'name': 'Ada', 'email': 'ada@example.com',
                                             'subject': 'Sponsorship', 'message': 'Can we talk?'})
    assert resp.status_code == 201
    contact_id = resp.get_json()['contact']['id']
    assert client.post('/api/contact', json={'name': 'Ada', 'email': 'ada@example.com'}).status_code == 400

    listing = client.get('/api/contact?status=new', headers=auth_headers).get_json()
    assert listing['count'] == 1

    resp = client.patch(f'/api/contact/{contact_id}/status', json={'status': 'read'}, headers=auth_headers)
    assert resp.get_json()['contact']['status'] == 'read'
    resp = client.patch(f'/api/contact/{contact_id}/status', json={'status': 'spam'}, headers=auth_headers)
    assert resp.status_code == 400

    with mail.record_messages() as outbox:
        resp = client.post(f'/api/contact/{contact_id}/reply', json={'reply_message': 'Sure, email us'},
                           headers=auth_headers)
    assert resp.status_code == 200
    assert resp.get_json()['contact']['status'] == 'replied'
    assert outbox[0].subject == 'Re: Sponsorship'
    assert outbox[0].recipients == ['ada@example.com']

    assert client.delete(f'/api/contact/{contact_id}', headers=auth_headers).status_code == 200
    assert client.delete(f'/api/contact/{contact_id}', headers=auth_headers).status_code == 404


def test_contact_reply_mail_failure(client, auth_headers, seed, monkeypatch):
    contact = seed('contacts', name='A', email='a@example.com', message='hi', status='new')
    monkeypatch.setattr(flask_app, 'send_contact_reply', lambda contact, message: False)

    resp = client.post(f"/api/contact/{contact['id']}/reply", json={'reply_message': 'hello'},
                       headers=auth_headers)
    assert resp.status_code == 502

    listing = client.get('/api/contact', headers=auth_headers).get_json()
    assert listing['contacts'][0]['status'] == 'new'


def test_leadership_ordering(client, auth_headers):
    for name, position in (('Sam', 'Treasurer'), ('Pat', 'President'), ('Lee', 'Mentor'), ('Vic', 'Vice President')):
        resp = client.post('/api/leadership', json={'name': name, 'position': position}, headers=auth_headers)
        assert resp.status_code == 201

    leaders = client.get('/api/leadership').get_json()['leaders']
    assert [leader['name'] for leader in leaders] == ['Pat', 'Vic', 'Sam', 'Lee']

    # Explicit display order wins over position rank
    client.put('/api/leadership/2', json={'displayOrder': 5}, headers=auth_headers)
    assert client.put('/api/leadership/3', json={'display_order': 'first'}, headers=auth_headers).status_code == 400
    leaders = client.get('/api/leadership').get_json()['leaders']
    assert [leader['name'] for leader in leaders] == ['Vic', 'Sam', 'Lee', 'Pat']

    client.put('/api/leadership/1', json={'status': 'inactive'}, headers=auth_headers)
    leaders = client.get('/api/leadership').get_json()['leaders']
    assert [leader['name'] for leader in leaders] == ['Vic', 'Lee', 'Pat']
    admin = client.get('/api/leadership/admin', headers=auth_headers).get_json()
    assert admin['count'] == 4

    assert client.post('/api/leadership', json={'name': 'No Role'}, headers=auth_headers).status_code == 400
    assert client.delete('/api/leadership/2', headers=auth_headers).status_code == 200


def test_gallery_crud(client, auth_headers):
    resp = client.post('/api/gallery', json={'title': 'Hackathon', 'url': 'https://img.example.com/1.jpg',
                                             'category': 'hackathon'}, headers=auth_headers)
    assert resp.status_code == 201
    item = resp.get_json()['item']
    assert item['image_url'] == 'https://img.example.com/1.jpg'
    client.post('/api/gallery', json={'title': 'Talk', 'image_url': 'https://img.example.com/2.jpg'},
                headers=auth_headers)

    assert client.get('/api/gallery').get_json()['count'] == 2
    assert client.get('/api/gallery?category=hackathon').get_json()['count'] == 1
    assert client.post('/api/gallery', json={'title': 'No image'}, headers=auth_headers).status_code == 400

    resp = client.put(f"/api/gallery/{item['id']}", json={'title': 'Hackathon 2025'}, headers=auth_headers)
    assert resp.get_json()['item']['title'] == 'Hackathon 2025'
    assert client.delete(f"/api/gallery/{item['id']}", headers=auth_headers).status_code == 200
    assert client.put(f"/api/gallery/{item['id']}", json={}, headers=auth_headers).status_code == 404


def test_resources_and_categories(client, auth_headers):
    for title, category in (('Pitch deck guide', 'Startups'), ('CV template', 'Careers'),
                            ('Accounting 101', 'Startups')):
        resp = client.post('/api/resources', json={'title': title, 'url': 'https://example.com',
                                                   'category': category}, headers=auth_headers)
        assert resp.status_code == 201
    client.put('/api/resources/2', json={'status': 'inactive'}, headers=auth_headers)

    resources = client.get('/api/resources').get_json()['resources']
    assert [r['title'] for r in resources] == ['Accounting 101', 'Pitch deck guide']

    categories = client.get('/api/resources/categories').get_json()['categories']
    assert categories == [{'name': 'Startups', 'resource_count': 2}]

    bad = client.post('/api/resources', json={'title': 't', 'url': 'u', 'type': 'podcast'}, headers=auth_headers)
    assert bad.status_code == 400
    assert client.delete('/api/resources/1', headers=auth_headers).status_code == 200


def test_unknown_route_returns_json(client):
    resp = client.get('/api/nothing-here')
    assert resp.status_code == 404
    assert resp.get_json() == {'error': 'Not found'}


def test_contact_rejects_array_body(client):
    resp = client.post('/api/contact', json=[1, 2])
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Name, email and message are required'

    resp = client.post('/api/contact', json={'name': 'A', 'email': 7, 'message': 'hi'})
    assert resp.status_code == 400
