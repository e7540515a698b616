from io import BytesIO

from openpyxl import load_workbook

from flask_app import app, mail


def test_register_member_with_split_name(client):
    with mail.record_messages() as outbox:
        resp = client.post('/api/members/register', json={
            'firstName': 'Grace',
            'lastName': 'Hopper',
            'email': 'grace@uni.edu',
            'program': 'Computer Science',
            'studentId': 'S123',
            'year': '2',
        })
    assert resp.status_code == 201
    payload = resp.get_json()
    assert payload['success'] is True
    assert payload['memberId'] == 1
    assert payload['email_sent'] is True
    assert outbox[0].recipients == ['grace@uni.edu']


def test_register_member_alias_route_and_duplicates(client):
    body = {'fullName': 'Alan Turing', 'email': 'alan@uni.edu', 'student_id': 'S9'}
    assert client.post('/api/members', json=body).status_code == 201

    dup_email = client.post('/api/members', json=dict(body, email='ALAN@uni.edu', student_id='S10'))
    assert dup_email.status_code == 400
    assert dup_email.get_json()['error'] == 'Member with this email already exists'

    dup_student = client.post('/api/members', json=dict(body, email='other@uni.edu'))
    assert dup_student.status_code == 400
    assert 'student ID' in dup_student.get_json()['error']


def test_register_member_requires_name_and_valid_email(client):
    assert client.post('/api/members/register', json={'email': 'a@uni.edu'}).status_code == 400
    resp = client.post('/api/members/register', json={'full_name': 'A', 'email': 'nope'})
    assert resp.status_code == 400
    assert resp.get_json()['field'] == 'email'
    resp = client.post('/api/members/register', json={'full_name': 'A', 'email': 'a@uni.edu', 'year': 'first'})
    assert resp.get_json()['field'] == 'year'


def test_allowed_email_domains(client, monkeypatch):
    monkeypatch.setitem(app.config, 'ALLOWED_EMAIL_DOMAINS', ['uni.edu'])
    resp = client.post('/api/members/register', json={'full_name': 'A', 'email': 'a@gmail.com'})
    assert resp.status_code == 400
    assert 'uni.edu' in resp.get_json()['error']
    assert client.post('/api/members/register',
                       json={'full_name': 'A', 'email': 'a@uni.edu'}).status_code == 201


def test_member_admin_routes(client, auth_headers):
    client.post('/api/members', json={'full_name': 'Ada', 'email': 'ada@uni.edu'})
    client.post('/api/members', json={'full_name': 'Bob', 'email': 'bob@uni.edu'})

    assert client.get('/api/members').status_code == 401
    listing = client.get('/api/members', headers=auth_headers).get_json()
    assert listing['count'] == 2

    resp = client.put('/api/members/1', json={'status': 'inactive', 'department': 'Math'},
                      headers=auth_headers)
    assert resp.status_code == 200
    assert resp.get_json()['member']['status'] == 'inactive'
    assert resp.get_json()['member']['department'] == 'Math'

    clash = client.put('/api/members/1', json={'email': 'bob@uni.edu'}, headers=auth_headers)
    assert clash.status_code == 400

    active = client.get('/api/members?status=active', headers=auth_headers).get_json()
    assert [m['full_name'] for m in active['members']] == ['Bob']

    assert client.delete('/api/members/2', headers=auth_headers).status_code == 200
    assert client.get('/api/members/2', headers=auth_headers).status_code == 404


def test_export_members_to_excel(client, auth_headers):
    client.post('/api/members', json={'full_name': 'Ada', 'email': 'ada@uni.edu',
                                      'interests': 'robotics'})

    resp = client.get('/api/admin/members/export', headers=auth_headers)
    assert resp.status_code == 200
    assert resp.mimetype == 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

    sheet = load_workbook(BytesIO(resp.data)).active
    assert sheet.cell(row=1, column=2).value == 'Full Name'
    assert sheet.cell(row=2, column=2).value == 'Ada'
    assert sheet.cell(row=2, column=8).value == 'robotics'
