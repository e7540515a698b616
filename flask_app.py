from flask import Flask, g, jsonify, request, send_file
from flask_cors import CORS
from flask_mail import Mail, Message
from functools import wraps
from datetime import datetime, timedelta
from html import escape as html_escape
from io import BytesIO
import base64
import logging
import os
import re
import secrets
import time
import uuid

import qrcode
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment
from werkzeug.security import check_password_hash, generate_password_hash

import config
from datetime_utils import (
    POLICY_STRICT,
    MalformedInput,
    check_not_in_past,
    combine_date_and_time,
    is_date_before_today,
    parse_calendar_date,
    split_wire_datetime,
    to_wire,
    validate_event_datetime,
)
from storage import Collection, read_document, write_document

# Configure logging instead of print statements
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def get_local_now():
    """Current local time; event dates and times are entered in this timezone"""
    return datetime.now()


app = Flask(__name__)
# SECURITY: Use environment variable for secret key in production
app.secret_key = config.SECRET_KEY

# CORS: Allow all origins on all endpoints
CORS(app)
app.config['DATA_DIR'] = config.DATA_DIR
app.config['ALLOWED_EMAIL_DOMAINS'] = config.ALLOWED_EMAIL_DOMAINS
app.config['EVENT_PAST_POLICY'] = config.EVENT_PAST_POLICY
app.config['EVENT_PAST_TOLERANCE_MINUTES'] = config.EVENT_PAST_TOLERANCE_MINUTES
app.config['ADMIN_TOKEN_TTL_SECONDS'] = config.ADMIN_TOKEN_TTL_SECONDS
app.config['MAIL_SERVER'] = config.MAIL_SERVER
app.config['MAIL_PORT'] = config.MAIL_PORT
app.config['MAIL_USE_TLS'] = config.MAIL_USE_TLS
app.config['MAIL_USERNAME'] = config.MAIL_USERNAME
app.config['MAIL_PASSWORD'] = config.MAIL_PASSWORD
app.config['MAIL_DEFAULT_SENDER'] = config.MAIL_DEFAULT_SENDER

MAIL_KEYS = ('MAIL_SERVER', 'MAIL_PORT', 'MAIL_USE_TLS', 'MAIL_USERNAME',
             'MAIL_PASSWORD', 'MAIL_DEFAULT_SENDER')
SENSITIVE_CLUB_KEYS = {'email_config', 'admin_password'}

EVENT_STATUSES = ('upcoming', 'ongoing', 'completed', 'cancelled')
NEWS_STATUSES = ('published', 'draft')
MEMBER_STATUSES = ('active', 'inactive')
CONTACT_STATUSES = ('new', 'read', 'replied', 'archived')
RESOURCE_TYPES = ('link', 'document', 'video', 'tool')
ANNOUNCEMENT_STATUSES = ('draft', 'published', 'archived')
ANNOUNCEMENT_VISIBILITY = ('public', 'members')
# Display order: urgent first
ANNOUNCEMENT_PRIORITIES = ('urgent', 'high', 'normal', 'low')
# Unknown or missing priorities sort after 'low'
PRIORITY_RANK = {priority: rank for rank, priority in enumerate(ANNOUNCEMENT_PRIORITIES)}

ADMIN_ROLES = ('super_admin', 'admin', 'editor')
ADMIN_USER_STATUSES = ('active', 'inactive', 'suspended')
MIN_PASSWORD_LENGTH = 6
SETTING_TYPES = ('text', 'number', 'boolean', 'json')

TRUE_STRINGS = ('true', '1', 'yes', 'on')
FALSE_STRINGS = ('false', '0', 'no', 'off')

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# Initialize Flask-Mail (reconfigured before each send)
mail = Mail(app)


# ========================================
# Data helpers
# ========================================

def collection(name):
    return Collection(app.config['DATA_DIR'], name)


def club_info_path():
    return os.path.join(app.config['DATA_DIR'], 'club_info.json')


def load_club_info():
    """Club info document merged over the built-in defaults"""
    club_info = dict(config.DEFAULT_CLUB_INFO)
    club_info.update(read_document(club_info_path(), {}) or {})
    return club_info


def initialize_data_dir():
    """Create the data directory, a default club_info.json and any missing default settings"""
    os.makedirs(app.config['DATA_DIR'], exist_ok=True)
    if not os.path.exists(club_info_path()):
        write_document(club_info_path(), config.DEFAULT_CLUB_INFO)
        logger.info(f"Created default club info in {app.config['DATA_DIR']}")
    seed_defaults('system_settings', config.DEFAULT_SETTINGS)
    seed_defaults('feature_flags', config.DEFAULT_FEATURES)


def configure_mail():
    """Configure Flask-Mail; email_config in club_info.json overrides the environment"""
    email_config = load_club_info().get('email_config', {})
    for key in MAIL_KEYS:
        if key in email_config:
            app.config[key] = email_config[key]
    mail.init_app(app)


def get_json_body():
    """Request JSON object; anything else (arrays, scalars, bad JSON) reads as empty"""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def parse_bool(value, field):
    """Returns (bool, error). Accepts JSON booleans and the usual string forms"""
    if isinstance(value, bool):
        return value, None
    if isinstance(value, str) and value.strip().lower() in TRUE_STRINGS + FALSE_STRINGS:
        return value.strip().lower() in TRUE_STRINGS, None
    if isinstance(value, int) and value in (0, 1):
        return bool(value), None
    return None, f'{field} must be true or false'


def validation_error(message, field=None):
    payload = {'success': False, 'error': message}
    if field:
        payload['field'] = field
    return jsonify(payload), 400


def clean(value):
    return value.strip() if isinstance(value, str) else value


def clean_email(value):
    return value.strip().lower() if isinstance(value, str) else ''


def parse_optional_int(value, field, minimum=None):
    """Returns (value or None, error message or None)"""
    if value is None or value == '':
        return None, None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None, f'{field} must be a whole number'
    if minimum is not None and number < minimum:
        return None, f'{field} must be at least {minimum}'
    return number, None


def parse_pagination(default_limit=50):
    """Returns (limit, offset) or None when the query string is not numeric"""
    try:
        limit = int(request.args.get('limit', default_limit))
        offset = int(request.args.get('offset', 0))
    except ValueError:
        return None
    return max(limit, 0), max(offset, 0)


def check_email(email):
    """Returns an error message, or None if the address is acceptable"""
    if not email or not EMAIL_PATTERN.match(email):
        return 'Please enter a valid email address'
    allowed = app.config.get('ALLOWED_EMAIL_DOMAINS') or []
    domain = email.rsplit('@', 1)[1].lower()
    if allowed and domain not in allowed:
        return f"Email domain must be one of: {', '.join(allowed)}"
    return None


def today():
    return get_local_now().date()


# ========================================
# Event scheduling
# ========================================

def past_date_policy():
    tolerance = timedelta(minutes=app.config['EVENT_PAST_TOLERANCE_MINUTES'])
    return app.config['EVENT_PAST_POLICY'], tolerance


def has_schedule(data):
    return bool(data.get('datetime') or data.get('date') or data.get('time'))


def resolve_event_schedule(data):
    """
    Pull the event date and time out of a request body.
    Accepts the `datetime` wire field or separate `date` and `time` fields.
    Returns (date_str, time_str); raises MalformedInput.
    """
    if data.get('datetime'):
        return split_wire_datetime(data['datetime'])
    return data.get('date') or '', data.get('time') or ''


def validate_event_schedule(date_str, time_str):
    policy, tolerance = past_date_policy()
    result = validate_event_datetime(date_str, time_str, get_local_now(), policy, tolerance)
    if not result.accepted:
        logger.warning(f"Rejected event schedule {date_str} {time_str}: {result.reason}")
    return result


def event_start(event):
    """Combined start datetime of a stored event, or None if the stored value is unreadable"""
    try:
        return combine_date_and_time(*split_wire_datetime(event.get('datetime')))
    except MalformedInput as e:
        logger.error(f"Event #{event.get('id')} has an unreadable datetime: {e.message}")
        return None


def check_publish_date(value, field='publish_date'):
    """Returns an error message for a malformed or past date, else None"""
    try:
        if is_date_before_today(value, today()):
            return f'{field} cannot be in the past'
    except MalformedInput as e:
        return e.message
    return None


# ========================================
# QR codes and mail
# ========================================

def generate_qr_code(data_string):
    """Generate QR code and return as base64 encoded PNG"""
    try:
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(data_string)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        buffer = BytesIO()
        img.save(buffer, format='PNG')
        return base64.b64encode(buffer.getvalue()).decode()
    except Exception as e:
        logger.error(f"QR code generation error: {e}")
        return None


def send_mail(subject, recipient, html_body, qr_code_base64=None):
    """Send an HTML mail, optionally with an inline QR code (cid:qrcode). Returns True on success"""
    try:
        configure_mail()  # Reconfigure mail in case settings changed

        msg = Message(subject=subject, recipients=[recipient])
        msg.html = html_body
        if qr_code_base64:
            msg.attach(
                filename='qrcode.png',
                content_type='image/png',
                data=base64.b64decode(qr_code_base64),
                disposition='inline',
                headers={'Content-ID': '<qrcode>'}
            )
        mail.send(msg)
        return True
    except Exception as e:
        logger.error(f"Email sending error: {e}")
        return False


def _mail_layout(heading, body_html):
    club_info = load_club_info()
    safe_club_name = html_escape(club_info.get('name', ''))
    return f"""
    <html>
        <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
            <h1 style="color: #1f3c88;">{html_escape(heading)}</h1>
            {body_html}
            <hr style="border: none; border-top: 1px solid #ddd; margin: 30px 0;">
            <p style="font-size: 12px; color: #999; text-align: center;">{safe_club_name}</p>
        </body>
    </html>
    """


def send_registration_email(registration, event):
    """Confirmation mail for an event registration, with the registration QR code"""
    qr_code = generate_qr_code(f"{registration['registration_id']}|{registration['email']}|{event['id']}")
    body = f"""
        <p>Dear {html_escape(registration.get('name', 'Participant'))},</p>
        <p>Thank you for registering for <strong>{html_escape(event.get('title', ''))}</strong>
           on {html_escape(event.get('datetime', '').replace('T', ' ')[:16])}
           at {html_escape(event.get('location', ''))}.</p>
        <p>Registration ID: <strong>{html_escape(registration['registration_id'])}</strong></p>
        <p>Please keep this QR code; it may be checked at the entrance:</p>
        <img src="cid:qrcode" alt="QR Code" style="max-width: 250px;"/>
    """
    return send_mail(
        f"Registration Confirmation - {event.get('title', '')}",
        registration['email'],
        _mail_layout('Registration Successful!', body),
        qr_code,
    )


def send_welcome_email(member):
    """Welcome mail for a new member, with the membership QR code"""
    qr_code = generate_qr_code(f"member|{member['id']}|{member['email']}")
    body = f"""
        <p>Dear {html_escape(member.get('full_name', 'Member'))},</p>
        <p>Your membership application has been received. Your member number is
           <strong>{member['id']}</strong>.</p>
        <img src="cid:qrcode" alt="QR Code" style="max-width: 250px;"/>
    """
    return send_mail('Welcome to the club', member['email'], _mail_layout('Welcome!', body), qr_code)


def send_contact_reply(contact, reply_message):
    body = f"""
        <p>Dear {html_escape(contact.get('name', ''))},</p>
        <p>{html_escape(reply_message)}</p>
        <p style="color: #777;">Your message: {html_escape(contact.get('message', ''))}</p>
    """
    return send_mail(
        f"Re: {contact.get('subject') or 'Your message'}",
        contact['email'],
        _mail_layout('Reply from the club', body),
    )


# ========================================
# Admin accounts and tokens
# ========================================

# In-memory admin tokens (token -> {'expires': timestamp, 'user_id': stored user id or None})
_admin_tokens = {}


def _cleanup_tokens():
    """Remove expired tokens"""
    now = time.time()
    expired = [t for t, session in _admin_tokens.items() if session['expires'] < now]
    for t in expired:
        del _admin_tokens[t]


def _generate_admin_token(user_id=None):
    _cleanup_tokens()
    token = secrets.token_urlsafe(32)
    _admin_tokens[token] = {
        'expires': time.time() + app.config['ADMIN_TOKEN_TTL_SECONDS'],
        'user_id': user_id,
    }
    return token


def _revoke_user_tokens(user_id):
    for t in [t for t, session in _admin_tokens.items() if session['user_id'] == user_id]:
        del _admin_tokens[t]


def builtin_admin():
    """The ADMIN_USERNAME account from the environment; always a super admin"""
    return {
        'id': None,
        'username': config.ADMIN_USERNAME,
        'email': '',
        'first_name': '',
        'last_name': '',
        'role': 'super_admin',
        'status': 'active',
        'builtin': True,
    }


def public_user(user):
    return {k: v for k, v in user.items() if k != 'password_hash'}


def _token_account(token):
    """Account behind a live token, or None. Stored accounts must still be active"""
    _cleanup_tokens()
    session = _admin_tokens.get(token)
    if not session:
        return None
    if session['user_id'] is None:
        return builtin_admin()
    user = collection('admin_users').get(session['user_id'])
    if not user or user.get('status') != 'active':
        return None
    return user


def _verify_admin_token(token):
    return _token_account(token) is not None


def _request_token():
    auth = request.headers.get('Authorization', '')
    return auth.replace('Bearer ', '', 1) if auth.startswith('Bearer ') else ''


def api_admin_required(f):
    """Decorator for API routes requiring an admin token of any role"""
    @wraps(f)
    def decorated(*args, **kwargs):
        account = _token_account(_request_token())
        if not account:
            return jsonify({'error': 'Unauthorized'}), 401
        g.admin_user = account
        return f(*args, **kwargs)
    return decorated


def api_role_required(*roles):
    """Decorator for API routes limited to some admin roles"""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            account = _token_account(_request_token())
            if not account:
                return jsonify({'error': 'Unauthorized'}), 401
            if account.get('role') not in roles:
                logger.warning(f"{account.get('username')} ({account.get('role')}) denied {request.path}")
                return jsonify({'error': 'Insufficient permissions'}), 403
            g.admin_user = account
            return f(*args, **kwargs)
        return decorated
    return decorator


def _credentials_match(given, expected):
    # compare_digest only takes ASCII str, so compare the UTF-8 bytes
    return secrets.compare_digest(given.encode('utf-8'), expected.encode('utf-8'))


def find_admin_user(login):
    """Stored admin account by username or email"""
    login = login.strip()
    matches = collection('admin_users').find(
        lambda u: u.get('username') == login or u.get('email') == login.lower())
    return matches[0] if matches else None


@app.route('/api/auth/login', methods=['POST'])
def api_login():
    """Admin login - returns token"""
    data = get_json_body()
    username = data.get('username', '')
    password = data.get('password', '')
    if not isinstance(username, str) or not isinstance(password, str) or not username or not password:
        return jsonify({'error': 'Username and password are required'}), 400

    user = find_admin_user(username)
    if (user and user.get('status') == 'active'
            and check_password_hash(user.get('password_hash', ''), password)):
        user = collection('admin_users').update(
            user['id'], {'last_login': get_local_now().isoformat(timespec='seconds')})
        token = _generate_admin_token(user['id'])
        account = public_user(user)
    elif (_credentials_match(username, config.ADMIN_USERNAME)
            and _credentials_match(password, config.ADMIN_PASSWORD)):
        token = _generate_admin_token()
        account = builtin_admin()
    else:
        logger.warning(f"Failed admin login for {username!r}")
        return jsonify({'error': 'Invalid credentials'}), 401

    logger.info(f"Admin login: {account['username']} ({account['role']})")
    return jsonify({'success': True, 'token': token, 'user': account})


@app.route('/api/auth/logout', methods=['POST'])
@api_admin_required
def api_logout():
    _admin_tokens.pop(_request_token(), None)
    return jsonify({'success': True})


@app.route('/api/auth/verify', methods=['GET'])
def api_verify():
    """Verify admin token is still valid"""
    token = _request_token()
    if token and _verify_admin_token(token):
        return jsonify({'valid': True})
    return jsonify({'valid': False}), 401


@app.route('/api/auth/profile', methods=['GET'])
@api_admin_required
def api_profile():
    return jsonify({'success': True, 'user': public_user(g.admin_user)})


@app.route('/api/auth/change-password', methods=['POST'])
@api_admin_required
def api_change_password():
    data = get_json_body()
    current_password = data.get('current_password', data.get('currentPassword'))
    new_password = data.get('new_password', data.get('newPassword'))
    if (not isinstance(current_password, str) or not isinstance(new_password, str)
            or not current_password or not new_password):
        return validation_error('Current password and new password are required')
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return validation_error(
            f'New password must be at least {MIN_PASSWORD_LENGTH} characters long', 'new_password')

    account = g.admin_user
    if account.get('builtin'):
        return validation_error('The built-in admin password is set with ADMIN_PASSWORD')
    if not check_password_hash(account.get('password_hash', ''), current_password):
        return validation_error('Current password is incorrect', 'current_password')

    collection('admin_users').update(account['id'], {'password_hash': generate_password_hash(new_password)})
    logger.info(f"Password changed for {account['username']}")
    return jsonify({'success': True, 'message': 'Password changed successfully'})


# ========================================
# Admin users (super admins only)
# ========================================

def admin_user_changes(data, creating):
    """Validate admin account fields. Returns (changes, error)"""
    changes = {}
    for key, alias in (('username', 'username'), ('first_name', 'firstName'), ('last_name', 'lastName')):
        if key in data or alias in data or creating:
            value = clean(data.get(key, data.get(alias)))
            if not isinstance(value, str) or not value:
                return None, f"{key.replace('_', ' ').capitalize()} is required"
            changes[key] = value
    if 'email' in data or creating:
        email = clean_email(data.get('email'))
        email_error = check_email(email)
        if email_error:
            return None, email_error
        changes['email'] = email
    if 'role' in data or creating:
        if data.get('role') not in ADMIN_ROLES:
            return None, f"Role must be one of: {', '.join(ADMIN_ROLES)}"
        changes['role'] = data['role']
    if 'status' in data:
        if data['status'] not in ADMIN_USER_STATUSES:
            return None, f"Status must be one of: {', '.join(ADMIN_USER_STATUSES)}"
        changes['status'] = data['status']
    if 'password' in data or creating:
        password = data.get('password')
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            return None, f'Password must be at least {MIN_PASSWORD_LENGTH} characters long'
        changes['password_hash'] = generate_password_hash(password)
    return changes, None


def admin_user_conflict(users, candidate, user_id=None):
    """Error message when the username or email is taken by another account"""
    if candidate.get('username') == config.ADMIN_USERNAME:
        return 'Username or email already exists'
    for user in users:
        if user.get('id') == user_id:
            continue
        if ('username' in candidate and user.get('username') == candidate['username']) \
                or ('email' in candidate and user.get('email') == candidate['email']):
            return 'Username or email already exists'
    return None


@app.route('/api/admin/users', methods=['GET'])
@api_role_required('super_admin')
def api_admin_users():
    users = sorted(collection('admin_users').all(), key=lambda u: u.get('created_at') or '')
    return jsonify({'success': True, 'count': len(users), 'users': [public_user(u) for u in users]})


@app.route('/api/admin/users', methods=['POST'])
@api_role_required('super_admin')
def api_create_admin_user():
    changes, error = admin_user_changes(get_json_body(), creating=True)
    if error:
        return validation_error(error)
    changes['status'] = 'active'
    changes['last_login'] = None

    success, error, user = collection('admin_users').insert(changes, admin_user_conflict)
    if not success:
        return validation_error(error)
    logger.info(f"{g.admin_user['username']} created admin {user['username']} ({user['role']})")
    return jsonify({'success': True, 'message': 'Admin user created successfully',
                    'user': public_user(user)}), 201


@app.route('/api/admin/users/<int:user_id>', methods=['PUT'])
@api_role_required('super_admin')
def api_update_admin_user(user_id):
    users = collection('admin_users')
    if not users.get(user_id):
        return jsonify({'error': 'User not found'}), 404
    changes, error = admin_user_changes(get_json_body(), creating=False)
    if error:
        return validation_error(error)
    if user_id == g.admin_user.get('id') and (
            changes.get('role', 'super_admin') != 'super_admin' or changes.get('status', 'active') != 'active'):
        return validation_error('Cannot change your own role or deactivate your account')
    conflict = admin_user_conflict(users.all(), changes, user_id)
    if conflict:
        return validation_error(conflict)

    user = users.update(user_id, changes)
    if user.get('status') != 'active':
        _revoke_user_tokens(user_id)
    return jsonify({'success': True, 'message': 'User updated successfully', 'user': public_user(user)})


@app.route('/api/admin/users/<int:user_id>', methods=['DELETE'])
@api_role_required('super_admin')
def api_delete_admin_user(user_id):
    if user_id == g.admin_user.get('id'):
        return validation_error('Cannot delete your own account')
    if not collection('admin_users').delete(user_id):
        return jsonify({'error': 'User not found'}), 404
    _revoke_user_tokens(user_id)
    return jsonify({'success': True, 'message': 'User deleted successfully'})


# ========================================
# System settings and feature flags
# ========================================

def seed_defaults(name, defaults):
    """Insert any default entry whose key is not stored yet"""
    entries = collection(name)
    stored = {item.get('key') for item in entries.all()}
    for entry in defaults:
        if entry['key'] not in stored:
            entries.insert(dict(entry))


def find_by_key(name, key):
    matches = collection(name).find(lambda item: item.get('key') == key)
    return matches[0] if matches else None


def feature_enabled(key):
    """Unknown flags count as enabled"""
    flag = find_by_key('feature_flags', key)
    return flag is None or bool(flag.get('is_enabled', True))


def feature_disabled_response(label):
    return jsonify({'success': False, 'error': f'{label} is currently disabled'}), 403


def coerce_setting_value(value, setting_type):
    """Returns (value, error) for a value of the given setting type"""
    if setting_type == 'boolean':
        return parse_bool(value, 'value')
    if setting_type == 'number':
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value, None
        return None, 'value must be a number'
    if setting_type == 'text':
        if isinstance(value, str):
            return value.strip(), None
        return None, 'value must be text'
    # json settings hold any JSON value
    return value, None


def count_by_category(items):
    counts = {}
    for item in items:
        category = item.get('category') or 'general'
        counts[category] = counts.get(category, 0) + 1
    return counts


@app.route('/api/settings/public')
def api_public_settings():
    settings = collection('system_settings').find(lambda s: s.get('is_public'))
    return jsonify({'success': True, 'data': {s['key']: s.get('value') for s in settings}})


@app.route('/api/settings/all')
@api_role_required('super_admin', 'admin')
def api_all_settings():
    category = request.args.get('category')
    settings = collection('system_settings').find(lambda s: not category or s.get('category') == category)
    settings.sort(key=lambda s: (s.get('category') or '', s.get('key') or ''))
    return jsonify({'success': True, 'count': len(settings), 'data': settings})


@app.route('/api/settings/setting', methods=['POST'])
@api_role_required('super_admin')
def api_create_setting():
    data = get_json_body()
    key = clean(data.get('setting_key'))
    if not isinstance(key, str) or not key or 'setting_value' not in data:
        return validation_error('Setting key and value are required')
    setting_type = data.get('setting_type') or 'text'
    if setting_type not in SETTING_TYPES:
        return validation_error(f"Setting type must be one of: {', '.join(SETTING_TYPES)}", 'setting_type')
    value, error = coerce_setting_value(data['setting_value'], setting_type)
    if error:
        return validation_error(error, 'setting_value')
    is_public, error = parse_bool(data.get('is_public', False), 'is_public')
    if error:
        return validation_error(error, 'is_public')

    setting = {
        'key': key,
        'value': value,
        'type': setting_type,
        'category': clean(data.get('category')) or 'general',
        'description': clean(data.get('description')) or '',
        'is_public': is_public,
    }

    def unique_key(settings, new_setting):
        if any(s.get('key') == new_setting['key'] for s in settings):
            return 'Setting key already exists'
        return None

    success, error, setting = collection('system_settings').insert(setting, unique_key)
    if not success:
        return validation_error(error, 'setting_key')
    return jsonify({'success': True, 'message': 'Setting created successfully', 'data': setting}), 201


@app.route('/api/settings/setting/<key>', methods=['PUT'])
@api_role_required('super_admin', 'admin')
def api_update_setting(key):
    data = get_json_body()
    if 'value' not in data:
        return validation_error('Setting value is required', 'value')
    setting = find_by_key('system_settings', key)
    if not setting:
        return jsonify({'error': 'Setting not found'}), 404
    value, error = coerce_setting_value(data['value'], setting.get('type', 'text'))
    if error:
        return validation_error(error, 'value')

    changes = {'value': value}
    if clean(data.get('description')):
        changes['description'] = clean(data['description'])
    setting = collection('system_settings').update(setting['id'], changes)
    logger.info(f"Setting {key} updated by {g.admin_user['username']}")
    return jsonify({'success': True, 'message': 'Setting updated successfully', 'data': setting})


@app.route('/api/settings/features')
@api_role_required('super_admin', 'admin')
def api_feature_flags():
    category = request.args.get('category')
    flags = collection('feature_flags').find(lambda f: not category or f.get('category') == category)
    flags.sort(key=lambda f: (f.get('category') or '', f.get('name') or ''))
    return jsonify({'success': True, 'count': len(flags), 'data': flags})


@app.route('/api/settings/features/public')
def api_public_feature_flags():
    """Which features the site should show; flags only, no descriptions"""
    flags = collection('feature_flags').all()
    return jsonify({'success': True, 'data': {f['key']: bool(f.get('is_enabled')) for f in flags}})


@app.route('/api/settings/feature/<key>', methods=['PUT'])
@api_role_required('super_admin', 'admin')
def api_update_feature_flag(key):
    data = get_json_body()
    if 'is_enabled' not in data:
        return validation_error('Feature enabled status is required', 'is_enabled')
    is_enabled, error = parse_bool(data['is_enabled'], 'is_enabled')
    if error:
        return validation_error(error, 'is_enabled')
    flag = find_by_key('feature_flags', key)
    if not flag:
        return jsonify({'error': 'Feature flag not found'}), 404

    changes = {'is_enabled': is_enabled}
    if clean(data.get('description')):
        changes['description'] = clean(data['description'])
    flag = collection('feature_flags').update(flag['id'], changes)
    logger.info(f"Feature {key} {'enabled' if is_enabled else 'disabled'} by {g.admin_user['username']}")
    return jsonify({'success': True, 'message': 'Feature flag updated successfully', 'data': flag})


@app.route('/api/settings/stats')
@api_role_required('super_admin', 'admin')
def api_settings_stats():
    settings = collection('system_settings').all()
    flags = collection('feature_flags').all()
    return jsonify({'success': True, 'data': {
        'total_settings': len(settings),
        'public_settings': sum(1 for s in settings if s.get('is_public')),
        'total_features': len(flags),
        'enabled_features': sum(1 for f in flags if f.get('is_enabled')),
        'settings_by_category': count_by_category(settings),
        'features_by_category': count_by_category(flags),
    }})


# ========================================
# Site
# ========================================

@app.route('/api/health')
def api_health():
    return jsonify({
        'status': 'ok',
        'message': 'Club API is running',
        'timestamp': get_local_now().isoformat(timespec='seconds'),
    })


@app.route('/api/club-info')
def api_club_info():
    """Public club information with sensitive keys stripped"""
    club_info = load_club_info()
    return jsonify({k: v for k, v in club_info.items() if k not in SENSITIVE_CLUB_KEYS})


@app.route('/api/admin/club-info', methods=['GET', 'PUT'])
@api_role_required('super_admin', 'admin')
def api_admin_club_info():
    """Get or update club information"""
    club_info = load_club_info()
    if request.method == 'GET':
        return jsonify(club_info)

    # Merge with existing, preserving keys not in request
    data = get_json_body()
    club_info.update(data)
    write_document(club_info_path(), club_info)
    logger.info(f"Club info updated: {sorted(data)}")
    return jsonify({'success': True, 'club_info': club_info})


@app.route('/api/admin/dashboard', methods=['GET'])
@api_admin_required
def api_admin_dashboard():
    """Counts for the admin overview"""
    now_wire = to_wire(get_local_now())
    events = collection('events').all()
    return jsonify({
        'events_count': len(events),
        'upcoming_events_count': sum(1 for e in events
                                     if e.get('status') == 'upcoming' and e.get('datetime', '') >= now_wire),
        'news_count': len(collection('news').all()),
        'members_count': len(collection('members').all()),
        'new_messages_count': len(collection('contacts').find(lambda c: c.get('status') == 'new')),
        'announcements_count': len(collection('announcements').all()),
        'leadership_count': len(collection('leadership').all()),
        'gallery_count': len(collection('gallery').all()),
        'resources_count': len(collection('resources').all()),
        'admin_users_count': len(collection('admin_users').all()),
    })


# ========================================
# Events
# ========================================

@app.route('/api/events')
def api_events():
    """All events, newest first; optional status and category filters"""
    page = parse_pagination()
    if page is None:
        return validation_error('limit and offset must be numbers')
    limit, offset = page

    status = request.args.get('status')
    category = request.args.get('category')
    events = collection('events').find(
        lambda e: (not status or e.get('status') == status)
        and (not category or e.get('category') == category))
    events.sort(key=lambda e: e.get('datetime', ''), reverse=True)
    events = events[offset:offset + limit]
    return jsonify({'success': True, 'count': len(events), 'events': events})


@app.route('/api/events/upcoming')
def api_upcoming_events():
    """Upcoming events that have not started yet, soonest first"""
    now_wire = to_wire(get_local_now())
    events = collection('events').find(
        lambda e: e.get('status') == 'upcoming' and e.get('datetime', '') >= now_wire)
    events.sort(key=lambda e: e.get('datetime', ''))
    return jsonify({'success': True, 'count': len(events), 'events': events})


@app.route('/api/events/<int:event_id>')
def api_event_detail(event_id):
    event = collection('events').get(event_id)
    if not event:
        return jsonify({'error': 'Event not found'}), 404
    return jsonify({'success': True, 'event': event})


@app.route('/api/events', methods=['POST'])
@api_admin_required
def api_create_event():
    """Create an event; the date and time are combined and checked server-side"""
    data = get_json_body()
    title = clean(data.get('title'))
    description = clean(data.get('description'))
    location = clean(data.get('location'))

    if not title or not description or not location or not has_schedule(data):
        return validation_error('Title, description, datetime, and location are required')

    try:
        date_str, time_str = resolve_event_schedule(data)
    except MalformedInput as e:
        return validation_error(e.message, 'datetime')
    result = validate_event_schedule(date_str, time_str)
    if not result.accepted:
        return validation_error(result.reason, 'datetime')

    status = data.get('status') or 'upcoming'
    if status not in EVENT_STATUSES:
        return validation_error(f"Status must be one of: {', '.join(EVENT_STATUSES)}", 'status')
    max_participants, error = parse_optional_int(
        data.get('max_participants', data.get('maxParticipants')), 'max_participants', minimum=1)
    if error:
        return validation_error(error, 'max_participants')
    allow_registration, error = parse_bool(data.get('allow_registration', True), 'allow_registration')
    if error:
        return validation_error(error, 'allow_registration')

    club_info = load_club_info()
    event = {
        'title': title,
        'description': description,
        'category': clean(data.get('category')) or 'General',
        'datetime': to_wire(result.instant),
        'location': location,
        'organizer': clean(data.get('organizer')) or club_info.get('short_name', ''),
        'max_participants': max_participants,
        'status': status,
        'allow_registration': allow_registration,
    }
    _, _, event = collection('events').insert(event)
    return jsonify({'success': True, 'message': 'Event created successfully', 'event': event}), 201


@app.route('/api/events/<int:event_id>', methods=['PUT'])
@api_admin_required
def api_update_event(event_id):
    """Update the provided fields; a changed date/time is checked like a new one"""
    data = get_json_body()
    events = collection('events')
    event = events.get(event_id)
    if not event:
        return jsonify({'error': 'Event not found'}), 404

    changes = {}
    for key in ('title', 'description', 'location', 'category', 'organizer'):
        if key in data:
            value = clean(data[key])
            if key in ('title', 'description', 'location') and not value:
                return validation_error(f'{key.capitalize()} cannot be empty', key)
            changes[key] = value

    if has_schedule(data):
        try:
            date_str, time_str = resolve_event_schedule(data)
            if not data.get('datetime'):
                # Only one of date/time sent: keep the other from the stored value
                stored_date, stored_time = split_wire_datetime(event['datetime'])
                date_str = date_str or stored_date
                time_str = time_str or stored_time
        except MalformedInput as e:
            return validation_error(e.message, 'datetime')

        candidate = f'{date_str}T{time_str}:00'
        if candidate != event.get('datetime'):
            result = validate_event_schedule(date_str, time_str)
            if not result.accepted:
                return validation_error(result.reason, 'datetime')
            changes['datetime'] = to_wire(result.instant)

    if 'status' in data:
        if data['status'] not in EVENT_STATUSES:
            return validation_error(f"Status must be one of: {', '.join(EVENT_STATUSES)}", 'status')
        changes['status'] = data['status']
    if 'max_participants' in data or 'maxParticipants' in data:
        max_participants, error = parse_optional_int(
            data.get('max_participants', data.get('maxParticipants')), 'max_participants', minimum=1)
        if error:
            return validation_error(error, 'max_participants')
        changes['max_participants'] = max_participants
    if 'allow_registration' in data:
        allow_registration, error = parse_bool(data['allow_registration'], 'allow_registration')
        if error:
            return validation_error(error, 'allow_registration')
        changes['allow_registration'] = allow_registration

    event = events.update(event_id, changes)
    if not event:
        return jsonify({'error': 'Event not found'}), 404
    return jsonify({'success': True, 'message': 'Event updated successfully', 'event': event})


@app.route('/api/events/<int:event_id>', methods=['DELETE'])
@api_admin_required
def api_delete_event(event_id):
    event = collection('events').delete(event_id)
    if not event:
        return jsonify({'error': 'Event not found'}), 404
    collection('registrations').delete_where(lambda r: r.get('event_id') == event_id)
    return jsonify({'success': True, 'message': 'Event deleted successfully'})


@app.route('/api/events/<int:event_id>/register', methods=['POST'])
def api_register_event(event_id):
    """Public registration for an event; sends a confirmation mail with a QR code"""
    if not feature_enabled('event_registration'):
        return feature_disabled_response('Event registration')
    event = collection('events').get(event_id)
    if not event:
        return jsonify({'error': 'Event not found'}), 404
    if event.get('status') != 'upcoming' or not event.get('allow_registration', True):
        return validation_error('Registration is closed for this event')

    starts = event_start(event)
    if starts is not None:
        accepted, _ = check_not_in_past(starts, get_local_now(), POLICY_STRICT)
        if not accepted:
            return validation_error('Registration is closed: this event has already started')

    data = get_json_body()
    name = clean(data.get('name') or data.get('fullName') or data.get('full_name'))
    email = clean_email(data.get('email'))
    if not name or not email:
        return validation_error('Name and email are required')
    email_error = check_email(email)
    if email_error:
        return validation_error(email_error, 'email')

    capacity = event.get('max_participants')

    def check_registration(registrations, new_registration):
        same_event = [r for r in registrations if r.get('event_id') == event_id]
        if any(r.get('email') == new_registration['email'] for r in same_event):
            return 'You have already registered for this event'
        if capacity and len(same_event) >= capacity:
            return 'This event is full'
        return None

    club_short = load_club_info().get('short_name') or 'CLUB'
    registration = {
        'event_id': event_id,
        'registration_id': f"{club_short}-{uuid.uuid4().hex[:8].upper()}",
        'name': name,
        'email': email,
        'phone': clean(data.get('phone')) or '',
        'student_id': clean(data.get('studentId') or data.get('student_id')) or '',
    }
    success, error, registration = collection('registrations').insert(registration, check_registration)
    if not success:
        logger.warning(f"Registration for event #{event_id} rejected: {error}")
        return validation_error(error)

    email_sent = send_registration_email(registration, event)
    return jsonify({'success': True, 'registration': registration, 'email_sent': email_sent}), 201


@app.route('/api/events/<int:event_id>/registrations', methods=['GET'])
@api_admin_required
def api_event_registrations(event_id):
    event = collection('events').get(event_id)
    if not event:
        return jsonify({'error': 'Event not found'}), 404
    registrations = collection('registrations').find(lambda r: r.get('event_id') == event_id)
    return jsonify({'success': True, 'event': event, 'count': len(registrations),
                    'registrations': registrations})


# ========================================
# News
# ========================================

def _news_sort_key(item):
    return item.get('publish_date') or '', item.get('created_at') or ''


@app.route('/api/news')
def api_news():
    """Published news by default, newest publish date first"""
    page = parse_pagination()
    if page is None:
        return validation_error('limit and offset must be numbers')
    limit, offset = page

    status = request.args.get('status', 'published')
    category = request.args.get('category')
    news = collection('news').find(
        lambda n: n.get('status') == status and (not category or n.get('category') == category))
    news.sort(key=_news_sort_key, reverse=True)
    news = news[offset:offset + limit]
    return jsonify({'success': True, 'count': len(news), 'news': news})


@app.route('/api/news/admin')
@api_admin_required
def api_admin_news():
    """All news including drafts, most recently created first"""
    page = parse_pagination()
    if page is None:
        return validation_error('limit and offset must be numbers')
    limit, offset = page

    status = request.args.get('status')
    category = request.args.get('category')
    news = collection('news').find(
        lambda n: (not status or n.get('status') == status)
        and (not category or n.get('category') == category))
    news.sort(key=lambda n: n.get('created_at') or '', reverse=True)
    news = news[offset:offset + limit]
    return jsonify({'success': True, 'count': len(news), 'news': news})


@app.route('/api/news/<int:news_id>')
def api_news_detail(news_id):
    item = collection('news').get(news_id)
    if not item or item.get('status') != 'published':
        return jsonify({'error': 'News not found'}), 404
    return jsonify({'success': True, 'news': item})


@app.route('/api/news', methods=['POST'])
@api_admin_required
def api_create_news():
    data = get_json_body()
    title = clean(data.get('title'))
    content = clean(data.get('content'))
    if not title or not content:
        return validation_error('Title and content are required')

    status = data.get('status') or 'published'
    if status not in NEWS_STATUSES:
        return validation_error(f"Status must be one of: {', '.join(NEWS_STATUSES)}", 'status')

    publish_date = data.get('publish_date') or data.get('publishDate')
    if publish_date:
        error = check_publish_date(publish_date)
        if error:
            return validation_error(error, 'publish_date')
    else:
        publish_date = today().isoformat()

    item = {
        'title': title,
        'content': content,
        'category': clean(data.get('category')) or 'General',
        'status': status,
        'publish_date': publish_date,
    }
    _, _, item = collection('news').insert(item)
    return jsonify({'success': True, 'message': 'News created successfully', 'news': item}), 201


@app.route('/api/news/<int:news_id>', methods=['PUT'])
@api_admin_required
def api_update_news(news_id):
    data = get_json_body()
    news = collection('news')
    item = news.get(news_id)
    if not item:
        return jsonify({'error': 'News not found'}), 404

    changes = {}
    for key in ('title', 'content', 'category'):
        if key in data:
            value = clean(data[key])
            if key in ('title', 'content') and not value:
                return validation_error(f'{key.capitalize()} cannot be empty', key)
            changes[key] = value
    if 'status' in data:
        if data['status'] not in NEWS_STATUSES:
            return validation_error(f"Status must be one of: {', '.join(NEWS_STATUSES)}", 'status')
        changes['status'] = data['status']

    publish_date = data.get('publish_date') or data.get('publishDate')
    if publish_date and publish_date != item.get('publish_date'):
        error = check_publish_date(publish_date)
        if error:
            return validation_error(error, 'publish_date')
        changes['publish_date'] = publish_date

    item = news.update(news_id, changes)
    return jsonify({'success': True, 'message': 'News updated successfully', 'news': item})


@app.route('/api/news/<int:news_id>', methods=['DELETE'])
@api_admin_required
def api_delete_news(news_id):
    if not collection('news').delete(news_id):
        return jsonify({'error': 'News not found'}), 404
    return jsonify({'success': True, 'message': 'News deleted successfully'})


# ========================================
# Members
# ========================================

def member_fields(data):
    """Normalize the camelCase / snake_case variants the forms send"""
    full_name = clean(data.get('fullName') or data.get('full_name'))
    if not full_name and (data.get('firstName') or data.get('lastName')):
        full_name = f"{data.get('firstName', '')} {data.get('lastName', '')}".strip()
    return {
        'full_name': full_name,
        'email': clean_email(data.get('email')),
        'student_id': clean(data.get('studentId') or data.get('student_id')) or '',
        'department': clean(data.get('department') or data.get('program')) or '',
        'phone': clean(data.get('phone')) or '',
        'year': data.get('year'),
        'interests': data.get('interests') or '',
    }


@app.route('/api/members/register', methods=['POST'])
@app.route('/api/members', methods=['POST'])
def api_register_member():
    """Public membership registration"""
    if not feature_enabled('member_registration'):
        return feature_disabled_response('Member registration')
    fields = member_fields(get_json_body())
    if not fields['full_name'] or not fields['email']:
        return validation_error('Full name and email are required')
    email_error = check_email(fields['email'])
    if email_error:
        return validation_error(email_error, 'email')
    year, error = parse_optional_int(fields['year'], 'year', minimum=1)
    if error:
        return validation_error(error, 'year')
    fields['year'] = year
    fields['status'] = 'active'

    def check_member(members, new_member):
        if any(m.get('email') == new_member['email'] for m in members):
            return 'Member with this email already exists'
        if new_member['student_id'] and any(m.get('student_id') == new_member['student_id'] for m in members):
            return 'Member with this student ID already exists'
        return None

    success, error, member = collection('members').insert(fields, check_member)
    if not success:
        logger.warning(f"Member registration rejected for {fields['email']}: {error}")
        return validation_error(error)

    email_sent = send_welcome_email(member)
    return jsonify({'success': True, 'message': 'Member registered successfully',
                    'memberId': member['id'], 'email_sent': email_sent}), 201


@app.route('/api/members', methods=['GET'])
@api_admin_required
def api_members():
    status = request.args.get('status')
    members = collection('members').find(lambda m: not status or m.get('status') == status)
    members.sort(key=lambda m: m.get('created_at') or '', reverse=True)
    return jsonify({'success': True, 'count': len(members), 'members': members})


@app.route('/api/members/<int:member_id>', methods=['GET'])
@api_admin_required
def api_member_detail(member_id):
    member = collection('members').get(member_id)
    if not member:
        return jsonify({'error': 'Member not found'}), 404
    return jsonify({'success': True, 'member': member})


@app.route('/api/members/<int:member_id>', methods=['PUT'])
@api_admin_required
def api_update_member(member_id):
    data = get_json_body()
    members = collection('members')
    member = members.get(member_id)
    if not member:
        return jsonify({'error': 'Member not found'}), 404

    fields = member_fields(data)
    changes = {}
    if fields['full_name']:
        changes['full_name'] = fields['full_name']
    if fields['email'] and fields['email'] != member.get('email'):
        email_error = check_email(fields['email'])
        if email_error:
            return validation_error(email_error, 'email')
        if members.find(lambda m: m.get('email') == fields['email'] and m.get('id') != member_id):
            return validation_error('Member with this email already exists', 'email')
        changes['email'] = fields['email']
    for key in ('student_id', 'department', 'phone', 'interests'):
        if fields[key]:
            changes[key] = fields[key]
    if 'year' in data:
        year, error = parse_optional_int(data['year'], 'year', minimum=1)
        if error:
            return validation_error(error, 'year')
        changes['year'] = year
    if 'status' in data:
        if data['status'] not in MEMBER_STATUSES:
            return validation_error(f"Status must be one of: {', '.join(MEMBER_STATUSES)}", 'status')
        changes['status'] = data['status']

    member = members.update(member_id, changes)
    return jsonify({'success': True, 'message': 'Member updated successfully', 'member': member})


@app.route('/api/members/<int:member_id>', methods=['DELETE'])
@api_admin_required
def api_delete_member(member_id):
    if not collection('members').delete(member_id):
        return jsonify({'error': 'Member not found'}), 404
    return jsonify({'success': True, 'message': 'Member deleted successfully'})


@app.route('/api/admin/members/export')
@api_admin_required
def api_export_members():
    """Export all members to an Excel file"""
    members = collection('members').all()

    wb = Workbook()
    ws = wb.active
    ws.title = "Members"

    headers = ['ID', 'Full Name', 'Email', 'Student ID', 'Department', 'Year',
               'Phone', 'Interests', 'Status', 'Joined']
    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill(start_color="1F3C88", end_color="1F3C88", fill_type="solid")
    for col, header in enumerate(headers, 1):
        cell = ws.cell(row=1, column=col, value=header)
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal="center")

    for row, member in enumerate(members, 2):
        interests = member.get('interests', '')
        if isinstance(interests, list):
            interests = ', '.join(interests)
        values = [member.get('id'), member.get('full_name'), member.get('email'),
                  member.get('student_id'), member.get('department'), member.get('year'),
                  member.get('phone'), interests, member.get('status'), member.get('created_at')]
        for col, value in enumerate(values, 1):
            ws.cell(row=row, column=col, value=value)

    for col_cells in ws.columns:
        width = max(len(str(cell.value or '')) for cell in col_cells)
        ws.column_dimensions[col_cells[0].column_letter].width = min(width + 2, 50)

    output = BytesIO()
    wb.save(output)
    output.seek(0)
    return send_file(
        output,
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
        as_attachment=True,
        download_name=f"members_{today().isoformat()}.xlsx"
    )


# ========================================
# Contact
# ========================================

@app.route('/api/contact', methods=['POST'])
def api_submit_contact():
    data = get_json_body()
    name = clean(data.get('name'))
    email = clean_email(data.get('email'))
    message = clean(data.get('message'))
    if not name or not email or not message:
        return validation_error('Name, email and message are required')
    email_error = check_email(email)
    if email_error:
        return validation_error(email_error, 'email')

    contact = {
        'name': name,
        'email': email,
        'subject': clean(data.get('subject')) or '',
        'message': message,
        'status': 'new',
    }
    _, _, contact = collection('contacts').insert(contact)
    return jsonify({'success': True, 'message': 'Contact form submitted successfully',
                    'contact': {k: contact[k] for k in ('id', 'name', 'email', 'subject')}}), 201


@app.route('/api/contact', methods=['GET'])
@api_admin_required
def api_contacts():
    status = request.args.get('status')
    contacts = collection('contacts').find(lambda c: not status or c.get('status') == status)
    contacts.sort(key=lambda c: c.get('created_at') or '', reverse=True)
    return jsonify({'success': True, 'count': len(contacts), 'contacts': contacts})


@app.route('/api/contact/<int:contact_id>/status', methods=['PATCH'])
@api_admin_required
def api_update_contact_status(contact_id):
    status = get_json_body().get('status')
    if status not in CONTACT_STATUSES:
        return validation_error(f"Status must be one of: {', '.join(CONTACT_STATUSES)}", 'status')
    contact = collection('contacts').update(contact_id, {'status': status})
    if not contact:
        return jsonify({'error': 'Contact submission not found'}), 404
    return jsonify({'success': True, 'contact': contact})


@app.route('/api/contact/<int:contact_id>', methods=['DELETE'])
@api_admin_required
def api_delete_contact(contact_id):
    if not collection('contacts').delete(contact_id):
        return jsonify({'error': 'Contact submission not found'}), 404
    return jsonify({'success': True})


@app.route('/api/contact/<int:contact_id>/reply', methods=['POST'])
@api_admin_required
def api_reply_contact(contact_id):
    data = get_json_body()
    reply_message = clean(data.get('reply_message') or data.get('replyMessage'))
    if not reply_message:
        return validation_error('Reply message is required', 'reply_message')

    contacts = collection('contacts')
    contact = contacts.get(contact_id)
    if not contact:
        return jsonify({'error': 'Contact submission not found'}), 404

    if not send_contact_reply(contact, reply_message):
        return jsonify({'error': 'Failed to send reply email'}), 502

    contact = contacts.update(contact_id, {
        'status': 'replied',
        'reply_message': reply_message,
        'replied_at': get_local_now().isoformat(timespec='seconds'),
    })
    return jsonify({'success': True, 'contact': contact})


# ========================================
# Leadership
# ========================================

def sort_leaders(leaders, position_hierarchy):
    """Sort by display order, then by position rank in the club's hierarchy, then name"""
    def get_sort_key(leader):
        try:
            position_index = position_hierarchy.index(leader.get('position', ''))
        except ValueError:
            # Positions outside the hierarchy go last
            position_index = len(position_hierarchy)
        return leader.get('display_order') or 0, position_index, leader.get('name', '')

    return sorted(leaders, key=get_sort_key)


def leader_changes(data, require_all):
    """Returns (changes, error)"""
    changes = {}
    for key in ('name', 'position'):
        if key in data or require_all:
            value = clean(data.get(key))
            if not value:
                return None, f'{key.capitalize()} is required'
            changes[key] = value
    for key in ('email', 'phone', 'bio', 'photo'):
        if key in data:
            changes[key] = clean(data[key]) or ''
    if changes.get('email'):
        email_error = check_email(changes['email'])
        if email_error:
            return None, email_error
    if 'display_order' in data or 'displayOrder' in data:
        order, error = parse_optional_int(data.get('display_order', data.get('displayOrder')),
                                          'display_order', minimum=0)
        if error:
            return None, error
        changes['display_order'] = order or 0
    if 'status' in data:
        if data['status'] not in MEMBER_STATUSES:
            return None, f"Status must be one of: {', '.join(MEMBER_STATUSES)}"
        changes['status'] = data['status']
    return changes, None


@app.route('/api/leadership')
def api_leadership():
    leaders = collection('leadership').find(lambda leader: leader.get('status', 'active') == 'active')
    leaders = sort_leaders(leaders, load_club_info().get('leadership_positions', []))
    return jsonify({'success': True, 'count': len(leaders), 'leaders': leaders})


@app.route('/api/leadership/admin')
@api_admin_required
def api_admin_leadership():
    leaders = sort_leaders(collection('leadership').all(),
                           load_club_info().get('leadership_positions', []))
    return jsonify({'success': True, 'count': len(leaders), 'leaders': leaders})


@app.route('/api/leadership', methods=['POST'])
@api_admin_required
def api_create_leader():
    changes, error = leader_changes(get_json_body(), require_all=True)
    if error:
        return validation_error(error)
    leader = {'email': '', 'phone': '', 'bio': '', 'photo': '', 'display_order': 0, 'status': 'active'}
    leader.update(changes)
    _, _, leader = collection('leadership').insert(leader)
    return jsonify({'success': True, 'leader': leader}), 201


@app.route('/api/leadership/<int:leader_id>', methods=['PUT'])
@api_admin_required
def api_update_leader(leader_id):
    changes, error = leader_changes(get_json_body(), require_all=False)
    if error:
        return validation_error(error)
    leader = collection('leadership').update(leader_id, changes)
    if not leader:
        return jsonify({'error': 'Leader not found'}), 404
    return jsonify({'success': True, 'leader': leader})


@app.route('/api/leadership/<int:leader_id>', methods=['DELETE'])
@api_admin_required
def api_delete_leader(leader_id):
    if not collection('leadership').delete(leader_id):
        return jsonify({'error': 'Leader not found'}), 404
    return jsonify({'success': True})


# ========================================
# Gallery
# ========================================

@app.route('/api/gallery')
def api_gallery():
    category = request.args.get('category')
    items = collection('gallery').find(lambda g: not category or g.get('category') == category)
    items.sort(key=lambda g: g.get('created_at') or '', reverse=True)
    return jsonify({'success': True, 'count': len(items), 'items': items})


@app.route('/api/gallery', methods=['POST'])
@api_admin_required
def api_create_gallery_item():
    data = get_json_body()
    image_url = clean(data.get('image_url') or data.get('url') or data.get('image'))
    title = clean(data.get('title'))
    if not title or not image_url:
        return validation_error('Title and image URL are required')
    event_id, error = parse_optional_int(data.get('event_id'), 'event_id')
    if error:
        return validation_error(error, 'event_id')

    item = {
        'title': title,
        'image_url': image_url,
        'description': clean(data.get('description')) or '',
        'category': clean(data.get('category')) or 'events',
        'event_id': event_id,
    }
    _, _, item = collection('gallery').insert(item)
    return jsonify({'success': True, 'item': item}), 201


@app.route('/api/gallery/<int:item_id>', methods=['PUT'])
@api_admin_required
def api_update_gallery_item(item_id):
    data = get_json_body()
    changes = {}
    for key in ('title', 'description', 'category'):
        if key in data:
            changes[key] = clean(data[key]) or ''
    if 'title' in changes and not changes['title']:
        return validation_error('Title cannot be empty', 'title')
    image_url = data.get('image_url') or data.get('url') or data.get('image')
    if image_url:
        changes['image_url'] = clean(image_url)
    if 'event_id' in data:
        event_id, error = parse_optional_int(data['event_id'], 'event_id')
        if error:
            return validation_error(error, 'event_id')
        changes['event_id'] = event_id

    item = collection('gallery').update(item_id, changes)
    if not item:
        return jsonify({'error': 'Image not found'}), 404
    return jsonify({'success': True, 'item': item})


@app.route('/api/gallery/<int:item_id>', methods=['DELETE'])
@api_admin_required
def api_delete_gallery_item(item_id):
    if not collection('gallery').delete(item_id):
        return jsonify({'error': 'Image not found'}), 404
    return jsonify({'success': True})


# ========================================
# Resources
# ========================================

def resource_changes(data, require_all):
    """Returns (changes, error)"""
    changes = {}
    for key in ('title', 'url'):
        if key in data or require_all:
            value = clean(data.get(key))
            if not value:
                return None, f'{key.capitalize()} is required'
            changes[key] = value
    for key in ('description', 'category'):
        if key in data:
            changes[key] = clean(data[key]) or ''
    if 'type' in data:
        if data['type'] not in RESOURCE_TYPES:
            return None, f"Type must be one of: {', '.join(RESOURCE_TYPES)}"
        changes['type'] = data['type']
    if 'status' in data:
        if data['status'] not in MEMBER_STATUSES:
            return None, f"Status must be one of: {', '.join(MEMBER_STATUSES)}"
        changes['status'] = data['status']
    return changes, None


@app.route('/api/resources')
def api_resources():
    category = request.args.get('category')
    resource_type = request.args.get('type')
    resources = collection('resources').find(
        lambda r: r.get('status') == 'active'
        and (not category or r.get('category') == category)
        and (not resource_type or r.get('type') == resource_type))
    resources.sort(key=lambda r: r.get('title', '').lower())
    return jsonify({'success': True, 'count': len(resources), 'resources': resources})


@app.route('/api/resources/categories')
def api_resource_categories():
    """Categories of active resources with how many resources each holds"""
    counts = {}
    for resource in collection('resources').find(lambda r: r.get('status') == 'active'):
        category = resource.get('category') or 'General'
        counts[category] = counts.get(category, 0) + 1
    categories = [{'name': name, 'resource_count': count} for name, count in sorted(counts.items())]
    return jsonify({'success': True, 'categories': categories})


@app.route('/api/resources', methods=['POST'])
@api_admin_required
def api_create_resource():
    changes, error = resource_changes(get_json_body(), require_all=True)
    if error:
        return validation_error(error)
    resource = {'description': '', 'category': 'General', 'type': 'link', 'status': 'active'}
    resource.update(changes)
    _, _, resource = collection('resources').insert(resource)
    return jsonify({'success': True, 'resource': resource}), 201


@app.route('/api/resources/<int:resource_id>', methods=['PUT'])
@api_admin_required
def api_update_resource(resource_id):
    changes, error = resource_changes(get_json_body(), require_all=False)
    if error:
        return validation_error(error)
    resource = collection('resources').update(resource_id, changes)
    if not resource:
        return jsonify({'error': 'Resource not found'}), 404
    return jsonify({'success': True, 'resource': resource})


@app.route('/api/resources/<int:resource_id>', methods=['DELETE'])
@api_admin_required
def api_delete_resource(resource_id):
    if not collection('resources').delete(resource_id):
        return jsonify({'error': 'Resource not found'}), 404
    return jsonify({'success': True})


# ========================================
# Announcements, comments and likes
# ========================================

def is_announcement_live(announcement, on_date):
    """Published, already past its publish date and not yet expired"""
    if announcement.get('status') != 'published':
        return False
    day = on_date.isoformat()
    if announcement.get('publish_date') and announcement['publish_date'] > day:
        return False
    if announcement.get('expiry_date') and announcement['expiry_date'] < day:
        return False
    return True


def with_engagement(announcements):
    """Attach like_count and comment_count to each announcement"""
    likes = collection('announcement_likes').all()
    comments = collection('announcement_comments').all()
    result = []
    for announcement in announcements:
        item = dict(announcement)
        item['like_count'] = sum(1 for like in likes if like.get('announcement_id') == item['id'])
        item['comment_count'] = sum(1 for c in comments if c.get('announcement_id') == item['id'])
        result.append(item)
    return result


def announcement_changes(data, existing=None):
    """Validate announcement fields. Returns (changes, error)"""
    existing = existing or {}
    creating = not existing
    changes = {}
    for key in ('title', 'content'):
        if key in data or creating:
            value = clean(data.get(key))
            if not value:
                return None, f'{key.capitalize()} is required'
            changes[key] = value

    for key, choices, default in (('visibility', ANNOUNCEMENT_VISIBILITY, 'public'),
                                  ('priority', ANNOUNCEMENT_PRIORITIES, 'normal'),
                                  ('status', ANNOUNCEMENT_STATUSES, 'published')):
        if key in data:
            if data[key] not in choices:
                return None, f"{key.capitalize()} must be one of: {', '.join(choices)}"
            changes[key] = data[key]
        elif creating:
            changes[key] = default

    publish_date = data.get('publish_date') or data.get('publishDate')
    if publish_date:
        try:
            parse_calendar_date(publish_date)
        except MalformedInput as e:
            return None, e.message
        changes['publish_date'] = publish_date
    elif creating:
        changes['publish_date'] = today().isoformat()

    if 'expiry_date' in data or 'expiryDate' in data:
        expiry_date = data.get('expiry_date', data.get('expiryDate')) or None
        if expiry_date and expiry_date != existing.get('expiry_date'):
            error = check_publish_date(expiry_date, 'expiry_date')
            if error:
                return None, error
        changes['expiry_date'] = expiry_date

    effective_publish = changes.get('publish_date', existing.get('publish_date'))
    effective_expiry = changes.get('expiry_date', existing.get('expiry_date'))
    if effective_publish and effective_expiry and effective_expiry < effective_publish:
        return None, 'expiry_date cannot be before publish_date'
    return changes, None


@app.route('/api/announcements')
def api_announcements():
    """Live announcements, most urgent first, then newest"""
    visibility = request.args.get('visibility')
    limit, error = parse_optional_int(request.args.get('limit'), 'limit', minimum=0)
    if error:
        return validation_error(error)

    on_date = today()
    announcements = collection('announcements').find(
        lambda a: is_announcement_live(a, on_date)
        and (not visibility or a.get('visibility') == visibility))
    # Stable sorts: newest first, then by priority rank
    announcements.sort(key=lambda a: a.get('publish_date') or '', reverse=True)
    announcements.sort(key=lambda a: PRIORITY_RANK.get(a.get('priority'), len(PRIORITY_RANK)))
    if limit is not None:
        announcements = announcements[:limit]
    announcements = with_engagement(announcements)
    return jsonify({'success': True, 'count': len(announcements), 'data': announcements})


@app.route('/api/announcements/<int:announcement_id>')
def api_announcement_detail(announcement_id):
    announcement = collection('announcements').get(announcement_id)
    if not announcement or not is_announcement_live(announcement, today()):
        return jsonify({'error': 'Announcement not found'}), 404
    return jsonify({'success': True, 'data': with_engagement([announcement])[0]})


@app.route('/api/announcements/admin/all')
@api_admin_required
def api_admin_announcements():
    status = request.args.get('status')
    announcements = collection('announcements').find(lambda a: not status or a.get('status') == status)
    announcements.sort(key=lambda a: a.get('created_at') or '', reverse=True)
    announcements = with_engagement(announcements)
    return jsonify({'success': True, 'count': len(announcements), 'data': announcements})


@app.route('/api/announcements/admin/stats')
@api_admin_required
def api_announcement_stats():
    announcements = collection('announcements').all()
    week_ago = (get_local_now() - timedelta(days=7)).isoformat(timespec='seconds')
    stats = {'total': len(announcements)}
    for status in ANNOUNCEMENT_STATUSES:
        stats[status] = sum(1 for a in announcements if a.get('status') == status)
    for visibility in ANNOUNCEMENT_VISIBILITY:
        stats[visibility] = sum(1 for a in announcements if a.get('visibility') == visibility)
    stats['by_priority'] = {p: sum(1 for a in announcements if a.get('priority') == p)
                            for p in ANNOUNCEMENT_PRIORITIES}
    stats['recent'] = sum(1 for a in announcements if (a.get('created_at') or '') >= week_ago)
    return jsonify({'success': True, 'data': stats})


@app.route('/api/announcements', methods=['POST'])
@api_admin_required
def api_create_announcement():
    changes, error = announcement_changes(get_json_body())
    if error:
        return validation_error(error)
    changes.setdefault('expiry_date', None)
    _, _, announcement = collection('announcements').insert(changes)
    return jsonify({'success': True, 'message': 'Announcement created successfully',
                    'data': announcement}), 201


@app.route('/api/announcements/<int:announcement_id>', methods=['PUT'])
@api_admin_required
def api_update_announcement(announcement_id):
    announcements = collection('announcements')
    existing = announcements.get(announcement_id)
    if not existing:
        return jsonify({'error': 'Announcement not found'}), 404
    changes, error = announcement_changes(get_json_body(), existing)
    if error:
        return validation_error(error)
    announcement = announcements.update(announcement_id, changes)
    return jsonify({'success': True, 'message': 'Announcement updated successfully',
                    'data': announcement})


@app.route('/api/announcements/<int:announcement_id>', methods=['DELETE'])
@api_admin_required
def api_delete_announcement(announcement_id):
    if not collection('announcements').delete(announcement_id):
        return jsonify({'error': 'Announcement not found'}), 404
    collection('announcement_comments').delete_where(lambda c: c.get('announcement_id') == announcement_id)
    collection('announcement_likes').delete_where(lambda like: like.get('announcement_id') == announcement_id)
    return jsonify({'success': True, 'message': 'Announcement deleted successfully'})


def _live_announcement_or_404(announcement_id):
    announcement = collection('announcements').get(announcement_id)
    if not announcement or not is_announcement_live(announcement, today()):
        return None, (jsonify({'error': 'Announcement not found'}), 404)
    return announcement, None


@app.route('/api/announcements/<int:announcement_id>/comments')
def api_announcement_comments(announcement_id):
    _, not_found = _live_announcement_or_404(announcement_id)
    if not_found:
        return not_found
    comments = collection('announcement_comments').find(
        lambda c: c.get('announcement_id') == announcement_id)
    comments.sort(key=lambda c: c.get('created_at') or '')
    # Commenter emails stay private
    comments = [{k: v for k, v in c.items() if k != 'author_email'} for c in comments]
    return jsonify({'success': True, 'count': len(comments), 'data': comments})


@app.route('/api/announcements/<int:announcement_id>/comments', methods=['POST'])
def api_add_announcement_comment(announcement_id):
    if not feature_enabled('announcement_comments'):
        return feature_disabled_response('Commenting')
    _, not_found = _live_announcement_or_404(announcement_id)
    if not_found:
        return not_found

    data = get_json_body()
    comment_text = clean(data.get('comment_text'))
    if not comment_text:
        return validation_error('Comment text is required', 'comment_text')
    author_email = clean_email(data.get('author_email') or data.get('user_email'))
    if author_email:
        email_error = check_email(author_email)
        if email_error:
            return validation_error(email_error, 'author_email')

    comment = {
        'announcement_id': announcement_id,
        'comment_text': comment_text,
        'author_name': clean(data.get('author_name') or data.get('user_name')) or 'Guest',
        'author_email': author_email,
    }
    _, _, comment = collection('announcement_comments').insert(comment)
    return jsonify({'success': True, 'data': comment}), 201


@app.route('/api/announcements/<int:announcement_id>/comments/<int:comment_id>', methods=['DELETE'])
@api_admin_required
def api_delete_announcement_comment(announcement_id, comment_id):
    comments = collection('announcement_comments')
    comment = comments.get(comment_id)
    if not comment or comment.get('announcement_id') != announcement_id:
        return jsonify({'error': 'Comment not found'}), 404
    comments.delete(comment_id)
    return jsonify({'success': True})


def _like_count(announcement_id):
    return len(collection('announcement_likes').find(lambda like: like.get('announcement_id') == announcement_id))


@app.route('/api/announcements/<int:announcement_id>/likes')
def api_announcement_likes(announcement_id):
    _, not_found = _live_announcement_or_404(announcement_id)
    if not_found:
        return not_found
    user_email = (request.args.get('user_email') or '').strip().lower()
    likes = collection('announcement_likes').find(lambda like: like.get('announcement_id') == announcement_id)
    liked = bool(user_email) and any(like.get('user_email') == user_email for like in likes)
    return jsonify({'success': True, 'count': len(likes), 'liked': liked})


@app.route('/api/announcements/<int:announcement_id>/likes/toggle', methods=['POST'])
def api_toggle_announcement_like(announcement_id):
    """Like, or unlike if this email already liked it"""
    if not feature_enabled('announcement_likes'):
        return feature_disabled_response('Liking')
    _, not_found = _live_announcement_or_404(announcement_id)
    if not_found:
        return not_found

    data = get_json_body()
    user_email = clean_email(data.get('user_email'))
    email_error = check_email(user_email)
    if email_error:
        return validation_error(email_error, 'user_email')

    def already_liked(likes, new_like):
        if any(existing.get('announcement_id') == announcement_id and existing.get('user_email') == user_email
               for existing in likes):
            return 'already liked'
        return None

    likes = collection('announcement_likes')
    like = {
        'announcement_id': announcement_id,
        'user_email': user_email,
        'user_name': clean(data.get('user_name')) or '',
    }
    liked, _, _ = likes.insert(like, already_liked)
    if not liked:
        likes.delete_where(lambda existing: existing.get('announcement_id') == announcement_id
                           and existing.get('user_email') == user_email)
    return jsonify({
        'success': True,
        'message': 'Like added successfully' if liked else 'Like removed successfully',
        'liked': liked,
        'count': _like_count(announcement_id),
    })


# ========================================
# Error Handlers
# ========================================

@app.errorhandler(404)
def page_not_found(e):
    return jsonify({'error': 'Not found'}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({'error': 'Method not allowed'}), 405


@app.errorhandler(500)
def internal_error(e):
    logger.error(f"Unhandled error: {e}")
    return jsonify({'error': 'Internal server error'}), 500


if __name__ == '__main__':
    initialize_data_dir()
    app.run(debug=True, host='0.0.0.0', port=5000)
