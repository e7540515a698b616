"""
Configuration for the club website backend
Settings are read from environment variables; the defaults are for local development.
Club details (name, contact, leadership order) live in club_info.json inside CLUB_DATA_DIR
and can be edited through the admin API.
"""

import logging
import os

from datetime_utils import POLICIES, POLICY_TOLERANCE

logger = logging.getLogger(__name__)

# Get the directory of this file
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get('CLUB_DATA_DIR', os.path.join(BASE_DIR, 'data'))


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def env_int(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}, using {default}")
        return default


def env_list(name):
    value = os.environ.get(name, '')
    return [item.strip().lower() for item in value.split(',') if item.strip()]


# SECURITY: Set these environment variables in production
SECRET_KEY = os.environ.get('FLASK_SECRET_KEY', 'your-secret-key-change-this-in-production')
ADMIN_USERNAME = os.environ.get('ADMIN_USERNAME', 'admin')
ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD', 'password')
ADMIN_TOKEN_TTL_SECONDS = env_int('ADMIN_TOKEN_TTL_SECONDS', 86400)

# Email validation settings (empty list accepts any domain)
ALLOWED_EMAIL_DOMAINS = env_list('ALLOWED_EMAIL_DOMAINS')

# Past-date rejection for event scheduling
EVENT_PAST_POLICY = os.environ.get('EVENT_PAST_POLICY', POLICY_TOLERANCE)
if EVENT_PAST_POLICY not in POLICIES:
    logger.warning(f"Unknown EVENT_PAST_POLICY {EVENT_PAST_POLICY!r}, using {POLICY_TOLERANCE}")
    EVENT_PAST_POLICY = POLICY_TOLERANCE
EVENT_PAST_TOLERANCE_MINUTES = env_int('EVENT_PAST_TOLERANCE_MINUTES', 5)

# Mail
MAIL_SERVER = os.environ.get('MAIL_SERVER', 'smtp.gmail.com')
MAIL_PORT = env_int('MAIL_PORT', 587)
MAIL_USE_TLS = env_bool('MAIL_USE_TLS', True)
MAIL_USERNAME = os.environ.get('MAIL_USERNAME', '')
MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD', '')
MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER', 'noreply@localhost')

# Base URL used by api_client.ClubApiClient
CLUB_API_BASE_URL = os.environ.get('CLUB_API_BASE_URL', 'http://localhost:5000/api')

DEFAULT_CLUB_INFO = {
    "name": "Entrepreneurship and Student Career Development Club",
    "short_name": "ESCDC",
    "tagline": "Learn. Lead. Launch.",
    "description": "A student community running workshops, seminars and career programs.",
    "email": "",
    "phone": "",
    "address": "",
    "linkedin": "",
    "instagram": "",
    "leadership_positions": ["President", "Vice President", "Secretary", "Treasurer"],
}

# Seeded into system_settings / feature_flags when missing; editable through /api/settings
DEFAULT_SETTINGS = [
    {"key": "site_title", "value": "ESCDC", "type": "text", "category": "general",
     "description": "Title shown in the site header", "is_public": True},
    {"key": "maintenance_mode", "value": False, "type": "boolean", "category": "general",
     "description": "Show a maintenance notice instead of the site", "is_public": True},
    {"key": "events_per_page", "value": 12, "type": "number", "category": "display",
     "description": "Events listed per page", "is_public": True},
    {"key": "social_links", "value": {}, "type": "json", "category": "contact",
     "description": "Social media profile URLs by network", "is_public": True},
    {"key": "registration_note", "value": "", "type": "text", "category": "events",
     "description": "Internal note for organizers handling registrations", "is_public": False},
]

DEFAULT_FEATURES = [
    {"key": "event_registration", "name": "Event registration", "category": "events",
     "description": "Public sign-up for upcoming events", "is_enabled": True},
    {"key": "member_registration", "name": "Member registration", "category": "members",
     "description": "Public membership applications", "is_enabled": True},
    {"key": "announcement_comments", "name": "Announcement comments", "category": "announcements",
     "description": "Visitors can comment on announcements", "is_enabled": True},
    {"key": "announcement_likes", "name": "Announcement likes", "category": "announcements",
     "description": "Visitors can like announcements", "is_enabled": True},
]
