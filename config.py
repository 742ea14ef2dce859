"""
Application Configuration
Settings for the launch directory scheduling and ranking jobs
"""
import os
from urllib.parse import urlparse
from dotenv import load_dotenv

load_dotenv()


def parse_database_url(url):
    """Parse DATABASE_URL into individual components for psycopg2"""
    if not url:
        return None
    # Heroku uses postgres:// but psycopg2 needs postgresql://
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)
    parsed = urlparse(url)
    return {
        'host': parsed.hostname,
        'port': parsed.port or 5432,
        'database': parsed.path[1:],  # Remove leading /
        'user': parsed.username,
        'password': parsed.password
    }


def _env_bool(name, default):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    # PostgreSQL Database settings
    # Support both Heroku's DATABASE_URL and individual env vars
    DATABASE_URL = os.environ.get('DATABASE_URL')

    if DATABASE_URL:
        _db_config = parse_database_url(DATABASE_URL)
        DB_HOST = _db_config['host']
        DB_PORT = str(_db_config['port'])
        DB_NAME = _db_config['database']
        DB_USER = _db_config['user']
        DB_PASSWORD = _db_config['password']
    else:
        DB_HOST = os.environ.get('DB_HOST', 'localhost')
        DB_PORT = os.environ.get('DB_PORT', '5432')
        DB_NAME = os.environ.get('DB_NAME', 'launch_directory')
        DB_USER = os.environ.get('DB_USER', 'postgres')
        DB_PASSWORD = os.environ.get('DB_PASSWORD', '')

    DB_SSL_MODE = os.environ.get('DB_SSL_MODE', 'prefer')

    # ============== Stripe ==============
    STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY', '')
    STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET', '')

    # Shared secret for the /cron/* trigger endpoints
    CRON_SECRET = os.environ.get('CRON_SECRET', '')

    # ============== Launch Scheduling ==============
    # Capacity weeks and launch midnights are computed in this zone
    LAUNCH_TIMEZONE = os.environ.get('LAUNCH_TIMEZONE', 'America/Los_Angeles')
    LAUNCH_CAPACITY_PER_WEEK = int(os.environ.get('LAUNCH_CAPACITY_PER_WEEK', 1))
    LAUNCH_SEARCH_MAX_ATTEMPTS = int(os.environ.get('LAUNCH_SEARCH_MAX_ATTEMPTS', 365))

    # ============== Rankings ==============
    ARCHIVE_TOP_N = int(os.environ.get('ARCHIVE_TOP_N', 100))

    # Scheduler settings
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', 'false')
    WINNER_DETECTION_INTERVAL_MINUTES = int(os.environ.get('WINNER_DETECTION_INTERVAL_MINUTES', 60))
    LAUNCH_PROMOTION_INTERVAL_MINUTES = int(os.environ.get('LAUNCH_PROMOTION_INTERVAL_MINUTES', 15))
    ARCHIVE_RUN_AT = os.environ.get('ARCHIVE_RUN_AT', '00:10')

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
