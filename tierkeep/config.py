import os
import tempfile


def _env_float(name, default):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return float(value)


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return int(value)


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        import secrets
        SECRET_KEY = secrets.token_hex(32)

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/tierkeep.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # API access, "Authorization: Bearer <API_TOKEN>"
    API_TOKEN = os.environ.get('API_TOKEN')

    # Scratch space for cold tier spooling
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Hot tier (S3-compatible object store).
    # HOT_BUCKET_PATH keeps presence: unset (None) means per-site default
    # prefixes, an explicit empty string means the bucket root.
    HOT_ENDPOINT_URL = os.environ.get('HOT_ENDPOINT_URL')
    HOT_ACCESS_KEY = os.environ.get('HOT_ACCESS_KEY')
    HOT_SECRET_KEY = os.environ.get('HOT_SECRET_KEY')
    HOT_BUCKET = os.environ.get('HOT_BUCKET')
    HOT_REGION = os.environ.get('HOT_REGION') or 'us-east-1'
    HOT_BUCKET_PATH = os.environ.get('HOT_BUCKET_PATH')
    HOT_HTTP_TIMEOUT = os.environ.get('HOT_HTTP_TIMEOUT')

    # Cold tier (archival vault), optional
    COLD_VAULT = os.environ.get('COLD_VAULT')
    COLD_ACCOUNT_ID = os.environ.get('COLD_ACCOUNT_ID') or '-'
    COLD_ACCESS_KEY = os.environ.get('COLD_ACCESS_KEY')
    COLD_SECRET_KEY = os.environ.get('COLD_SECRET_KEY')
    COLD_REGION = os.environ.get('COLD_REGION') or 'us-east-1'
    COLD_HTTP_TIMEOUT = os.environ.get('COLD_HTTP_TIMEOUT')

    # Capacity monitor
    MONITOR_ENABLED = _env_bool('MONITOR_ENABLED', False)
    MONITOR_CRON = os.environ.get('MONITOR_CRON') or '*/30 * * * *'
    MONITOR_THRESHOLD = _env_float('MONITOR_THRESHOLD', 95.0)
    MONITOR_MIGRATE_PERCENT = _env_float('MONITOR_MIGRATE_PERCENT', 10.0)
    MONITOR_FORCE_DELETE = _env_bool('MONITOR_FORCE_DELETE', False)
    MONITOR_STORAGE_PATH = os.environ.get('MONITOR_STORAGE_PATH') or '/'
    MONITOR_SSH_HOST = os.environ.get('MONITOR_SSH_HOST')
    MONITOR_SSH_USER = os.environ.get('MONITOR_SSH_USER')
    MONITOR_SSH_PORT = _env_int('MONITOR_SSH_PORT', 22)
    MONITOR_SSH_KEY = os.environ.get('MONITOR_SSH_KEY')
    MONITOR_MAX_ITERATIONS = _env_int('MONITOR_MAX_ITERATIONS', 10)
    MONITOR_PAUSE_SECONDS = _env_float('MONITOR_PAUSE_SECONDS', 2.0)

    # Refuse new backups when the hot tier is this full (percent)
    BACKUP_CAPACITY_THRESHOLD = _env_float('BACKUP_CAPACITY_THRESHOLD', 95.0)
    BACKUP_CAPACITY_CHECK = _env_bool('BACKUP_CAPACITY_CHECK', False)

    # Daily retention pass
    RETENTION_ENABLED = _env_bool('RETENTION_ENABLED', True)
    RETENTION_CRON = os.environ.get('RETENTION_CRON') or '0 3 * * *'

    # Capacity estimates
    ESTIMATE_DAILY_RETENTION = _env_int('ESTIMATE_DAILY_RETENTION', 14)
    ESTIMATE_WEEKLY_RETENTION = _env_int('ESTIMATE_WEEKLY_RETENTION', 26)
    ESTIMATE_MONTHLY_RETENTION = _env_int('ESTIMATE_MONTHLY_RETENTION', 6)
    ESTIMATE_BUFFER_PERCENT = _env_float('ESTIMATE_BUFFER_PERCENT', 20.0)
    ESTIMATE_PROJECTION_MONTHS = _env_int('ESTIMATE_PROJECTION_MONTHS', 12)
    ESTIMATE_GLACIER_PRICE = _env_float('ESTIMATE_GLACIER_PRICE', 0.004)
    ESTIMATE_RETRIEVAL_PRICE = _env_float('ESTIMATE_RETRIEVAL_PRICE', 0.01)
    ESTIMATE_SAMPLE_SIZE = os.environ.get('ESTIMATE_SAMPLE_SIZE') or '100MB'

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "tierkeep.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory database, no scheduler"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    API_TOKEN = 'test-token'
    TEMP_DIR = tempfile.gettempdir()
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'tierkeep-test-logs')

    HOT_ENDPOINT_URL = None
    HOT_ACCESS_KEY = 'testing'
    HOT_SECRET_KEY = 'testing'
    HOT_BUCKET = 'test-bucket'
    HOT_REGION = 'us-east-1'
    HOT_BUCKET_PATH = None
    HOT_HTTP_TIMEOUT = None

    COLD_VAULT = 'test-vault'
    COLD_ACCESS_KEY = 'testing'
    COLD_SECRET_KEY = 'testing'
    COLD_REGION = 'us-east-1'
    COLD_HTTP_TIMEOUT = None

    MONITOR_PAUSE_SECONDS = 0.0


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
