import os


class Config:
    """Base configuration"""

    # Data directory holding the database, logs and temp space
    DATA_DIR = os.environ.get('STRONGBOX_DATA_DIR') or '/data'

    # Backup policy (JSON)
    STRONGBOX_POLICY = os.environ.get('STRONGBOX_POLICY') or os.path.join(DATA_DIR, 'policy.json')

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "strongbox.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Temp/Logs
    TEMP_DIR = os.environ.get('TEMP_DIR') or os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Object store transfer retries
    S3_MAX_ATTEMPTS = int(os.environ.get('S3_MAX_ATTEMPTS', 3))
    S3_BACKOFF_SECONDS = float(os.environ.get('S3_BACKOFF_SECONDS', 1.0))
    S3_MAX_BACKOFF_SECONDS = float(os.environ.get('S3_MAX_BACKOFF_SECONDS', 30.0))

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    RETENTION_CRON_HOUR = int(os.environ.get('RETENTION_CRON_HOUR', 2))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    STRONGBOX_POLICY = os.environ.get('STRONGBOX_POLICY') or os.path.join(DATA_DIR, 'policy.json')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "strongbox.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    S3_BACKOFF_SECONDS = 0.0
    S3_MAX_BACKOFF_SECONDS = 0.0


def retry_settings(config) -> dict:
    """S3 retry keyword arguments for create_storage() from a Flask config."""
    return {
        'max_attempts': config.get('S3_MAX_ATTEMPTS', 3),
        'backoff_seconds': config.get('S3_BACKOFF_SECONDS', 1.0),
        'max_backoff_seconds': config.get('S3_MAX_BACKOFF_SECONDS', 30.0),
    }


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
