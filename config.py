import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _normalize_database_url(url):
    if url and url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql://', 1)
    return url


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class AuthConfig:
    """Settings handed to the identity issuer when the app is built."""
    signing_key: str
    issuer: str
    audience: str
    max_age: int

    @classmethod
    def from_mapping(cls, config):
        return cls(
            signing_key=config['SECRET_KEY'],
            issuer=config['AUTH_ISSUER'],
            audience=config['AUTH_AUDIENCE'],
            max_age=int(config['AUTH_TOKEN_MAX_AGE']),
        )


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-me-bookstore-secret')
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(os.environ.get('DATABASE_URL'))
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    DATABASE_SSLMODE = os.environ.get('DATABASE_SSLMODE')

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')
    CORS_ORIGINS = [o.strip() for o in os.environ.get('CORS_ORIGINS', 'http://localhost:3000').split(',') if o.strip()]

    AUTH_ISSUER = os.environ.get('AUTH_ISSUER', 'bookstore-api')
    AUTH_AUDIENCE = os.environ.get('AUTH_AUDIENCE', 'bookstore-client')
    AUTH_TOKEN_MAX_AGE = int(os.environ.get('AUTH_TOKEN_MAX_AGE', 60 * 60 * 24))

    SESSION_TYPE = os.environ.get('SESSION_TYPE', 'sqlalchemy')
    SESSION_PERMANENT = False
    SESSION_COOKIE_SECURE = _env_bool('SESSION_COOKIE_SECURE', True)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Discount tiers, percentages
    BULK_LOW_THRESHOLD = int(os.environ.get('BULK_LOW_THRESHOLD', 5))
    BULK_LOW_RATE = int(os.environ.get('BULK_LOW_RATE', 5))
    BULK_HIGH_THRESHOLD = int(os.environ.get('BULK_HIGH_THRESHOLD', 10))
    BULK_HIGH_RATE = int(os.environ.get('BULK_HIGH_RATE', 10))
    LOYALTY_THRESHOLD = int(os.environ.get('LOYALTY_THRESHOLD', 10))
    LOYALTY_RATE = int(os.environ.get('LOYALTY_RATE', 10))

    CLAIM_CODE_LENGTH = 10
    CLAIM_CODE_ATTEMPTS = 5
    NOTIFY_ASYNC = _env_bool('NOTIFY_ASYNC', True)

    DB_RETRY_ATTEMPTS = 3
    DB_RETRY_DELAY = 1


class DevelopmentConfig(Config):
    SQLALCHEMY_DATABASE_URI = Config.SQLALCHEMY_DATABASE_URI or 'sqlite:///bookstore.db'
    SESSION_COOKIE_SECURE = False


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SECRET_KEY = 'testing-secret'
    LOG_LEVEL = 'WARNING'
    SESSION_TYPE = None
    SESSION_COOKIE_SECURE = False
    NOTIFY_ASYNC = False
    DB_RETRY_DELAY = 0


def engine_options(config):
    """Pool and connect arguments for server databases; SQLite takes none."""
    url = config.get('SQLALCHEMY_DATABASE_URI') or ''
    if url.startswith('sqlite'):
        return {}
    options = {
        'connect_args': {'connect_timeout': 10},
        'pool_size': 5,
        'max_overflow': 10,
        'pool_timeout': 30,
    }
    if config.get('DATABASE_SSLMODE'):
        options['connect_args']['sslmode'] = config['DATABASE_SSLMODE']
    return options
