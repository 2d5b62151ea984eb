import os
from datetime import timedelta


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes')


class Config:
    """Application configuration settings."""

    # Base directory
    BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    # Security
    SECRET_KEY = os.environ.get('SECRET_KEY') or os.urandom(32).hex()
    JWT_SECRET = os.environ.get('JWT_SECRET') or SECRET_KEY
    JWT_ALGORITHM = 'HS256'
    ACCESS_TOKEN_LIFETIME = timedelta(minutes=int(os.environ.get('ACCESS_TOKEN_MINUTES', 15)))
    REFRESH_TOKEN_LIFETIME = timedelta(days=int(os.environ.get('REFRESH_TOKEN_DAYS', 7)))

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        f'sqlite:///{os.path.join(BASE_DIR, "servoley.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    MAX_CONTENT_LENGTH = 10 * 1024 * 1024  # 10MB request bodies

    # Encryption key for provider identity documents (Fernet)
    # In production, this should be stored securely (e.g., environment variable)
    FERNET_KEY = os.environ.get('FERNET_KEY')
    KEYS_FOLDER = os.path.join(BASE_DIR, 'keys')

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    CORS_ORIGINS = [
        origin.strip() for origin in os.environ.get(
            'CORS_ORIGINS',
            'http://localhost:3000,http://localhost:5173,http://localhost:5174,http://localhost:8083'
        ).split(',') if origin.strip()
    ]

    # One-time passcodes
    OTP_LENGTH = 6
    OTP_VALIDITY_SECONDS = int(os.environ.get('OTP_VALIDITY_SECONDS', 300))
    OTP_MAX_ATTEMPTS = int(os.environ.get('OTP_MAX_ATTEMPTS', 5))
    OTP_RESEND_COOLDOWN_SECONDS = int(os.environ.get('OTP_RESEND_COOLDOWN_SECONDS', 30))
    OTP_BYPASS = _env_bool('BYPASS_OTP')
    OTP_BYPASS_CODE = '123456'

    # Rate limiting (Flask-Limiter notation)
    RATELIMIT_ENABLED = _env_bool('RATELIMIT_ENABLED', True)
    RATELIMIT_STORAGE_URI = os.environ.get('RATE_LIMIT_STORAGE_URI', 'memory://')
    RATELIMIT_HEADERS_ENABLED = True
    API_RATE_LIMIT = os.environ.get('API_RATE_LIMIT', '200 per 15 minutes')
    RATELIMIT_DEFAULT = API_RATE_LIMIT
    LOGIN_RATE_LIMIT = os.environ.get('LOGIN_RATE_LIMIT', '5 per minute')
    REGISTER_RATE_LIMIT = os.environ.get('REGISTER_RATE_LIMIT', '15 per 10 minutes')
    AUTH_RATE_LIMIT = os.environ.get('AUTH_RATE_LIMIT', '20 per 5 minutes')
    OTP_VERIFY_RATE_LIMIT = os.environ.get('OTP_VERIFY_RATE_LIMIT', '10 per minute')
    MESSAGING_RATE_LIMIT = os.environ.get('MESSAGING_RATE_LIMIT', '30 per minute')
    PAYMENT_RATE_LIMIT = os.environ.get('PAYMENT_RATE_LIMIT', '20 per 5 minutes')

    # Login lockout with exponential backoff
    LOGIN_MAX_ATTEMPTS = 5
    LOGIN_BASE_LOCKOUT_MINUTES = 5

    # Request sanitizer limits
    MAX_INPUT_LENGTH = max(int(os.environ.get('MAX_INPUT_LENGTH', 4000)), 256)
    MAX_INPUT_DEPTH = max(int(os.environ.get('MAX_INPUT_DEPTH', 8)), 2)
    MAX_ARRAY_ITEMS = max(int(os.environ.get('MAX_ARRAY_ITEMS', 100)), 10)
    MAX_OBJECT_KEYS = max(int(os.environ.get('MAX_OBJECT_KEYS', 100)), 20)

    IDEMPOTENCY_TTL_HOURS = max(int(os.environ.get('IDEMPOTENCY_TTL_HOURS', 24)), 1)

    # Money
    CURRENCY = 'INR'
    COMMISSION_RATE = float(os.environ.get('COMMISSION_RATE', 0.10))
    MOCK_PAYMENT = _env_bool('MOCK_PAYMENT')
    PAYMENT_KEY_ID = os.environ.get('PAYMENT_KEY_ID')
    PAYMENT_KEY_SECRET = os.environ.get('PAYMENT_KEY_SECRET', '')

    # Escrow guards
    ESCROW_DEFAULT_FEE_PERCENT = 5
    ESCROW_MAX_FEE_PERCENT = 30
    ESCROW_MAX_AMOUNT = float(os.environ.get('ESCROW_MAX_AMOUNT', 100000))
    ESCROW_MAX_DAILY_TRANSACTIONS = int(os.environ.get('ESCROW_MAX_DAILY_TRANSACTIONS', 50))
    ESCROW_RATE_LIMIT_REQUESTS = int(os.environ.get('ESCROW_RATE_LIMIT_REQUESTS', 100))
    ESCROW_RATE_LIMIT_WINDOW_SECONDS = int(os.environ.get('ESCROW_RATE_LIMIT_WINDOW_SECONDS', 60))

    @staticmethod
    def init_app(app):
        """Initialize application-specific configurations."""
        if not app.config.get('FERNET_KEY'):
            os.makedirs(app.config['KEYS_FOLDER'], exist_ok=True)


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    JWT_SECRET = 'test-jwt-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    FERNET_KEY = 'hbL0cEYwWa2oBOVt5pLp8mU8e-lP_8c2G9rmBUuWmXo='
    OTP_BYPASS = True
    RATELIMIT_ENABLED = False
    MOCK_PAYMENT = False
    PAYMENT_KEY_ID = 'rzp_test_key'
    PAYMENT_KEY_SECRET = 'test-payment-secret'
    LOG_LEVEL = 'WARNING'
    BCRYPT_LOG_ROUNDS = 4
