import os
from decimal import Decimal

# Base URLs and domains
APP_DOMAIN = os.getenv("APP_DOMAIN", "app.reboundrelay.com")
API_DOMAIN = os.getenv("API_DOMAIN", "api.reboundrelay.com")

# Protocol - defaults to https but can be overridden for local development
PROTOCOL = os.getenv("PROTOCOL", "https")

# Full base URLs
APP_URL = f"{PROTOCOL}://{APP_DOMAIN}"

# Where checkout sessions send the client back to
RELAY_INVOICES_URL = f"{APP_URL}/relay/invoices"

# CORS Configuration
ALLOWED_ORIGINS = [
    APP_URL,
]

# `production` rejects unsigned webhooks when no secret is configured
ENVIRONMENT: str = os.getenv("ENVIRONMENT", "production").lower()
IS_PRODUCTION: bool = ENVIRONMENT == "production"


SQLALCHEMY_LOG_LEVEL = os.environ.get("SQLALCHEMY_LOG_LEVEL")

# A full SQLAlchemy URL takes precedence over the individual Postgres settings.
DATABASE_URL = os.getenv("DATABASE_URL")

POSTGRES_HOST = os.getenv('POSTGRES_HOST')
POSTGRES_PORT = os.getenv('POSTGRES_PORT', 5432)
POSTGRES_DATABASE = os.getenv('POSTGRES_DATABASE')
POSTGRES_USER = os.getenv('POSTGRES_USER')
POSTGRES_PASSWORD = os.getenv('POSTGRES_PASSWORD')
POSTGRES_SSLMODE = os.getenv('POSTGRES_SSLMODE', 'prefer')

# webhook bursts are short-lived; keep the pool small and let it overflow.
POSTGRES_MIN_POOL_SIZE: int = int(os.getenv('POSTGRES_MIN_POOL_SIZE', 1))
POSTGRES_MAX_POOL_SIZE: int = int(os.getenv('POSTGRES_MAX_POOL_SIZE', 10))


# platform cut of every marketplace invoice, frozen onto the invoice at creation
PLATFORM_COMMISSION_RATE: Decimal = Decimal(os.getenv("PLATFORM_COMMISSION_RATE", "0.15"))

# plan assigned on signup and on subscription cancellation
DEFAULT_PLAN_CODENAME: str = os.getenv("DEFAULT_PLAN_CODENAME", "free")

# seconds to wait on supplementary provider API calls made while handling a webhook
PROVIDER_REQUEST_TIMEOUT: float = float(os.getenv("PROVIDER_REQUEST_TIMEOUT", 5))
