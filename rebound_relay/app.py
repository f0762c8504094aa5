"""
Rebound & Relay billing parent app

Collect app instances from the sub-apps and mount them here: the provider
webhooks at the root and the billing views under `/billing`.
"""

from fastapi import FastAPI
import sentry_sdk

from rebound_relay.api.log_config import logger
from .common.sentry import sanitize_event
from .common.environment import API_DOMAIN
from .common.lifespan import lifespan
from .api.app import app as api_app
from .billing.app import app as billing_app

__all__ = ['app']

sentry_sdk.init(
    traces_sample_rate=1.0,
    before_send=sanitize_event,
)

# Create the main app with docs enabled in dev only
app = FastAPI(
    title="Rebound & Relay Billing",
    description="Payment reconciliation services",
    docs_url="/docs" if ("localhost" in API_DOMAIN) else None,
    openapi_url="/openapi.json" if ("localhost" in API_DOMAIN) else None,
    lifespan=lifespan,
)
logger.info("⚡️FastAPI app initialized")

app.mount("/billing", billing_app)
app.mount("/", api_app)


if "localhost" not in API_DOMAIN:
    # only run Sentry in prod since it breaks the docs routes.
    from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

    logger.info("Sentry middleware enabled")
    app = SentryAsgiMiddleware(app)
