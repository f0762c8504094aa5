import fastapi

from rebound_relay.common.middleware import DefaultHeadersMiddleware, ExceptionMiddleware
from rebound_relay.api.routes.webhooks import dodo_router, paypal_router, stripe_router
from rebound_relay.api.routes.webhooks.common import UNEXPECTED_ERROR


app = fastapi.FastAPI(
    docs_url=None,  # Disable docs in the mounted app to avoid conflicts
    openapi_url=None,  # Disable OpenAPI in the mounted app to avoid conflicts
    title="Rebound & Relay Webhooks",
    description="Inbound payment provider webhooks",
)

# Webhooks are server-to-server; no CORS middleware here.
app.add_middleware(ExceptionMiddleware, content={"received": True, "error": UNEXPECTED_ERROR})
app.add_middleware(DefaultHeadersMiddleware)

# Include routers
app.include_router(stripe_router)
app.include_router(dodo_router)
app.include_router(paypal_router)


# Health Check
@app.get("/health")
async def health_check():
    return {"message": "Server Up"}
