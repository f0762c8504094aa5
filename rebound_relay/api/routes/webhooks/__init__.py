from .stripe_webhooks import router as stripe_router
from .dodo_webhooks import router as dodo_router
from .paypal_webhooks import router as paypal_router

__all__ = ["stripe_router", "dodo_router", "paypal_router"]
