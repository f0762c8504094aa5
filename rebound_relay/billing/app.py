from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware

from rebound_relay.common.environment import ALLOWED_ORIGINS
from rebound_relay.common.middleware import DefaultHeadersMiddleware, ExceptionMiddleware
from rebound_relay.common.route_config import register_routes

from .routes import route_config

__all__ = ["app"]

app = FastAPI(title="Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.add_middleware(ExceptionMiddleware)
app.add_middleware(DefaultHeadersMiddleware)

router = APIRouter()
register_routes(router, route_config, prefix="/billing")
app.include_router(router)
