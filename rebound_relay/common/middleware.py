from typing import Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi.responses import JSONResponse
from rebound_relay.api.log_config import logger


# webhook acknowledgments and billing views are JSON and must never be cached
DEFAULT_HEADERS = {
    "content-type": "application/json",
    "cache-control": "no-store, no-cache, must-revalidate, max-age=0",
    "pragma": "no-cache",
}

INTERNAL_ERROR_CONTENT = {"error": "Internal Server Error"}


class DefaultHeadersMiddleware(BaseHTTPMiddleware):
    """Fill in any of `headers` the view did not set itself."""

    def __init__(self, app, headers: Optional[dict] = None):
        super().__init__(app)
        self.headers = DEFAULT_HEADERS if headers is None else headers

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        for name, value in self.headers.items():
            if name not in response.headers:
                response.headers[name] = value

        return response


class ExceptionMiddleware(BaseHTTPMiddleware):
    """
    Answer unhandled exceptions with a 500 and a fixed JSON body.

    Mounted apps pass their own `content`; the webhook app answers with its
    acknowledgment shape so providers redeliver. Nothing about the exception
    is included in the body.

    Note that `HTTPException`s are handled by FastAPI and will not reach this point.
    """

    def __init__(self, app, content: Optional[dict] = None):
        super().__init__(app)
        self.content = INTERNAL_ERROR_CONTENT if content is None else content

    async def dispatch(self, request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception on {request.method} {request.url.path}: {e}", exc_info=True)
            return JSONResponse(status_code=500, content=self.content)
