import functools
import uuid
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from .environment import APP_URL
from .orm import normalize_uuid


def add_cors_headers(
    *,
    origins: list[str] | None = None,
    methods: list[str] | None = None,
):
    """
    Render a Pydantic object response as a JSON response with CORS headers.

    Used by the read-only billing views the dashboard polls directly.

    Arguments:
        origins: List of allowed origins for CORS. Defaults to the APP_URL.
        methods: List of allowed methods for CORS. Defaults to GET, OPTIONS.
    """

    if origins is None:
        origins = [APP_URL]

    if methods is None:
        methods = ["GET", "OPTIONS"]

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> JSONResponse:
            response_object: BaseModel = await func(*args, **kwargs)
            assert isinstance(response_object, BaseModel), "View must return a Pydantic model"

            return JSONResponse(
                content=response_object.model_dump(mode="json"),
                headers={
                    "Access-Control-Allow-Origin": ', '.join(origins),
                    "Access-Control-Allow-Credentials": "true",
                    "Access-Control-Allow-Methods": ', '.join(methods),
                    "Access-Control-Allow-Headers": "*",
                },
            )

        return wrapper

    return decorator


def get_session_user_id(request: Request) -> uuid.UUID:
    """The acting user, as set on `request.state.session` by the upstream auth layer."""
    session = getattr(request.state, "session", None)
    user_id = getattr(session, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return normalize_uuid(user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Not authenticated")
