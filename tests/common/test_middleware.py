from unittest.mock import patch

import fastapi
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from rebound_relay.common import middleware
from rebound_relay.common.middleware import DefaultHeadersMiddleware, ExceptionMiddleware


def _app(**exception_kwargs) -> fastapi.FastAPI:
    app = fastapi.FastAPI()
    app.add_middleware(ExceptionMiddleware, **exception_kwargs)
    app.add_middleware(DefaultHeadersMiddleware)

    @app.get("/ok")
    async def ok():
        return {"ok": True}

    @app.get("/cached")
    async def cached():
        return JSONResponse({"ok": True}, headers={"cache-control": "max-age=60"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret detail")

    return app


def test_default_headers_are_added():
    response = TestClient(_app()).get("/ok")

    assert response.headers["content-type"] == "application/json"
    assert response.headers["cache-control"] == "no-store, no-cache, must-revalidate, max-age=0"
    assert response.headers["pragma"] == "no-cache"


def test_headers_set_by_the_view_are_kept():
    response = TestClient(_app()).get("/cached")

    assert response.headers["cache-control"] == "max-age=60"
    assert response.headers["pragma"] == "no-cache"


def test_unhandled_exception_is_a_generic_500():
    with patch.object(middleware.logger, "error") as log_error:
        response = TestClient(_app()).get("/boom")

    assert response.status_code == 500
    assert response.json() == {"error": "Internal Server Error"}
    assert "secret detail" not in response.text
    assert "GET /boom" in log_error.call_args.args[0]


def test_exception_content_is_configurable():
    response = TestClient(_app(content={"received": True, "error": "Unexpected"})).get("/boom")

    assert response.status_code == 500
    assert response.json() == {"received": True, "error": "Unexpected"}
    assert response.headers["cache-control"].startswith("no-store")
