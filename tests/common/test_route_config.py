import pytest
from fastapi import APIRouter, FastAPI
from fastapi.testclient import TestClient

from rebound_relay.common.route_config import BaseView, RouteConfig, register_routes, reverse_path


class EchoView(BaseView):
    async def __call__(self, item_id: str) -> dict:
        return {"item_id": item_id}


def test_billing_routes_are_registered():
    import rebound_relay.billing.app  # noqa: F401

    assert reverse_path("get_org_credits") == "/billing/orgs/{org_id}/credits"
    assert reverse_path("admin_recalculate_org_credits") == "/billing/admin/orgs/{org_id}/credits/recalculate"
    assert reverse_path("create_invoice") == "/billing/engagements/{engagement_id}/invoices"
    assert reverse_path("missing") is None


def test_class_view_receives_declared_params():
    app = FastAPI()
    router = APIRouter()
    register_routes(router, [RouteConfig(name="echo", path="/echo/{item_id}", endpoint=EchoView, methods=["GET"])])
    app.include_router(router)

    response = TestClient(app).get("/echo/abc")

    assert response.status_code == 200
    assert response.json() == {"item_id": "abc"}
    assert reverse_path("echo") == "/echo/{item_id}"


def test_rejects_non_view_classes():
    class NotAView:
        pass

    with pytest.raises(TypeError):
        RouteConfig(name="bad", path="/bad", endpoint=NotAView, methods=["GET"]).as_view()
