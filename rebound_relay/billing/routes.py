from rebound_relay.common.route_config import RouteConfig
from .views import (
    OrgCreditsView,
    AdminCreditTransactionsView,
    AdminCreditAdjustmentView,
    AdminRecalculateCreditsView,
    create_invoice,
    get_invoice,
    get_engagement_invoices,
)

__all__ = ["route_config"]


route_config: list[RouteConfig] = [
    # credit routes
    RouteConfig(
        name='get_org_credits',
        path="/orgs/{org_id}/credits",
        endpoint=OrgCreditsView,
        methods=["GET"],
    ),

    # admin credit routes
    RouteConfig(
        name='admin_get_org_credit_transactions',
        path="/admin/orgs/{org_id}/credits",
        endpoint=AdminCreditTransactionsView,
        methods=["GET"],
    ),
    RouteConfig(
        name='admin_adjust_org_credits',
        path="/admin/orgs/{org_id}/credits",
        endpoint=AdminCreditAdjustmentView,
        methods=["POST"],
    ),
    RouteConfig(
        name='admin_recalculate_org_credits',
        path="/admin/orgs/{org_id}/credits/recalculate",
        endpoint=AdminRecalculateCreditsView,
        methods=["POST"],
    ),

    # marketplace invoice routes
    RouteConfig(
        name='create_invoice',
        path="/engagements/{engagement_id}/invoices",
        endpoint=create_invoice,
        methods=["POST"],
    ),
    RouteConfig(
        name='get_engagement_invoices',
        path="/engagements/{engagement_id}/invoices",
        endpoint=get_engagement_invoices,
        methods=["GET"],
    ),
    RouteConfig(
        name='get_invoice',
        path="/invoices/{invoice_id}",
        endpoint=get_invoice,
        methods=["GET"],
    ),
]
