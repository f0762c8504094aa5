import logging

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from rebound_relay.api.exceptions import BillingError, CheckoutCreationError
from rebound_relay.common.orm import get_orm_session, normalize_uuid
from rebound_relay.common.views import get_session_user_id
from ..models import EngagementModel, OrgModel
from ..policy import Permission, PolicyEvaluator
from ..schemas import CheckoutResponse, InvoiceCreateSchema, InvoiceResponse
from ..services.invoice_service import invoice_service

logger = logging.getLogger(__name__)


def _get_engagement(orm: Session, engagement_id) -> EngagementModel:
    try:
        engagement = orm.get(EngagementModel, normalize_uuid(engagement_id))
    except ValueError:
        engagement = None
    if engagement is None:
        raise HTTPException(status_code=404, detail="Engagement not found")
    return engagement


def _check_engagement_access(orm: Session, user_id, engagement: EngagementModel, permission: Permission) -> None:
    client_org = orm.get(OrgModel, engagement.client_org_id)
    if not PolicyEvaluator(orm).can_access_org(user_id, client_org, permission):
        raise HTTPException(status_code=403, detail="Access denied")


def create_invoice(
    *,
    request: Request,
    engagement_id: str,
    orm: Session = Depends(get_orm_session),
    body: InvoiceCreateSchema,
) -> CheckoutResponse:
    """
    Create a PENDING invoice for the engagement and return the Stripe Checkout URL.
    Members of the client organization pay their own engagements.
    """
    user_id = get_session_user_id(request)
    engagement = _get_engagement(orm, engagement_id)
    _check_engagement_access(orm, user_id, engagement, Permission.MANAGE_INVOICES)

    try:
        result = invoice_service.create_invoice_and_checkout(
            orm,
            engagement.id,
            body.amount,
            currency=body.currency,
            user_id=user_id,
        )
    except CheckoutCreationError as e:
        # keep the FAILED invoice so the attempt stays on record
        orm.commit()
        raise HTTPException(status_code=e.status_code, detail="Could not start checkout")
    except BillingError as e:
        orm.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)

    orm.commit()
    return CheckoutResponse(invoice_id=result.invoice_id, checkout_url=result.checkout_url)


def get_invoice(
    *,
    request: Request,
    invoice_id: str,
    orm: Session = Depends(get_orm_session),
) -> InvoiceResponse:
    user_id = get_session_user_id(request)

    try:
        invoice = invoice_service.get_invoice(orm, invoice_id)
    except BillingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    engagement = _get_engagement(orm, invoice.engagement_id)
    _check_engagement_access(orm, user_id, engagement, Permission.VIEW_INVOICES)
    return InvoiceResponse.model_validate(invoice)


def get_engagement_invoices(
    *,
    request: Request,
    engagement_id: str,
    orm: Session = Depends(get_orm_session),
) -> list[InvoiceResponse]:
    user_id = get_session_user_id(request)
    engagement = _get_engagement(orm, engagement_id)
    _check_engagement_access(orm, user_id, engagement, Permission.VIEW_INVOICES)

    invoices = invoice_service.get_invoices_for_engagement(orm, engagement.id)
    return [InvoiceResponse.model_validate(invoice) for invoice in invoices]
