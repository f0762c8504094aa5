import uuid
from unittest.mock import MagicMock, patch

import pytest
import stripe
from fastapi import HTTPException

from rebound_relay.billing.billing_constants import InvoiceStatus
from rebound_relay.billing.models import MarketplaceInvoice
from rebound_relay.billing.schemas import InvoiceCreateSchema
from rebound_relay.billing.views.invoices import create_invoice, get_engagement_invoices, get_invoice


@pytest.fixture
def mock_checkout_session():
    session = MagicMock()
    session.id = "cs_test_view"
    session.url = "https://checkout.stripe.com/c/pay/cs_test_view"
    with patch("stripe.checkout.Session.create", return_value=session) as mock_create:
        yield mock_create


@pytest.mark.asyncio
async def test_create_invoice(mock_request, orm_session, test_engagement, mock_checkout_session):
    """Client org members can start a checkout for their engagement."""
    result = create_invoice(
        request=mock_request,
        engagement_id=str(test_engagement.id),
        orm=orm_session,
        body=InvoiceCreateSchema(amount=10000),
    )

    assert result.checkout_url == "https://checkout.stripe.com/c/pay/cs_test_view"
    invoice = orm_session.get(MarketplaceInvoice, uuid.UUID(result.invoice_id))
    assert invoice.status == InvoiceStatus.PENDING
    assert (invoice.commission_amount, invoice.payout_amount) == (1500, 8500)


@pytest.mark.asyncio
async def test_create_invoice_with_outstanding_invoice(
    mock_request, orm_session, test_engagement, mock_checkout_session
):
    create_invoice(
        request=mock_request,
        engagement_id=str(test_engagement.id),
        orm=orm_session,
        body=InvoiceCreateSchema(amount=10000),
    )

    with pytest.raises(HTTPException) as exc_info:
        create_invoice(
            request=mock_request,
            engagement_id=str(test_engagement.id),
            orm=orm_session,
            body=InvoiceCreateSchema(amount=500),
        )

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_create_invoice_checkout_failure_keeps_failed_invoice(mock_request, orm_session, test_engagement):
    with patch("stripe.checkout.Session.create", side_effect=stripe.APIConnectionError("reset")):
        with pytest.raises(HTTPException) as exc_info:
            create_invoice(
                request=mock_request,
                engagement_id=str(test_engagement.id),
                orm=orm_session,
                body=InvoiceCreateSchema(amount=10000),
            )

    assert exc_info.value.status_code == 502
    invoices = orm_session.query(MarketplaceInvoice).all()
    assert [invoice.status for invoice in invoices] == [InvoiceStatus.FAILED]


@pytest.mark.asyncio
async def test_create_invoice_denied_for_outsider(
    mock_request, orm_session, test_engagement, test_user2, mock_checkout_session
):
    mock_request.state.session.user_id = test_user2.id

    with pytest.raises(HTTPException) as exc_info:
        create_invoice(
            request=mock_request,
            engagement_id=str(test_engagement.id),
            orm=orm_session,
            body=InvoiceCreateSchema(amount=10000),
        )

    assert exc_info.value.status_code == 403
    mock_checkout_session.assert_not_called()


@pytest.mark.asyncio
async def test_create_invoice_unknown_engagement(mock_request, orm_session):
    with pytest.raises(HTTPException) as exc_info:
        create_invoice(
            request=mock_request,
            engagement_id="not-a-uuid",
            orm=orm_session,
            body=InvoiceCreateSchema(amount=10000),
        )

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_get_invoice_and_list(mock_request, orm_session, test_engagement, mock_checkout_session):
    created = create_invoice(
        request=mock_request,
        engagement_id=str(test_engagement.id),
        orm=orm_session,
        body=InvoiceCreateSchema(amount=2500),
    )

    invoice = get_invoice(request=mock_request, invoice_id=created.invoice_id, orm=orm_session)
    invoices = get_engagement_invoices(request=mock_request, engagement_id=str(test_engagement.id), orm=orm_session)

    assert invoice.id == created.invoice_id
    assert invoice.status == "PENDING"
    assert invoice.engagement_id == str(test_engagement.id)
    assert [i.id for i in invoices] == [created.invoice_id]


@pytest.mark.asyncio
async def test_support_can_read_but_not_create(
    mock_request, orm_session, test_engagement, support_user, mock_checkout_session
):
    invoices = get_engagement_invoices(request=mock_request, engagement_id=str(test_engagement.id), orm=orm_session)
    assert invoices == []

    mock_request.state.session.user_id = support_user.id
    assert get_engagement_invoices(request=mock_request, engagement_id=str(test_engagement.id), orm=orm_session) == []

    with pytest.raises(HTTPException) as exc_info:
        create_invoice(
            request=mock_request,
            engagement_id=str(test_engagement.id),
            orm=orm_session,
            body=InvoiceCreateSchema(amount=1000),
        )
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_get_unknown_invoice(mock_request, orm_session):
    with pytest.raises(HTTPException) as exc_info:
        get_invoice(request=mock_request, invoice_id=str(uuid.uuid4()), orm=orm_session)

    assert exc_info.value.status_code == 404
