import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR
from typing import Optional

import stripe
from sqlalchemy.orm import Session

from rebound_relay.api.environment import STRIPE_SECRET_KEY
from rebound_relay.api.exceptions import (
    BillingError,
    CheckoutCreationError,
    EngagementNotFoundError,
    InvalidInvoiceTransitionError,
    InvoiceMismatchError,
    InvoiceNotFoundError,
    OutstandingInvoiceError,
)
from rebound_relay.common.environment import (
    PLATFORM_COMMISSION_RATE,
    PROVIDER_REQUEST_TIMEOUT,
    RELAY_INVOICES_URL,
)
from rebound_relay.common.orm import normalize_uuid
from ..billing_constants import BillingAuditAction, BillingConstants, InvoiceStatus, Provider
from ..models import BillingAuditLog, ConsultantModel, EngagementModel, MarketplaceInvoice

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    invoice_id: str
    checkout_url: str


def compute_commission(amount: int, rate: Optional[Decimal] = None) -> tuple[int, int]:
    """Split `amount` into (platform commission, consultant payout); commission is floored."""
    if rate is None:
        rate = PLATFORM_COMMISSION_RATE
    commission = int((Decimal(amount) * Decimal(str(rate))).to_integral_value(rounding=ROUND_FLOOR))
    return commission, amount - commission


class InvoiceService:
    """
    Marketplace invoice lifecycle: PENDING -> PAID | FAILED, both terminal.

    Methods flush but do not commit.
    """

    def _configure_stripe(self) -> None:
        stripe.api_key = STRIPE_SECRET_KEY
        stripe.default_http_client = stripe.RequestsClient(timeout=PROVIDER_REQUEST_TIMEOUT)

    def get_invoice(self, orm: Session, invoice_id) -> MarketplaceInvoice:
        invoice = MarketplaceInvoice.get_by_id(orm, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def get_invoices_for_engagement(self, orm: Session, engagement_id) -> list[MarketplaceInvoice]:
        return (
            orm.query(MarketplaceInvoice)
            .filter(MarketplaceInvoice.engagement_id == normalize_uuid(engagement_id))
            .order_by(MarketplaceInvoice.created_at.desc())
            .all()
        )

    def get_pending_invoice(self, orm: Session, engagement_id) -> Optional[MarketplaceInvoice]:
        return (
            orm.query(MarketplaceInvoice)
            .filter(
                MarketplaceInvoice.engagement_id == normalize_uuid(engagement_id),
                MarketplaceInvoice.status == InvoiceStatus.PENDING,
            )
            .first()
        )

    def _audit(self, orm: Session, invoice: MarketplaceInvoice, action: BillingAuditAction, user_id=None, **details):
        engagement = orm.get(EngagementModel, invoice.engagement_id)
        orm.add(
            BillingAuditLog(
                org_id=engagement.client_org_id if engagement else None,
                user_id=user_id,
                action=action.value,
                details={"invoice_id": str(invoice.id), "status": invoice.status.value, **details},
            )
        )

    def _checkout_params(
        self,
        invoice: MarketplaceInvoice,
        engagement: EngagementModel,
        consultant: Optional[ConsultantModel],
    ) -> dict:
        invoice_url = f"{RELAY_INVOICES_URL}/{invoice.id}"
        params = {
            "payment_method_types": ["card"],
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": invoice.currency,
                        "product_data": {
                            "name": f"Engagement: {engagement.title}",
                            "description": f"Invoice {invoice.id}",
                        },
                        "unit_amount": invoice.amount,
                    },
                    "quantity": 1,
                }
            ],
            "success_url": f"{invoice_url}?success=true",
            "cancel_url": f"{invoice_url}?canceled=true",
            "metadata": {
                "invoiceId": str(invoice.id),
                "engagementId": str(engagement.id),
            },
        }

        if consultant is not None and consultant.can_receive_payouts:
            params["payment_intent_data"] = {
                "transfer_data": {
                    "destination": consultant.stripe_account_id,
                    "amount": invoice.payout_amount,
                },
                "metadata": {"invoiceId": str(invoice.id)},
            }
        elif consultant is not None:
            logger.info(f"Consultant {consultant.id} has no onboarded payout account; payout handled manually")

        return params

    def create_invoice_and_checkout(
        self,
        orm: Session,
        engagement_id,
        amount: int,
        currency: str = BillingConstants.DEFAULT_CURRENCY,
        user_id=None,
    ) -> CheckoutResult:
        """
        Persist a PENDING invoice with a frozen commission split and open a Stripe
        Checkout Session for it.

        A provider failure leaves the invoice FAILED (flushed, for the caller to
        commit) and raises `CheckoutCreationError`.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise BillingError(f"Invoice amount must be a positive integer, got {amount!r}")

        try:
            engagement_uuid = normalize_uuid(engagement_id)
        except (ValueError, TypeError, AttributeError):
            raise EngagementNotFoundError(engagement_id)

        engagement = orm.query(EngagementModel).filter(EngagementModel.id == engagement_uuid).with_for_update().first()
        if engagement is None:
            raise EngagementNotFoundError(engagement_id)

        outstanding = self.get_pending_invoice(orm, engagement.id)
        if outstanding is not None:
            raise OutstandingInvoiceError(engagement.id, outstanding.id)

        consultant = orm.get(ConsultantModel, engagement.consultant_id)
        commission, payout = compute_commission(amount)

        invoice = MarketplaceInvoice(
            engagement_id=engagement.id,
            amount=amount,
            commission_amount=commission,
            payout_amount=payout,
            currency=currency.lower(),
            status=InvoiceStatus.PENDING,
            provider=Provider.stripe.value,
        )
        orm.add(invoice)
        orm.flush()
        self._audit(
            orm,
            invoice,
            BillingAuditAction.INVOICE_CREATED,
            user_id=user_id,
            amount=amount,
            commission_amount=commission,
            payout_amount=payout,
        )

        self._configure_stripe()
        try:
            session = stripe.checkout.Session.create(
                **self._checkout_params(invoice, engagement, consultant),
                idempotency_key=f"invoice-checkout-{invoice.id}",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout creation failed for invoice {invoice.id}: {e}")
            invoice.status = InvoiceStatus.FAILED
            invoice.failure_reason = f"checkout_creation_failed: {e}"
            self._audit(orm, invoice, BillingAuditAction.INVOICE_FAILED, user_id=user_id, reason="checkout")
            orm.flush()
            raise CheckoutCreationError(invoice.id, str(e))

        invoice.checkout_session_id = session.id
        orm.flush()

        logger.info(
            f"Invoice {invoice.id} created for engagement {engagement.id}: "
            f"amount={amount} commission={commission} payout={payout}"
        )
        return CheckoutResult(invoice_id=str(invoice.id), checkout_url=session.url)

    def _lock_invoice(self, orm: Session, invoice_id, engagement_id=None) -> MarketplaceInvoice:
        invoice = MarketplaceInvoice.get_by_id(orm, invoice_id, for_update=True)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)

        if engagement_id:
            try:
                matches = invoice.engagement_id == normalize_uuid(engagement_id)
            except (ValueError, TypeError, AttributeError):
                matches = False
            if not matches:
                raise InvoiceMismatchError(invoice.id, engagement_id)
        return invoice

    def mark_invoice_paid(
        self,
        orm: Session,
        invoice_id,
        external_payment_id: Optional[str],
        engagement_id=None,
        provider: Provider = Provider.stripe,
    ) -> tuple[MarketplaceInvoice, bool]:
        """
        Move a PENDING invoice to PAID. Returns the invoice and whether it transitioned.

        A replay against an already PAID invoice changes nothing. A FAILED invoice
        cannot be paid; that payment needs manual reconciliation.
        """
        invoice = self._lock_invoice(orm, invoice_id, engagement_id)

        if invoice.status == InvoiceStatus.PAID:
            if external_payment_id and invoice.external_payment_id != external_payment_id:
                logger.warning(
                    f"Invoice {invoice.id} already paid by {invoice.external_payment_id}; "
                    f"ignoring payment {external_payment_id}"
                )
            else:
                logger.info(f"Invoice {invoice.id} already paid; nothing to do")
            return invoice, False

        if invoice.status == InvoiceStatus.FAILED:
            raise InvalidInvoiceTransitionError(invoice.id, invoice.status.value, InvoiceStatus.PAID.value)

        invoice.status = InvoiceStatus.PAID
        invoice.external_payment_id = external_payment_id
        invoice.provider = Provider(provider).value
        invoice.paid_at = datetime.now(timezone.utc)
        self._audit(
            orm,
            invoice,
            BillingAuditAction.INVOICE_PAID,
            external_payment_id=external_payment_id,
            provider=invoice.provider,
        )
        orm.flush()

        logger.info(f"Invoice {invoice.id} marked PAID (payment {external_payment_id})")
        return invoice, True

    def mark_invoice_failed(
        self,
        orm: Session,
        invoice_id,
        reason: str,
        engagement_id=None,
    ) -> tuple[MarketplaceInvoice, bool]:
        """Move a PENDING invoice to FAILED. PAID and FAILED invoices are left as they are."""
        invoice = self._lock_invoice(orm, invoice_id, engagement_id)

        if invoice.status != InvoiceStatus.PENDING:
            logger.info(f"Invoice {invoice.id} is {invoice.status.value}; ignoring failure ({reason})")
            return invoice, False

        invoice.status = InvoiceStatus.FAILED
        invoice.failure_reason = reason
        self._audit(orm, invoice, BillingAuditAction.INVOICE_FAILED, reason=reason)
        orm.flush()

        logger.info(f"Invoice {invoice.id} marked FAILED: {reason}")
        return invoice, True


invoice_service = InvoiceService()
