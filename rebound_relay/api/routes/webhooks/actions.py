"""
State changes shared by every provider's handlers.

Each returns the acknowledgment message for the event. Errors propagate to the
webhook pipeline, which rolls the transaction back.
"""

import logging
from typing import Optional

from rebound_relay.api.exceptions import UnmappedProductError
from rebound_relay.billing.billing_constants import BillingAuditAction
from rebound_relay.billing.events import CreditsPurchase
from rebound_relay.billing.models import BillingAuditLog, EndedSubscription, OrgModel
from rebound_relay.billing.services import credit_ledger, notifications
from rebound_relay.billing.services.invoice_service import invoice_service
from rebound_relay.billing.services.plan_service import (
    downgrade_to_default_plan,
    get_plan_for_provider_product,
    update_plan,
)
from .dispatch import HandlerContext, HandlerResult

logger = logging.getLogger(__name__)

NO_ORGANIZATION = "No organization resolved for event"


def apply_invoice_payment(ctx: HandlerContext, external_payment_id: Optional[str]) -> HandlerResult:
    event = ctx.event
    invoice, transitioned = invoice_service.mark_invoice_paid(
        ctx.orm,
        event.invoice_id,
        external_payment_id,
        engagement_id=event.engagement_id,
        provider=event.provider,
    )
    if not transitioned:
        return f"Invoice {invoice.id} already paid"

    ctx.after_commit(
        notifications.notify_invoice_paid,
        str(invoice.id),
        str(invoice.engagement_id),
        invoice.amount,
        invoice.currency,
    )
    return f"Invoice {invoice.id} marked as paid"


def apply_invoice_failure(ctx: HandlerContext, reason: str) -> HandlerResult:
    event = ctx.event
    invoice, transitioned = invoice_service.mark_invoice_failed(
        ctx.orm,
        event.invoice_id,
        reason,
        engagement_id=event.engagement_id,
    )
    if not transitioned:
        return f"Invoice {invoice.id} is {invoice.status.value}; failure ignored"
    return f"Invoice {invoice.id} marked as failed"


def apply_credits_purchase(ctx: HandlerContext, purchase: CreditsPurchase, payment_id: str) -> HandlerResult:
    org = ctx.get_org()
    if org is None:
        return NO_ORGANIZATION

    event = ctx.event
    credit_ledger.add_credits(
        ctx.orm,
        org.id,
        purchase.credit_type,
        purchase.amount,
        payment_id=payment_id,
        metadata={
            "reason": "purchase",
            "provider": event.provider.value,
            "event_id": event.event_id,
            "amount_paid": event.amount,
            "currency": event.currency,
        },
    )
    ctx.orm.add(
        BillingAuditLog(
            org_id=org.id,
            action=BillingAuditAction.CREDITS_PURCHASED.value,
            details={
                "credit_type": purchase.credit_type,
                "amount": purchase.amount,
                "payment_id": payment_id,
                "provider": event.provider.value,
            },
        )
    )
    ctx.after_commit(
        notifications.notify_credits_purchased,
        str(org.id),
        purchase.credit_type,
        purchase.amount,
        payment_id,
    )
    return f"Added {purchase.amount} {purchase.credit_type} credits"


def apply_plan_payment(
    ctx: HandlerContext,
    product_id: Optional[str],
    payment_id: Optional[str],
    subscription_id: Optional[str] = None,
) -> HandlerResult:
    """Assign the plan mapped to `product_id`, allocating its credits against `payment_id`."""
    if subscription_id:
        ended = subscription_ended(ctx, subscription_id)
        if ended:
            return ended

    org = ctx.get_org()
    if org is None:
        return NO_ORGANIZATION

    event = ctx.event
    plan = get_plan_for_provider_product(ctx.orm, event.provider, product_id)
    if plan is None:
        raise UnmappedProductError(event.provider.value, product_id)

    if subscription_id:
        org.set_subscription_id(event.provider, subscription_id)

    previous_plan_id = org.plan_id
    allocated = update_plan(
        ctx.orm,
        org,
        plan,
        payment_id=payment_id,
        payment_metadata={"provider": event.provider.value, "event_id": event.event_id},
    )
    if previous_plan_id != plan.id:
        ctx.after_commit(notifications.notify_plan_changed, str(org.id), plan.codename)

    if allocated:
        return f"Plan {plan.codename} applied with credits {allocated}"
    return f"Plan {plan.codename} applied"


def get_subscription_org(ctx: HandlerContext) -> Optional[OrgModel]:
    """The org holding the event's subscription, falling back to customer resolution."""
    event = ctx.event
    if event.subscription_id:
        org = OrgModel.get_by_subscription_id(ctx.orm, event.provider, event.subscription_id)
        if org is not None:
            ctx.set_org(org)
            return org
    return ctx.get_org()


def subscription_ended(ctx: HandlerContext, subscription_id: Optional[str] = None) -> HandlerResult:
    """
    The acknowledgment for an activation of a subscription that already ended,
    or None when the subscription is still live.
    """
    event = ctx.event
    subscription_id = subscription_id or event.subscription_id
    if not subscription_id or not EndedSubscription.exists(ctx.orm, event.provider, subscription_id):
        return None

    logger.info(f"Ignoring {event.event_type} ({event.event_id}); subscription {subscription_id} already ended")
    return f"Subscription {subscription_id} already ended; plan unchanged"


def record_subscription_end(ctx: HandlerContext) -> None:
    event = ctx.event
    if event.subscription_id:
        EndedSubscription.record(ctx.orm, event.provider, event.subscription_id, event_id=event.event_id)


def apply_subscription_end(ctx: HandlerContext) -> HandlerResult:
    record_subscription_end(ctx)
    org = get_subscription_org(ctx)
    if org is None:
        return NO_ORGANIZATION

    event = ctx.event
    provider_attr = OrgModel.subscription_id_attr(event.provider)
    current_subscription = getattr(org, provider_attr)
    if current_subscription and event.subscription_id and current_subscription != event.subscription_id:
        # the org has since moved to a newer subscription
        logger.info(
            f"Ignoring end of subscription {event.subscription_id} for org {org.id}; "
            f"active subscription is {current_subscription}"
        )
        return f"Subscription {event.subscription_id} is not active for organization"

    org.set_subscription_id(event.provider, None)
    plan = downgrade_to_default_plan(ctx.orm, org, reason=f"{event.provider.value}:{event.event_type}")
    if plan is not None:
        ctx.after_commit(notifications.notify_plan_changed, str(org.id), plan.codename)
    return "Organization downgraded to default plan"
