import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session
from standardwebhooks import Webhook, WebhookVerificationError

from rebound_relay.api.environment import DODO_PAYMENTS_WEBHOOK_SECRET
from rebound_relay.api.exceptions import WebhookSignatureError
from rebound_relay.billing.billing_constants import Provider
from rebound_relay.billing.events import CustomerInfo, NormalizedPaymentEvent
from rebound_relay.billing.payloads import DodoCustomer, DodoEnvelope, parse_payload
from rebound_relay.common.orm import get_orm_session
from .actions import (
    NO_ORGANIZATION,
    apply_credits_purchase,
    apply_invoice_failure,
    apply_invoice_payment,
    apply_plan_payment,
    apply_subscription_end,
    get_subscription_org,
    subscription_ended,
)
from .common import receive_webhook, register_method_not_allowed, require_signature
from .dispatch import HandlerContext, HandlerResult, WebhookDispatcher

router = APIRouter()
logger = logging.getLogger(__name__)

dispatcher = WebhookDispatcher(Provider.dodo)

SIGNATURE_HEADERS = ("webhook-id", "webhook-signature", "webhook-timestamp")


def normalize_dodo_event(envelope: Any, webhook_id: Optional[str]) -> NormalizedPaymentEvent:
    """
    Validate a DodoPayments envelope (`{type, timestamp, data}`) and translate it
    into a `NormalizedPaymentEvent`.

    The Standard Webhooks `webhook-id` header identifies the delivery; unsigned
    development traffic without one gets an id derived from the payload.
    """
    dodo_event = parse_payload(DodoEnvelope, envelope, Provider.dodo.value)
    data = dodo_event.data

    if dodo_event.type.startswith("customer."):
        customer = CustomerInfo(external_id=data.customer_id, email=data.email, name=data.name)
    else:
        nested = data.customer or DodoCustomer()
        customer = CustomerInfo(external_id=nested.customer_id, email=nested.email, name=nested.name)

    product_id = data.product_id or (data.product_cart[0].product_id if data.product_cart else None)
    period_key = None
    if data.subscription_id and data.previous_billing_date:
        period_key = f"{data.subscription_id}:{data.previous_billing_date}"

    event = NormalizedPaymentEvent(
        provider=Provider.dodo,
        event_id=webhook_id or "",
        event_type=dodo_event.type,
        customer=customer,
        org_id_hint=data.metadata.get("organizationId"),
        payment_id=data.payment_id,
        subscription_id=data.subscription_id,
        product_id=product_id,
        amount=data.total_amount or data.recurring_pre_tax_amount,
        currency=data.currency,
        status=data.status,
        period_key=period_key,
        metadata=data.metadata,
        data=data,
    )

    if not event.event_id:
        key = event.payment_id or event.subscription_id or customer.external_id
        event.event_id = f"{dodo_event.type}:{key}:{dodo_event.timestamp}"
    return event


def parse_dodo_event(payload: bytes, headers: dict) -> NormalizedPaymentEvent:
    if require_signature(Provider.dodo, DODO_PAYMENTS_WEBHOOK_SECRET):
        signature_headers = {name: headers.get(name) for name in SIGNATURE_HEADERS}
        if not all(signature_headers.values()):
            raise WebhookSignatureError(Provider.dodo.value, "Missing webhook signature headers")
        try:
            Webhook(DODO_PAYMENTS_WEBHOOK_SECRET).verify(payload, signature_headers)
        except WebhookVerificationError as e:
            raise WebhookSignatureError(Provider.dodo.value, str(e))

    return normalize_dodo_event(payload, headers.get("webhook-id"))


@dispatcher.on("payment.succeeded")
async def handle_payment_succeeded(ctx: HandlerContext) -> HandlerResult:
    event = ctx.event

    if event.invoice_id:
        return apply_invoice_payment(ctx, event.payment_id)

    purchase = event.credits_purchase()
    if purchase is not None:
        return apply_credits_purchase(ctx, purchase, payment_id=event.payment_id)

    if event.subscription_id:
        return "Subscription payment; plan is applied by subscription events"

    if not event.product_id:
        return "No product on payment"

    return apply_plan_payment(ctx, event.product_id, payment_id=event.payment_id)


@dispatcher.on("payment.failed")
async def handle_payment_failed(ctx: HandlerContext) -> HandlerResult:
    if not ctx.event.invoice_id:
        return None
    return apply_invoice_failure(ctx, "payment_failed")


@dispatcher.on("subscription.active", "subscription.created", "subscription.renewed", "subscription.plan_changed")
async def handle_subscription_active(ctx: HandlerContext) -> HandlerResult:
    event = ctx.event
    if event.status and event.status != "active":
        return f"Subscription status {event.status}; plan unchanged"

    ended = subscription_ended(ctx)
    if ended:
        return ended

    if get_subscription_org(ctx) is None:
        return NO_ORGANIZATION
    return apply_plan_payment(ctx, event.product_id, event.period_key, subscription_id=event.subscription_id)


@dispatcher.on("subscription.cancelled", "subscription.expired")
async def handle_subscription_ended(ctx: HandlerContext) -> HandlerResult:
    return apply_subscription_end(ctx)


@dispatcher.on("customer.created")
async def handle_customer_created(ctx: HandlerContext) -> HandlerResult:
    org = ctx.get_org()
    if org is None:
        return NO_ORGANIZATION
    return f"Customer linked to organization {org.id}"


dispatcher.log_only(
    "payment.processing",
    "payment.cancelled",
    "refund.succeeded",
    "refund.failed",
    "dispute.opened",
    "dispute.expired",
    "dispute.accepted",
    "dispute.cancelled",
    "dispute.challenged",
    "dispute.won",
    "dispute.lost",
    "subscription.on_hold",
    "subscription.paused",
    "subscription.failed",
    "license_key.created",
)


@router.post("/webhooks/dodo", include_in_schema=False)
async def dodo_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    orm: Session = Depends(get_orm_session),
):
    """Handle incoming DodoPayments webhooks (Standard Webhooks signing)."""
    payload = await request.body()
    headers = {name: request.headers.get(name) for name in SIGNATURE_HEADERS}
    return await receive_webhook(
        orm,
        dispatcher,
        background_tasks,
        lambda: parse_dodo_event(payload, headers),
    )


register_method_not_allowed(router, "/webhooks/dodo")
