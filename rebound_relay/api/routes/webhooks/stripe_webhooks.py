import logging
from typing import Any, Optional

import stripe
from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from sqlalchemy.orm import Session

from rebound_relay.api.environment import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from rebound_relay.api.exceptions import (
    InvalidWebhookPayloadError,
    ProviderAPIError,
    WebhookSignatureError,
)
from rebound_relay.billing.billing_constants import Provider
from rebound_relay.billing.events import CustomerInfo, NormalizedPaymentEvent
from rebound_relay.billing.payloads import (
    StripeCharge,
    StripeCheckoutSession,
    StripeCustomer,
    StripeCustomerDetails,
    StripeEvent,
    StripeInvoice,
    StripeSubscription,
    parse_payload,
)
from rebound_relay.common.environment import PROVIDER_REQUEST_TIMEOUT
from rebound_relay.common.orm import get_orm_session
from .actions import (
    NO_ORGANIZATION,
    apply_credits_purchase,
    apply_invoice_failure,
    apply_invoice_payment,
    apply_plan_payment,
    apply_subscription_end,
    get_subscription_org,
    record_subscription_end,
    subscription_ended,
)
from .common import receive_webhook, register_method_not_allowed, require_signature
from .dispatch import HandlerContext, HandlerResult, WebhookDispatcher

router = APIRouter()
logger = logging.getLogger(__name__)

dispatcher = WebhookDispatcher(Provider.stripe)

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")
ENDED_SUBSCRIPTION_STATUSES = ("canceled", "unpaid", "incomplete_expired")


def normalize_stripe_event(envelope: Any) -> NormalizedPaymentEvent:
    """Validate a Stripe event envelope and translate it into a `NormalizedPaymentEvent`."""
    stripe_event = parse_payload(StripeEvent, envelope, Provider.stripe.value)
    obj = stripe_event.data_object()

    metadata = obj.metadata
    event = NormalizedPaymentEvent(
        provider=Provider.stripe,
        event_id=stripe_event.id,
        event_type=stripe_event.type,
        metadata=metadata,
        data=obj,
        org_id_hint=metadata.get("organizationId") or metadata.get("org_id"),
        currency=obj.currency,
        status=obj.status,
    )

    if isinstance(obj, StripeCheckoutSession):
        details = obj.customer_details or StripeCustomerDetails()
        event.customer = CustomerInfo(
            external_id=obj.customer,
            email=details.email or obj.customer_email,
            name=details.name,
        )
        event.org_id_hint = event.org_id_hint or obj.client_reference_id
        event.payment_id = obj.id
        event.subscription_id = obj.subscription
        event.amount = obj.amount_total
        event.status = obj.payment_status

    elif isinstance(obj, StripeSubscription):
        first_item = obj.first_item
        event.customer = CustomerInfo(external_id=obj.customer)
        event.subscription_id = obj.id
        event.product_id = first_item.price.id if first_item and first_item.price else None
        event.period_key = f"{obj.id}:{obj.period_start}" if obj.period_start else None

    elif isinstance(obj, StripeInvoice):
        event.customer = CustomerInfo(
            external_id=obj.customer,
            email=obj.customer_email,
            name=obj.customer_name,
        )
        event.payment_id = obj.id
        event.subscription_id = obj.subscription_id
        event.product_id = obj.one_time_price_id()
        event.amount = obj.amount_paid

    elif isinstance(obj, StripeCustomer):
        event.customer = CustomerInfo(external_id=obj.id, email=obj.email, name=obj.name)

    elif isinstance(obj, StripeCharge):
        event.customer = CustomerInfo(
            external_id=obj.customer,
            email=(obj.billing_details.email if obj.billing_details else None) or obj.receipt_email,
        )
        event.payment_id = obj.payment_intent or obj.id
        event.amount = obj.amount

    return event


def parse_stripe_event(payload: bytes, signature: Optional[str]) -> NormalizedPaymentEvent:
    if not require_signature(Provider.stripe, STRIPE_WEBHOOK_SECRET):
        return normalize_stripe_event(payload)

    if not signature:
        raise WebhookSignatureError(Provider.stripe.value, "Missing Stripe-Signature header")
    try:
        event = stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(Provider.stripe.value, str(e))
    except ValueError as e:
        raise InvalidWebhookPayloadError(f"Invalid payload: {e}")

    return normalize_stripe_event(event.to_dict())


def _configure_stripe() -> None:
    stripe.api_key = STRIPE_SECRET_KEY
    stripe.default_http_client = stripe.RequestsClient(timeout=PROVIDER_REQUEST_TIMEOUT)


def fetch_customer(customer_id: str) -> Optional[CustomerInfo]:
    _configure_stripe()
    try:
        customer = stripe.Customer.retrieve(customer_id)
    except stripe.StripeError as e:
        raise ProviderAPIError(Provider.stripe.value, f"customer {customer_id}: {e}")

    if getattr(customer, "deleted", False):
        return None
    return CustomerInfo(
        external_id=customer_id,
        email=getattr(customer, "email", None),
        name=getattr(customer, "name", None),
    )


def fetch_checkout_price_id(session_id: str) -> Optional[str]:
    _configure_stripe()
    try:
        line_items = stripe.checkout.Session.list_line_items(session_id, limit=10)
    except stripe.StripeError as e:
        raise ProviderAPIError(Provider.stripe.value, f"line items for {session_id}: {e}")

    for item in line_items.data:
        price = getattr(item, "price", None)
        if price is not None and getattr(price, "id", None):
            return price.id
    return None


def _get_subscription_org(ctx: HandlerContext):
    """Subscription payloads carry only a customer id; fetch the customer's email when it is unknown."""
    org = get_subscription_org(ctx)
    customer = ctx.event.customer
    if org is not None or not customer.external_id or customer.email:
        return org

    try:
        details = fetch_customer(customer.external_id)
    except ProviderAPIError as e:
        logger.warning(f"Skipping tenant lookup for {ctx.event.event_id}: {e}")
        return None

    if details is None or not details.email:
        return None
    ctx.event.customer = details
    return ctx.get_org(refresh=True)


@dispatcher.on("checkout.session.completed", "checkout.session.async_payment_succeeded")
async def handle_checkout_completed(ctx: HandlerContext) -> HandlerResult:
    """Marketplace invoice payment, one-off credits purchase, or one-time plan purchase."""
    event = ctx.event
    session = event.data
    if not isinstance(session, StripeCheckoutSession):
        raise InvalidWebhookPayloadError(f"{event.event_type} does not carry a checkout session")

    if event.status != "paid":
        # delayed payment methods complete later with async_payment_succeeded
        return f"Checkout payment status is {event.status}"

    if session.mode == "subscription":
        ended = subscription_ended(ctx)
        if ended:
            return ended
        org = ctx.get_org()
        if org is not None and event.subscription_id:
            org.set_subscription_id(Provider.stripe, event.subscription_id)
        return "Subscription checkout; plan is applied by subscription events"

    if event.invoice_id:
        return apply_invoice_payment(ctx, session.payment_intent or session.id)

    purchase = event.credits_purchase()
    if purchase is not None:
        return apply_credits_purchase(ctx, purchase, payment_id=session.id)

    if ctx.get_org() is None:
        return NO_ORGANIZATION

    try:
        price_id = fetch_checkout_price_id(session.id)
    except ProviderAPIError as e:
        logger.error(
            "BILLING_WEBHOOK_ERROR",
            extra={
                "event_type": event.event_type,
                "event_id": event.event_id,
                "session_id": session.id,
                "error_message": e.message,
                "requires_manual_intervention": True,
            },
        )
        return "Could not load checkout line items"

    return apply_plan_payment(ctx, price_id, payment_id=session.id)


@dispatcher.on("checkout.session.async_payment_failed", "checkout.session.expired")
async def handle_checkout_failed(ctx: HandlerContext) -> HandlerResult:
    if not ctx.event.invoice_id:
        return None
    reason = "payment_failed" if ctx.event.event_type.endswith("payment_failed") else "checkout_expired"
    return apply_invoice_failure(ctx, reason)


def _end_subscription(ctx: HandlerContext) -> HandlerResult:
    # recorded before tenant lookup so a late activation is refused even for unknown customers
    record_subscription_end(ctx)
    if _get_subscription_org(ctx) is None:
        return NO_ORGANIZATION
    return apply_subscription_end(ctx)


@dispatcher.on("customer.subscription.created", "customer.subscription.updated")
async def handle_subscription_changed(ctx: HandlerContext) -> HandlerResult:
    event = ctx.event
    if event.status in ENDED_SUBSCRIPTION_STATUSES:
        return _end_subscription(ctx)

    if event.status not in ACTIVE_SUBSCRIPTION_STATUSES:
        logger.info(f"Subscription {event.subscription_id} is {event.status}; plan unchanged")
        return f"Subscription status {event.status}; plan unchanged"

    ended = subscription_ended(ctx)
    if ended:
        return ended

    if _get_subscription_org(ctx) is None:
        return NO_ORGANIZATION
    return apply_plan_payment(ctx, event.product_id, event.period_key, subscription_id=event.subscription_id)


@dispatcher.on("customer.subscription.deleted")
async def handle_subscription_deleted(ctx: HandlerContext) -> HandlerResult:
    return _end_subscription(ctx)


@dispatcher.on("invoice.paid")
async def handle_invoice_paid(ctx: HandlerContext) -> HandlerResult:
    """One-time plan invoices. Subscription invoices are covered by subscription events."""
    event = ctx.event
    if not event.product_id:
        return "No one-time line items on invoice"
    return apply_plan_payment(ctx, event.product_id, payment_id=event.payment_id)


@dispatcher.on("customer.created")
async def handle_customer_created(ctx: HandlerContext) -> HandlerResult:
    org = ctx.get_org()
    if org is None:
        return NO_ORGANIZATION
    return f"Customer linked to organization {org.id}"


dispatcher.log_only(
    "invoice.payment_failed",
    "charge.refunded",
    "charge.dispute.created",
    "charge.dispute.updated",
    "charge.dispute.closed",
)


@router.post("/webhooks/stripe", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: Optional[str] = Header(None),
    orm: Session = Depends(get_orm_session),
):
    """
    Handle incoming Stripe webhooks.
    Find our webhooks here:
    https://dashboard.stripe.com/test/webhooks
    https://dashboard.stripe.com/webhooks
    """
    payload = await request.body()
    return await receive_webhook(
        orm,
        dispatcher,
        background_tasks,
        lambda: parse_stripe_event(payload, stripe_signature),
    )


register_method_not_allowed(router, "/webhooks/stripe")
