import json
import logging
from typing import Any, Optional

import requests
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from rebound_relay.api.environment import (
    PAYPAL_API_URL,
    PAYPAL_CLIENT_ID,
    PAYPAL_CLIENT_SECRET,
    PAYPAL_WEBHOOK_ID,
)
from rebound_relay.api.exceptions import (
    InvalidWebhookPayloadError,
    ProviderAPIError,
    WebhookSignatureError,
)
from rebound_relay.billing.billing_constants import Provider
from rebound_relay.billing.events import CustomerInfo, NormalizedPaymentEvent
from rebound_relay.billing.models import OrgModel, PlanModel
from rebound_relay.billing.payloads import PayPalNotification, PayPalResource, PayPalSubscriber, parse_payload
from rebound_relay.billing.services.plan_service import allocate_plan_credits
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
    subscription_ended,
)
from .common import receive_webhook, register_method_not_allowed, require_signature
from .dispatch import HandlerContext, HandlerResult, WebhookDispatcher

router = APIRouter()
logger = logging.getLogger(__name__)

dispatcher = WebhookDispatcher(Provider.paypal)

TRANSMISSION_HEADERS = {
    "paypal-transmission-id": "transmission_id",
    "paypal-transmission-time": "transmission_time",
    "paypal-cert-url": "cert_url",
    "paypal-auth-algo": "auth_algo",
    "paypal-transmission-sig": "transmission_sig",
}


def _custom_metadata(custom: Optional[str]) -> dict:
    """
    Checkouts put either a bare organization id or a JSON object
    (`{"invoiceId": ..., "engagementId": ...}`) into `custom_id`.
    """
    if not custom:
        return {}
    try:
        value = json.loads(custom)
    except ValueError:
        value = None
    if isinstance(value, dict):
        return value
    return {"organizationId": custom}


def _subscriber(resource: PayPalResource) -> CustomerInfo:
    subscriber = resource.subscriber or PayPalSubscriber()
    return CustomerInfo(
        external_id=subscriber.payer_id,
        email=subscriber.email_address,
        name=subscriber.name.full_name if subscriber.name else None,
    )


def normalize_paypal_event(envelope: Any) -> NormalizedPaymentEvent:
    """Validate a PayPal notification (`{id, event_type, resource_type, resource}`) and translate it."""
    notification = parse_payload(PayPalNotification, envelope, Provider.paypal.value)
    event_type = notification.event_type
    resource = notification.resource

    event = NormalizedPaymentEvent(
        provider=Provider.paypal,
        event_id=notification.id,
        event_type=event_type,
        status=resource.status or resource.state,
        data=resource,
    )

    if event_type.startswith("BILLING.SUBSCRIPTION."):
        event.customer = _subscriber(resource)
        event.subscription_id = resource.id
        event.product_id = resource.plan_id
        event.metadata = _custom_metadata(resource.custom_id)

    elif event_type.startswith("PAYMENT.SALE.") or event_type.startswith("PAYMENT.CAPTURE."):
        event.payment_id = resource.id
        event.subscription_id = resource.billing_agreement_id
        if resource.amount is not None:
            event.amount = resource.amount.minor_units
            event.currency = resource.amount.currency_name
        event.metadata = _custom_metadata(resource.custom or resource.custom_id)

    else:
        event.payment_id = resource.id

    event.org_id_hint = event.metadata.get("organizationId")
    return event


def get_access_token() -> str:
    if not PAYPAL_CLIENT_ID or not PAYPAL_CLIENT_SECRET:
        raise ProviderAPIError(Provider.paypal.value, "PayPal client credentials are not configured")

    try:
        response = requests.post(
            f"{PAYPAL_API_URL}/v1/oauth2/token",
            auth=(PAYPAL_CLIENT_ID, PAYPAL_CLIENT_SECRET),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
            timeout=PROVIDER_REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        return response.json()["access_token"]
    except (requests.RequestException, KeyError, ValueError) as e:
        raise ProviderAPIError(Provider.paypal.value, f"access token: {e}")


def _paypal_request(method: str, path: str, **kwargs) -> dict:
    headers = {"Authorization": f"Bearer {get_access_token()}", "Content-Type": "application/json"}
    try:
        response = requests.request(
            method,
            f"{PAYPAL_API_URL}{path}",
            headers=headers,
            timeout=PROVIDER_REQUEST_TIMEOUT,
            **kwargs,
        )
        response.raise_for_status()
        return response.json()
    except (requests.RequestException, ValueError) as e:
        raise ProviderAPIError(Provider.paypal.value, f"{method} {path}: {e}")


def verify_webhook_signature(headers: dict, envelope: dict) -> None:
    """Ask PayPal to verify the transmission; raises `WebhookSignatureError` unless it reports SUCCESS."""
    transmission = {field: headers.get(header) for header, field in TRANSMISSION_HEADERS.items()}
    if not all(transmission.values()):
        raise WebhookSignatureError(Provider.paypal.value, "Missing PayPal transmission headers")

    result = _paypal_request(
        "POST",
        "/v1/notifications/verify-webhook-signature",
        json={**transmission, "webhook_id": PAYPAL_WEBHOOK_ID, "webhook_event": envelope},
    )
    status = result.get("verification_status")
    if status != "SUCCESS":
        raise WebhookSignatureError(Provider.paypal.value, f"verification status {status}")


def fetch_subscription(subscription_id: str) -> PayPalResource:
    subscription = _paypal_request("GET", f"/v1/billing/subscriptions/{subscription_id}")
    try:
        return parse_payload(PayPalResource, subscription, Provider.paypal.value)
    except InvalidWebhookPayloadError as e:
        raise ProviderAPIError(Provider.paypal.value, f"subscription {subscription_id}: {e.message}")


def parse_paypal_event(payload: bytes, headers: dict) -> NormalizedPaymentEvent:
    # PayPal verifies the parsed event rather than the raw bytes
    try:
        envelope = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidWebhookPayloadError(f"Invalid payload: {e}")
    if not isinstance(envelope, dict):
        raise InvalidWebhookPayloadError("PayPal payload is not a JSON object")

    if require_signature(Provider.paypal, PAYPAL_WEBHOOK_ID):
        verify_webhook_signature(headers, envelope)

    return normalize_paypal_event(envelope)


def _load_subscription(ctx: HandlerContext) -> bool:
    """Fill in plan and subscriber from the PayPal API; sale events carry neither."""
    event = ctx.event
    try:
        subscription = fetch_subscription(event.subscription_id)
    except ProviderAPIError as e:
        logger.warning(f"Skipping subscription lookup for {event.event_id}: {e}")
        return False

    event.product_id = subscription.plan_id
    event.customer = _subscriber(subscription)
    metadata = _custom_metadata(subscription.custom_id)
    event.org_id_hint = event.org_id_hint or metadata.get("organizationId")
    return True


@dispatcher.on("BILLING.SUBSCRIPTION.CREATED", "BILLING.SUBSCRIPTION.ACTIVATED", "BILLING.SUBSCRIPTION.UPDATED")
async def handle_subscription_changed(ctx: HandlerContext) -> HandlerResult:
    """Assign the subscribed plan. Credits are allocated per sale, not here."""
    event = ctx.event
    ended = subscription_ended(ctx)
    if ended:
        return ended

    org = get_subscription_org(ctx)
    if org is None:
        return NO_ORGANIZATION

    if event.status and event.status != "ACTIVE":
        # APPROVAL_PENDING and friends: remember the subscription so the first sale finds the org
        org.set_subscription_id(Provider.paypal, event.subscription_id)
        return f"Subscription status {event.status}; plan unchanged"

    return apply_plan_payment(ctx, event.product_id, payment_id=None, subscription_id=event.subscription_id)


@dispatcher.on("PAYMENT.SALE.COMPLETED")
async def handle_sale_completed(ctx: HandlerContext) -> HandlerResult:
    """One billing cycle paid. The sale id keys the period's allocation."""
    event = ctx.event

    if event.invoice_id:
        return apply_invoice_payment(ctx, event.payment_id)

    purchase = event.credits_purchase()
    if purchase is not None:
        return apply_credits_purchase(ctx, purchase, payment_id=event.payment_id)

    if not event.subscription_id:
        return "Sale is not part of a subscription"

    ended = subscription_ended(ctx)
    if ended:
        return ended

    org = OrgModel.get_by_subscription_id(ctx.orm, Provider.paypal, event.subscription_id)
    if org is not None and org.plan_id is not None:
        ctx.set_org(org)
        plan = ctx.orm.get(PlanModel, org.plan_id)
        allocated = allocate_plan_credits(
            ctx.orm,
            org.id,
            plan,
            event.payment_id,
            {"provider": Provider.paypal.value, "event_id": event.event_id},
        )
        return f"Plan {plan.codename} credits allocated {allocated}"

    if not _load_subscription(ctx):
        return "Could not load PayPal subscription"

    if get_subscription_org(ctx) is None:
        return NO_ORGANIZATION
    return apply_plan_payment(ctx, event.product_id, event.payment_id, subscription_id=event.subscription_id)


@dispatcher.on("PAYMENT.CAPTURE.COMPLETED")
async def handle_capture_completed(ctx: HandlerContext) -> HandlerResult:
    """One-off orders: marketplace invoices or credit packs."""
    event = ctx.event
    if event.invoice_id:
        return apply_invoice_payment(ctx, event.payment_id)

    purchase = event.credits_purchase()
    if purchase is not None:
        return apply_credits_purchase(ctx, purchase, payment_id=event.payment_id)
    return None


@dispatcher.on("PAYMENT.CAPTURE.DENIED")
async def handle_capture_denied(ctx: HandlerContext) -> HandlerResult:
    if not ctx.event.invoice_id:
        return None
    return apply_invoice_failure(ctx, "payment_denied")


@dispatcher.on("BILLING.SUBSCRIPTION.CANCELLED", "BILLING.SUBSCRIPTION.EXPIRED")
async def handle_subscription_ended(ctx: HandlerContext) -> HandlerResult:
    return apply_subscription_end(ctx)


dispatcher.log_only(
    "BILLING.SUBSCRIPTION.SUSPENDED",
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED",
    "PAYMENT.SALE.REFUNDED",
    "PAYMENT.CAPTURE.REFUNDED",
    "CUSTOMER.DISPUTE.CREATED",
)


@router.post("/webhooks/paypal", include_in_schema=False)
async def paypal_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    orm: Session = Depends(get_orm_session),
):
    """Handle incoming PayPal webhook notifications."""
    payload = await request.body()
    headers = {name: request.headers.get(name) for name in TRANSMISSION_HEADERS}
    return await receive_webhook(
        orm,
        dispatcher,
        background_tasks,
        lambda: parse_paypal_event(payload, headers),
    )


register_method_not_allowed(router, "/webhooks/paypal")
