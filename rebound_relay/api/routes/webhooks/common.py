"""
Shared webhook pipeline: secret policy, event idempotency, tenant resolution,
dispatch, a single commit, and the acknowledgment contract providers rely on.

    200 {"received": true}               processed, skipped, duplicate or business rule failure
    400 {"received": false, "error": .}  unparseable payload
    401 {"received": false, "error": .}  missing or invalid signature
    500 {"received": true, "error": .}   store or unexpected failure; the provider redelivers
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, BackgroundTasks
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rebound_relay.api.exceptions import (
    BillingError,
    DuplicatePaymentError,
    InvalidWebhookPayloadError,
    ProviderAPIError,
    WebhookConfigurationError,
    WebhookSignatureError,
)
from rebound_relay.billing.billing_constants import Provider
from rebound_relay.billing.events import NormalizedPaymentEvent
from rebound_relay.billing.models import WebhookEvent
from rebound_relay.common.environment import ENVIRONMENT, IS_PRODUCTION
from .dispatch import HandlerContext, WebhookDispatcher

logger = logging.getLogger(__name__)

UNEXPECTED_ERROR = "Unexpected error processing webhook"


def log_webhook_metric(provider: Provider, event_type: str, status: str, metadata: Dict[str, Any] = None):
    """Log structured metrics for webhook processing for anomaly detection"""
    log_data = {
        "metric_type": "WEBHOOK_METRIC",
        "webhook_provider": Provider(provider).value,
        "event_type": event_type,
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(metadata or {}),
    }
    logger.info(f"WEBHOOK_METRIC: {log_data}")


def webhook_response(status_code: int = 200, received: bool = True, **content) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"received": received, **content})


def require_signature(provider: Provider, secret: Optional[str]) -> bool:
    """
    Whether the event must be signature-checked.

    With no secret configured, production refuses the event and every other
    environment processes it unsigned.
    """
    if secret:
        return True

    if IS_PRODUCTION:
        logger.error(f"✗ CRITICAL: {Provider(provider).value} webhook secret is not configured")
        raise WebhookConfigurationError(Provider(provider).value)

    logger.warning(f"{Provider(provider).value} webhook secret not configured; accepting unsigned event ({ENVIRONMENT})")
    return False


def is_event_processed(orm: Session, provider: Provider, event_id: str) -> bool:
    """Check if we've already processed this webhook event."""
    return (
        orm.query(WebhookEvent)
        .filter(WebhookEvent.provider == Provider(provider).value, WebhookEvent.event_id == event_id)
        .count()
        > 0
    )


def mark_event_processed(orm: Session, event: NormalizedPaymentEvent) -> bool:
    """
    Record the event inside the current transaction.

    Returns False when a concurrent delivery recorded it first; the session must
    then be rolled back.
    """
    orm.add(
        WebhookEvent(
            provider=event.provider.value,
            event_id=event.event_id,
            event_type=event.event_type,
        )
    )
    try:
        orm.flush()
    except IntegrityError:
        return False
    return True


def register_method_not_allowed(router: APIRouter, path: str) -> None:
    """Answer every non-POST method on a webhook path with a JSON 405."""

    async def method_not_allowed():
        return webhook_response(405, received=False, error="Method not allowed")

    router.add_api_route(
        path,
        method_not_allowed,
        methods=["GET", "PUT", "PATCH", "DELETE"],
        include_in_schema=False,
    )


async def receive_webhook(
    orm: Session,
    dispatcher: WebhookDispatcher,
    background_tasks: BackgroundTasks,
    parse: Callable[[], NormalizedPaymentEvent],
) -> JSONResponse:
    """Verify and parse the request with `parse`, then run the event through the pipeline."""
    provider = dispatcher.provider

    try:
        event = parse()
    except WebhookConfigurationError as e:
        log_webhook_metric(provider, "unknown", "config_error", {"error": str(e)})
        return webhook_response(500, received=False, error="Webhook secret not configured")
    except WebhookSignatureError as e:
        logger.error(f"Invalid webhook signature: {e}")
        log_webhook_metric(provider, "unknown", "invalid_signature", {"error": e.message})
        return webhook_response(401, received=False, error="Invalid signature")
    except InvalidWebhookPayloadError as e:
        logger.error(f"Invalid webhook payload: {e}")
        log_webhook_metric(provider, "unknown", "invalid_payload", {"error": e.message})
        return webhook_response(400, received=False, error="Invalid payload")
    except ProviderAPIError as e:
        logger.error(f"Could not verify webhook: {e}")
        log_webhook_metric(provider, "unknown", "verification_unavailable", {"error": e.message})
        return webhook_response(500, received=False, error="Verification unavailable")

    return await process_webhook_event(orm, dispatcher, event, background_tasks)


async def process_webhook_event(
    orm: Session,
    dispatcher: WebhookDispatcher,
    event: NormalizedPaymentEvent,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """
    Apply one verified event in a single transaction.

    Business rule failures are rolled back and acknowledged so the provider stops
    retrying; anything else is rolled back and answered with a 500.
    """
    provider = dispatcher.provider
    log_webhook_metric(provider, event.event_type, "received", event.log_context())

    if is_event_processed(orm, provider, event.event_id):
        logger.info(f"Event {event.event_id} already processed, skipping")
        log_webhook_metric(provider, event.event_type, "duplicate", {"event_id": event.event_id})
        return webhook_response(duplicate=True)

    handler = dispatcher.get(event.event_type)
    if handler is None:
        logger.debug(f"Received unhandled {provider.value} event type: {event.event_type}")
        log_webhook_metric(provider, event.event_type, "unhandled", {"event_id": event.event_id})
        return webhook_response()

    ctx = HandlerContext(orm=orm, event=event)
    try:
        message = await handler(ctx)

        if not mark_event_processed(orm, event):
            orm.rollback()
            log_webhook_metric(provider, event.event_type, "duplicate", {"event_id": event.event_id})
            return webhook_response(duplicate=True)

        orm.commit()

    except DuplicatePaymentError as e:
        orm.rollback()
        logger.info(f"Payment {e.payment_id} already applied; acknowledging {event.event_id}")
        log_webhook_metric(provider, event.event_type, "duplicate_payment", {"payment_id": e.payment_id})
        return webhook_response(duplicate=True)

    except BillingError as e:
        org_id = str(ctx.org.id) if ctx.org else None
        orm.rollback()
        logger.error(
            "BILLING_WEBHOOK_ERROR",
            extra={
                "webhook_provider": provider.value,
                "event_type": event.event_type,
                "event_id": event.event_id,
                "org_id": org_id,
                "error_type": type(e).__name__,
                "error_message": e.message,
                "requires_manual_intervention": True,
            },
        )
        log_webhook_metric(
            provider,
            event.event_type,
            "business_error",
            {"event_id": event.event_id, "error": e.message, "error_type": type(e).__name__},
        )
        return webhook_response(message=e.message)

    except SQLAlchemyError as e:
        orm.rollback()
        logger.error(f"Database error processing {provider.value} webhook {event.event_type}: {e}", exc_info=True)
        log_webhook_metric(
            provider,
            event.event_type,
            "database_error",
            {"event_id": event.event_id, "error_type": type(e).__name__},
        )
        return webhook_response(500, error=UNEXPECTED_ERROR)

    except Exception as e:
        orm.rollback()
        logger.error(f"Error processing {provider.value} webhook {event.event_type}: {e}", exc_info=True)
        log_webhook_metric(
            provider,
            event.event_type,
            "processing_error",
            {"event_id": event.event_id, "error": str(e), "error_type": type(e).__name__},
        )
        return webhook_response(500, error=UNEXPECTED_ERROR)

    for fn, args in ctx.post_commit:
        background_tasks.add_task(fn, *args)

    log_webhook_metric(provider, event.event_type, "processed", {"event_id": event.event_id})
    if message:
        return webhook_response(message=message)
    return webhook_response()
