"""
Post-payment notifications.

These run as FastAPI background tasks after the webhook transaction commits.
Delivery is best-effort: errors are logged and never raised.
"""

import logging
import os
from typing import Any

import requests

from rebound_relay.common.environment import PROVIDER_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)

# optional endpoint (mailer or queue bridge) that receives billing notifications as JSON
NOTIFICATION_WEBHOOK_URL: str = os.getenv("NOTIFICATION_WEBHOOK_URL", "")


def send_billing_notification(event: str, payload: dict[str, Any]) -> bool:
    """Deliver one notification. Returns True only when the endpoint accepted it."""
    if not NOTIFICATION_WEBHOOK_URL:
        logger.info(f"Billing notification {event} (no endpoint configured): {payload}")
        return False

    try:
        response = requests.post(
            NOTIFICATION_WEBHOOK_URL,
            json={"event": event, "payload": payload},
            timeout=PROVIDER_REQUEST_TIMEOUT,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"Billing notification {event} failed: {e}")
        return False

    logger.info(f"Billing notification {event} delivered")
    return True


def notify_invoice_paid(invoice_id: str, engagement_id: str, amount: int, currency: str) -> bool:
    return send_billing_notification(
        "invoice.paid",
        {"invoice_id": invoice_id, "engagement_id": engagement_id, "amount": amount, "currency": currency},
    )


def notify_credits_purchased(org_id: str, credit_type: str, amount: int, payment_id: str) -> bool:
    return send_billing_notification(
        "credits.purchased",
        {"org_id": org_id, "credit_type": credit_type, "amount": amount, "payment_id": payment_id},
    )


def notify_plan_changed(org_id: str, plan_codename: str) -> bool:
    return send_billing_notification("plan.changed", {"org_id": org_id, "plan": plan_codename})
