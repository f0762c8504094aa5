"""
Tests for the Stripe webhook endpoint.

Events are posted unsigned (no secret is configured in the test environment)
unless a test patches `STRIPE_WEBHOOK_SECRET`.
"""

import hashlib
import hmac
import json
import time
import uuid
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from rebound_relay.api.routes.webhooks import stripe_webhooks
from rebound_relay.billing.billing_constants import InvoiceStatus
from rebound_relay.billing.events import CustomerInfo
from rebound_relay.billing.models import MarketplaceInvoice, OrgModel, WebhookEvent
from rebound_relay.billing.services import credit_ledger
from rebound_relay.billing.services.invoice_service import invoice_service
from tests._conftest.billing import STRIPE_PRO_MONTHLY_PRICE, STRIPE_PRO_ONETIME_PRICE

WEBHOOK_PATH = "/webhooks/stripe"


def stripe_event(event_type: str, obj: dict, event_id: str = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def post_event(client, event: dict, headers: dict = None):
    return client.post(
        WEBHOOK_PATH,
        content=json.dumps(event),
        headers={"content-type": "application/json", **(headers or {})},
    )


def sign(payload: str, secret: str) -> str:
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_session(**kwargs) -> dict:
    session = {
        "id": f"cs_test_{uuid.uuid4().hex[:12]}",
        "object": "checkout.session",
        "mode": "payment",
        "payment_status": "paid",
        "payment_intent": "pi_test_123",
        "customer": "cus_checkout",
        "customer_details": {"email": "buyer@college.edu", "name": "Buyer"},
        "amount_total": 10000,
        "currency": "usd",
        "metadata": {},
    }
    session.update(kwargs)
    return session


def subscription(status: str = "active", price_id: str = STRIPE_PRO_MONTHLY_PRICE, **kwargs) -> dict:
    obj = {
        "id": "sub_test_123",
        "object": "subscription",
        "customer": "cus_subscriber",
        "status": status,
        "current_period_start": 1700000000,
        "items": {"data": [{"id": "si_1", "price": {"id": price_id}}]},
        "metadata": {},
    }
    obj.update(kwargs)
    return obj


@pytest.fixture
def pending_invoice(orm_session, test_engagement):
    invoice = MarketplaceInvoice(
        engagement_id=test_engagement.id,
        amount=10000,
        commission_amount=1500,
        payout_amount=8500,
        currency="usd",
        status=InvoiceStatus.PENDING,
        provider="stripe",
    )
    orm_session.add(invoice)
    orm_session.commit()
    return invoice


@pytest.fixture
def subscriber_org(org_factory, free_plan):
    return org_factory(name="Subscriber Org", plan_id=free_plan.id, stripe_customer_id="cus_subscriber")


class TestCheckoutCompleted:
    def test_invoice_payment_marks_invoice_paid(self, app_client, orm_session, pending_invoice):
        event = stripe_event(
            "checkout.session.completed",
            checkout_session(
                metadata={"invoiceId": str(pending_invoice.id), "engagementId": str(pending_invoice.engagement_id)}
            ),
        )

        response = post_event(app_client, event)

        assert response.status_code == 200
        assert response.json()["received"] is True
        orm_session.expire_all()
        invoice = orm_session.get(MarketplaceInvoice, pending_invoice.id)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.external_payment_id == "pi_test_123"
        assert orm_session.get(WebhookEvent, ("stripe", event["id"])) is not None

    def test_invoice_payment_never_creates_org(self, app_client, orm_session, pending_invoice):
        org_count = orm_session.query(OrgModel).count()
        event = stripe_event(
            "checkout.session.completed",
            checkout_session(customer="cus_unknown", metadata={"invoiceId": str(pending_invoice.id)}),
        )

        post_event(app_client, event)

        assert orm_session.query(OrgModel).count() == org_count

    def test_duplicate_event_is_acknowledged_once(self, app_client, orm_session, pending_invoice):
        event = stripe_event("checkout.session.completed", checkout_session(metadata={"invoiceId": str(pending_invoice.id)}))

        first = post_event(app_client, event)
        second = post_event(app_client, event)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json() == {"received": True, "duplicate": True}

    def test_engagement_mismatch_is_acknowledged_without_change(self, app_client, orm_session, pending_invoice):
        event = stripe_event(
            "checkout.session.completed",
            checkout_session(metadata={"invoiceId": str(pending_invoice.id), "engagementId": str(uuid.uuid4())}),
        )

        response = post_event(app_client, event)

        assert response.status_code == 200
        assert "does not belong" in response.json()["message"]
        orm_session.expire_all()
        assert orm_session.get(MarketplaceInvoice, pending_invoice.id).status == InvoiceStatus.PENDING
        assert orm_session.get(WebhookEvent, ("stripe", event["id"])) is None

    def test_unpaid_session_changes_nothing(self, app_client, orm_session, pending_invoice):
        event = stripe_event(
            "checkout.session.completed",
            checkout_session(payment_status="unpaid", metadata={"invoiceId": str(pending_invoice.id)}),
        )

        post_event(app_client, event)

        orm_session.expire_all()
        assert orm_session.get(MarketplaceInvoice, pending_invoice.id).status == InvoiceStatus.PENDING

    def test_credits_purchase_applies_once(self, app_client, orm_session, test_org):
        session = checkout_session(
            id="cs_credits_1",
            metadata={
                "purchaseType": "credits",
                "creditType": "image_generation",
                "creditAmount": "250",
                "organizationId": str(test_org.id),
            },
        )

        post_event(app_client, stripe_event("checkout.session.completed", session))
        # redelivered under a new event id (e.g. async_payment_succeeded after completed)
        replay = post_event(app_client, stripe_event("checkout.session.async_payment_succeeded", session))

        assert replay.json() == {"received": True, "duplicate": True}
        assert credit_ledger.get_balance(orm_session, test_org.id, "image_generation") == 250

    def test_invalid_credits_metadata_is_acknowledged(self, app_client, orm_session, test_org):
        session = checkout_session(
            metadata={"purchaseType": "credits", "creditType": "audio", "organizationId": str(test_org.id)}
        )

        response = post_event(app_client, stripe_event("checkout.session.completed", session))

        assert response.status_code == 200
        assert "Invalid credits purchase" in response.json()["message"]

    def test_one_time_plan_purchase(self, app_client, orm_session, test_org, pro_plan):
        session = checkout_session(id="cs_plan_1", metadata={"organizationId": str(test_org.id)})

        with patch.object(stripe_webhooks, "fetch_checkout_price_id", return_value=STRIPE_PRO_ONETIME_PRICE):
            response = post_event(app_client, stripe_event("checkout.session.completed", session))

        assert response.status_code == 200
        orm_session.expire_all()
        assert orm_session.get(OrgModel, test_org.id).plan_id == pro_plan.id
        assert credit_ledger.get_organization_credits(orm_session, test_org.id) == {
            "image_generation": 100,
            "video_generation": 10,
        }

    def test_checkout_creates_org_for_new_customer(self, app_client, orm_session, free_plan, pro_plan):
        session = checkout_session(customer="cus_first_time", customer_details={"email": "new@uni.edu", "name": "New"})

        with patch.object(stripe_webhooks, "fetch_checkout_price_id", return_value=STRIPE_PRO_ONETIME_PRICE):
            post_event(app_client, stripe_event("checkout.session.completed", session))

        org = OrgModel.get_by_customer_id(orm_session, "stripe", "cus_first_time")
        assert org is not None
        assert org.plan_id == pro_plan.id


class TestCheckoutFailure:
    @pytest.mark.parametrize("event_type", ["checkout.session.expired", "checkout.session.async_payment_failed"])
    def test_marks_invoice_failed(self, app_client, orm_session, pending_invoice, event_type):
        event = stripe_event(event_type, checkout_session(metadata={"invoiceId": str(pending_invoice.id)}))

        post_event(app_client, event)

        orm_session.expire_all()
        assert orm_session.get(MarketplaceInvoice, pending_invoice.id).status == InvoiceStatus.FAILED

    def test_late_failure_leaves_paid_invoice(self, app_client, orm_session, pending_invoice):
        metadata = {"invoiceId": str(pending_invoice.id)}
        post_event(app_client, stripe_event("checkout.session.completed", checkout_session(metadata=metadata)))
        post_event(app_client, stripe_event("checkout.session.expired", checkout_session(metadata=metadata)))

        orm_session.expire_all()
        assert orm_session.get(MarketplaceInvoice, pending_invoice.id).status == InvoiceStatus.PAID


class TestSubscriptions:
    def test_active_subscription_assigns_plan_and_allocates(self, app_client, orm_session, subscriber_org, pro_plan):
        response = post_event(app_client, stripe_event("customer.subscription.updated", subscription()))

        assert response.status_code == 200
        orm_session.expire_all()
        org = orm_session.get(OrgModel, subscriber_org.id)
        assert org.plan_id == pro_plan.id
        assert org.stripe_subscription_id == "sub_test_123"
        assert credit_ledger.get_balance(orm_session, org.id, "image_generation") == 100

    def test_updates_within_a_period_allocate_once(self, app_client, orm_session, subscriber_org, pro_plan):
        post_event(app_client, stripe_event("customer.subscription.created", subscription()))
        post_event(app_client, stripe_event("customer.subscription.updated", subscription()))
        post_event(app_client, stripe_event("customer.subscription.updated", subscription(current_period_start=1702600000)))

        assert credit_ledger.get_balance(orm_session, subscriber_org.id, "image_generation") == 200

    def test_unmapped_price_is_acknowledged(self, app_client, orm_session, subscriber_org, free_plan):
        event = stripe_event("customer.subscription.updated", subscription(price_id="price_unknown"))

        response = post_event(app_client, event)

        assert response.status_code == 200
        assert "No plan found" in response.json()["message"]
        orm_session.expire_all()
        assert orm_session.get(OrgModel, subscriber_org.id).plan_id == free_plan.id

    def test_deleted_subscription_downgrades(self, app_client, orm_session, subscriber_org, pro_plan, free_plan):
        post_event(app_client, stripe_event("customer.subscription.created", subscription()))

        post_event(app_client, stripe_event("customer.subscription.deleted", subscription(status="canceled")))

        orm_session.expire_all()
        org = orm_session.get(OrgModel, subscriber_org.id)
        assert org.plan_id == free_plan.id
        assert org.stripe_subscription_id is None

    def test_ending_an_old_subscription_keeps_current_plan(self, app_client, orm_session, subscriber_org, pro_plan):
        post_event(app_client, stripe_event("customer.subscription.created", subscription(id="sub_new")))

        post_event(app_client, stripe_event("customer.subscription.deleted", subscription(id="sub_old", status="canceled")))

        orm_session.expire_all()
        assert orm_session.get(OrgModel, subscriber_org.id).plan_id == pro_plan.id

    def test_unknown_customer_is_fetched_from_stripe(self, app_client, orm_session, free_plan, pro_plan):
        customer = CustomerInfo(external_id="cus_remote", email="remote@uni.edu", name="Remote")

        with patch.object(stripe_webhooks, "fetch_customer", return_value=customer) as mock_fetch:
            post_event(app_client, stripe_event("customer.subscription.created", subscription(customer="cus_remote")))

        mock_fetch.assert_called_once_with("cus_remote")
        org = OrgModel.get_by_customer_id(orm_session, "stripe", "cus_remote")
        assert org.plan_id == pro_plan.id

    def test_activation_after_deletion_is_ignored(self, app_client, orm_session, subscriber_org, free_plan):
        post_event(app_client, stripe_event("customer.subscription.deleted", subscription(status="canceled")))

        response = post_event(app_client, stripe_event("customer.subscription.created", subscription()))

        assert response.status_code == 200
        assert "already ended" in response.json()["message"]
        orm_session.expire_all()
        org = orm_session.get(OrgModel, subscriber_org.id)
        assert org.plan_id == free_plan.id
        assert org.stripe_subscription_id is None
        assert credit_ledger.get_balance(orm_session, org.id, "image_generation") == 0

    def test_late_update_after_deletion_is_ignored(self, app_client, orm_session, subscriber_org, pro_plan, free_plan):
        post_event(app_client, stripe_event("customer.subscription.created", subscription()))
        post_event(app_client, stripe_event("customer.subscription.deleted", subscription(status="canceled")))

        response = post_event(
            app_client, stripe_event("customer.subscription.updated", subscription(current_period_start=1702600000))
        )

        assert "already ended" in response.json()["message"]
        orm_session.expire_all()
        assert orm_session.get(OrgModel, subscriber_org.id).plan_id == free_plan.id
        assert credit_ledger.get_balance(orm_session, subscriber_org.id, "image_generation") == 100

    def test_deletion_of_unknown_customer_still_blocks_activation(self, app_client, orm_session, free_plan, pro_plan):
        deleted = subscription(id="sub_orphan", customer="cus_nobody", status="canceled")
        with patch.object(stripe_webhooks, "fetch_customer", return_value=None):
            post_event(app_client, stripe_event("customer.subscription.deleted", deleted))

        with patch.object(stripe_webhooks, "fetch_customer") as mock_fetch:
            response = post_event(
                app_client, stripe_event("customer.subscription.created", subscription(id="sub_orphan", customer="cus_nobody"))
            )

        assert "already ended" in response.json()["message"]
        mock_fetch.assert_not_called()
        assert OrgModel.get_by_customer_id(orm_session, "stripe", "cus_nobody") is None

    def test_concurrent_allocation_is_acknowledged_as_duplicate(self, app_client, orm_session, subscriber_org, pro_plan):
        post_event(app_client, stripe_event("customer.subscription.created", subscription()))

        # a second delivery that passed the payment id check before the first one committed
        with patch.object(credit_ledger, "payment_id_exists", return_value=False):
            response = post_event(app_client, stripe_event("customer.subscription.updated", subscription()))

        assert response.status_code == 200
        assert response.json() == {"received": True, "duplicate": True}
        orm_session.expire_all()
        assert credit_ledger.get_balance(orm_session, subscriber_org.id, "image_generation") == 100
        assert credit_ledger.get_balance(orm_session, subscriber_org.id, "video_generation") == 10


class TestLoggedEvents:
    def test_refund_does_not_create_org(self, app_client, orm_session, db_engine):
        charge = {
            "id": "ch_1",
            "object": "charge",
            "customer": "cus_refund",
            "billing_details": {"email": "refund@uni.edu"},
            "amount": 500,
        }

        response = post_event(app_client, stripe_event("charge.refunded", charge))

        assert response.status_code == 200
        assert orm_session.query(OrgModel).count() == 0

    def test_unknown_event_type_is_acknowledged(self, app_client, db_engine):
        response = post_event(app_client, stripe_event("product.created", {"id": "prod_1", "object": "product"}))

        assert response.status_code == 200
        assert response.json() == {"received": True}


class TestTransport:
    def test_invalid_json_is_400(self, app_client, db_engine):
        response = app_client.post(WEBHOOK_PATH, content=b"{not json", headers={"content-type": "application/json"})

        assert response.status_code == 400
        assert response.json()["received"] is False

    def test_missing_fields_is_400(self, app_client, db_engine):
        response = app_client.post(WEBHOOK_PATH, content=json.dumps({"type": "charge.refunded"}))

        assert response.status_code == 400

    def test_get_is_405(self, app_client, db_engine):
        response = app_client.get(WEBHOOK_PATH)

        assert response.status_code == 405
        assert response.json() == {"received": False, "error": "Method not allowed"}

    def test_bad_signature_is_401(self, app_client, db_engine):
        event = stripe_event("charge.refunded", {"id": "ch_1", "object": "charge"})

        with patch.object(stripe_webhooks, "STRIPE_WEBHOOK_SECRET", "whsec_test"):
            missing = post_event(app_client, event)
            forged = post_event(app_client, event, headers={"stripe-signature": sign(json.dumps(event), "whsec_other")})

        assert missing.status_code == 401
        assert forged.status_code == 401

    def test_valid_signature_is_processed(self, app_client, orm_session, db_engine):
        event = stripe_event("charge.refunded", {"id": "ch_1", "object": "charge"})
        payload = json.dumps(event)

        with patch.object(stripe_webhooks, "STRIPE_WEBHOOK_SECRET", "whsec_test"):
            response = post_event(app_client, event, headers={"stripe-signature": sign(payload, "whsec_test")})

        assert response.status_code == 200
        assert orm_session.get(WebhookEvent, ("stripe", event["id"])) is not None

    def test_production_without_secret_is_500(self, app_client, db_engine):
        event = stripe_event("charge.refunded", {"id": "ch_1", "object": "charge"})

        with patch("rebound_relay.api.routes.webhooks.common.IS_PRODUCTION", True):
            response = post_event(app_client, event)

        assert response.status_code == 500
        assert response.json() == {"received": False, "error": "Webhook secret not configured"}

    def test_database_error_is_500_for_redelivery(self, app_client, orm_session, pending_invoice):
        event = stripe_event("checkout.session.completed", checkout_session(metadata={"invoiceId": str(pending_invoice.id)}))

        with patch.object(
            invoice_service, "mark_invoice_paid", side_effect=OperationalError("UPDATE invoices", {}, Exception("down"))
        ):
            response = post_event(app_client, event)

        assert response.status_code == 500
        assert response.json() == {"received": True, "error": "Unexpected error processing webhook"}
        assert orm_session.get(WebhookEvent, ("stripe", event["id"])) is None

        # the provider's redelivery succeeds
        assert post_event(app_client, event).status_code == 200
        orm_session.expire_all()
        assert orm_session.get(MarketplaceInvoice, pending_invoice.id).status == InvoiceStatus.PAID

    @pytest.mark.parametrize(
        "event",
        [
            {"id": "evt_bad_type", "type": 123, "data": {"object": {}}},
            {"id": "evt_bad_data", "type": "charge.refunded", "data": []},
            {"id": "evt_no_object", "type": "charge.refunded", "data": {}},
            stripe_event("checkout.session.completed", checkout_session(customer_details="Bob")),
            stripe_event("checkout.session.completed", checkout_session(amount_total="lots")),
            stripe_event("customer.subscription.updated", subscription(items={"data": {"price": "x"}})),
            stripe_event("invoice.paid", {"object": "invoice", "lines": {"data": []}}),
        ],
    )
    def test_malformed_payload_is_400(self, app_client, orm_session, event):
        response = post_event(app_client, event)

        assert response.status_code == 400
        assert response.json() == {"received": False, "error": "Invalid payload"}
        assert orm_session.query(WebhookEvent).count() == 0

    def test_unhandled_exception_is_500_for_redelivery(self, app_client, db_engine):
        event = stripe_event("charge.refunded", {"id": "ch_1", "object": "charge"})

        with patch.object(stripe_webhooks, "parse_stripe_event", side_effect=RuntimeError("boom")):
            response = post_event(app_client, event)

        assert response.status_code == 500
        assert response.json() == {"received": True, "error": "Unexpected error processing webhook"}
        assert response.headers["cache-control"].startswith("no-store")
