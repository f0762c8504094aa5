import pytest

from rebound_relay.api.exceptions import InvalidWebhookPayloadError
from rebound_relay.billing.billing_constants import Provider
from rebound_relay.billing.events import CreditsPurchase, NormalizedPaymentEvent


def _event(metadata: dict) -> NormalizedPaymentEvent:
    return NormalizedPaymentEvent(
        provider=Provider.stripe,
        event_id="evt_1",
        event_type="checkout.session.completed",
        metadata=metadata,
    )


class TestCreditsPurchase:
    def test_not_a_credits_purchase(self):
        assert _event({"invoiceId": "inv_1"}).credits_purchase() is None

    def test_purchase_type_credits(self):
        purchase = _event(
            {"purchaseType": "credits", "creditType": "image_generation", "creditAmount": "25"}
        ).credits_purchase()

        assert purchase == CreditsPurchase(credit_type="image_generation", amount=25)

    def test_legacy_type_and_amount_keys(self):
        purchase = _event({"type": "credits_purchase", "creditType": "video_generation", "amount": 3}).credits_purchase()

        assert purchase == CreditsPurchase(credit_type="video_generation", amount=3)

    @pytest.mark.parametrize(
        "metadata",
        [
            {"purchaseType": "credits", "creditType": "audio_generation", "creditAmount": 10},
            {"purchaseType": "credits", "creditType": "image_generation", "creditAmount": 0},
            {"purchaseType": "credits", "creditType": "image_generation", "creditAmount": "-4"},
            {"purchaseType": "credits", "creditType": "image_generation"},
        ],
    )
    def test_invalid_metadata(self, metadata):
        with pytest.raises(InvalidWebhookPayloadError):
            _event(metadata).credits_purchase()


def test_invoice_and_engagement_ids_accept_both_spellings():
    assert _event({"invoiceId": "a", "engagementId": "b"}).invoice_id == "a"
    event = _event({"invoice_id": "c", "engagement_id": "d"})
    assert (event.invoice_id, event.engagement_id) == ("c", "d")


def test_numeric_org_hint_is_kept_as_text():
    event = NormalizedPaymentEvent(
        provider=Provider.dodo, event_id="msg_1", event_type="payment.succeeded", org_id_hint=42
    )

    assert event.org_id_hint == "42"
