"""
Provider-neutral view of an inbound payment webhook.

Each provider module validates its own envelope (see `payloads`) and maps it
into a `NormalizedPaymentEvent`; nothing downstream of the parser reads the raw
payload shape.
"""

from typing import Any, Optional

import pydantic

from rebound_relay.api.exceptions import InvalidWebhookPayloadError
from .billing_constants import CreditType, Provider


class CustomerInfo(pydantic.BaseModel):
    external_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class CreditsPurchase(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(use_enum_values=True)

    credit_type: CreditType
    amount: pydantic.PositiveInt


class NormalizedPaymentEvent(pydantic.BaseModel):
    provider: Provider
    event_id: str
    event_type: str
    customer: CustomerInfo = pydantic.Field(default_factory=CustomerInfo)
    # explicit org id the checkout was created for
    org_id_hint: Optional[str] = None
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    product_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    # billing-period-scoped key for plan credit allocation
    period_key: Optional[str] = None
    metadata: dict[str, Any] = pydantic.Field(default_factory=dict)
    # the validated provider object the event describes
    data: Optional[Any] = None

    @pydantic.field_validator("org_id_hint", mode="before")
    @classmethod
    def validate_org_id_hint(cls, v):
        # metadata values are not always strings; unknown ids resolve to no org
        return v if v is None or isinstance(v, str) else str(v)

    @property
    def invoice_id(self) -> Optional[str]:
        return self.metadata.get("invoiceId") or self.metadata.get("invoice_id")

    @property
    def engagement_id(self) -> Optional[str]:
        return self.metadata.get("engagementId") or self.metadata.get("engagement_id")

    def credits_purchase(self) -> Optional[CreditsPurchase]:
        """
        The one-off credits purchase described by checkout metadata, if any.

        Checkouts tag these with `purchaseType=credits` (or `type=credits_purchase`)
        plus `creditType` and `creditAmount` (or `amount`).
        """
        metadata = self.metadata
        if metadata.get("purchaseType") != "credits" and metadata.get("type") != "credits_purchase":
            return None

        credit_type = metadata.get("creditType")
        amount = metadata.get("creditAmount", metadata.get("amount"))
        try:
            return CreditsPurchase(credit_type=credit_type, amount=amount)
        except pydantic.ValidationError:
            raise InvalidWebhookPayloadError(
                f"Invalid credits purchase metadata: creditType={credit_type!r} amount={amount!r}"
            )

    def log_context(self) -> dict:
        return {
            "event_id": self.event_id,
            "customer_id": self.customer.external_id,
            "payment_id": self.payment_id,
            "subscription_id": self.subscription_id,
            "product_id": self.product_id,
        }
