"""
Typed views of the provider webhook payloads we consume.

Only the fields reconciliation reads are declared; everything else a provider
sends is kept as an extra. A payload whose declared fields have the wrong shape
fails validation and is answered with a 400 by the webhook pipeline.
"""

from decimal import Decimal
from typing import Any, Optional, Type, TypeVar

import pydantic

from rebound_relay.api.exceptions import InvalidWebhookPayloadError


PayloadT = TypeVar("PayloadT", bound="ProviderPayload")


def expandable_id(v):
    """Stripe sends related objects as an id unless the field was expanded."""
    if isinstance(v, dict):
        return v.get("id")
    return v


def none_as_empty(v):
    return {} if v is None else v


class ProviderPayload(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="allow")


def parse_payload(model: Type[PayloadT], data: Any, provider: str) -> PayloadT:
    """Validate `data` (a mapping, or raw JSON bytes) against `model`."""
    try:
        if isinstance(data, (bytes, str)):
            return model.model_validate_json(data)
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'body'}: {error['msg']}" for error in e.errors()
        )
        raise InvalidWebhookPayloadError(f"Invalid {provider} payload: {errors}")


class MetadataPayload(ProviderPayload):
    metadata: dict[str, Any] = pydantic.Field(default_factory=dict)

    @pydantic.field_validator("metadata", mode="before")
    @classmethod
    def validate_metadata(cls, v):
        return none_as_empty(v)


# Stripe


class StripeCustomerDetails(ProviderPayload):
    email: Optional[str] = None
    name: Optional[str] = None


class StripePrice(ProviderPayload):
    id: Optional[str] = None


class StripeObject(MetadataPayload):
    """Fallback for object types we only log."""

    id: Optional[str] = None
    object: Optional[str] = None
    currency: Optional[str] = None
    status: Optional[str] = None


class StripeCheckoutSession(StripeObject):
    id: str
    mode: Optional[str] = None
    payment_status: Optional[str] = None
    payment_intent: Optional[str] = None
    customer: Optional[str] = None
    customer_email: Optional[str] = None
    customer_details: Optional[StripeCustomerDetails] = None
    client_reference_id: Optional[str] = None
    subscription: Optional[str] = None
    amount_total: Optional[int] = None

    @pydantic.field_validator("payment_intent", "customer", "subscription", mode="before")
    @classmethod
    def validate_expandable(cls, v):
        return expandable_id(v)


class StripeSubscriptionItem(ProviderPayload):
    price: Optional[StripePrice] = None
    current_period_start: Optional[int] = None


class StripeSubscriptionItems(ProviderPayload):
    data: list[StripeSubscriptionItem] = pydantic.Field(default_factory=list)


class StripeSubscription(StripeObject):
    id: str
    customer: Optional[str] = None
    current_period_start: Optional[int] = None
    items: Optional[StripeSubscriptionItems] = None

    @pydantic.field_validator("customer", mode="before")
    @classmethod
    def validate_customer(cls, v):
        return expandable_id(v)

    @property
    def first_item(self) -> Optional[StripeSubscriptionItem]:
        if self.items and self.items.data:
            return self.items.data[0]
        return None

    @property
    def period_start(self) -> Optional[int]:
        # newer API versions moved the billing period onto the items
        if self.current_period_start:
            return self.current_period_start
        return self.first_item.current_period_start if self.first_item else None


class StripePriceDetails(ProviderPayload):
    price: Optional[str] = None

    @pydantic.field_validator("price", mode="before")
    @classmethod
    def validate_price(cls, v):
        return expandable_id(v)


class StripeLinePricing(ProviderPayload):
    price_details: Optional[StripePriceDetails] = None


class StripeLineParent(ProviderPayload):
    subscription_item_details: Optional[dict[str, Any]] = None


class StripeInvoiceLine(ProviderPayload):
    subscription: Optional[str] = None
    price: Optional[StripePrice] = None
    pricing: Optional[StripeLinePricing] = None
    parent: Optional[StripeLineParent] = None

    @pydantic.field_validator("subscription", mode="before")
    @classmethod
    def validate_subscription(cls, v):
        return expandable_id(v)

    @property
    def is_subscription_line(self) -> bool:
        return bool(self.subscription or (self.parent and self.parent.subscription_item_details))

    @property
    def price_id(self) -> Optional[str]:
        if self.price and self.price.id:
            return self.price.id
        if self.pricing and self.pricing.price_details:
            return self.pricing.price_details.price
        return None


class StripeInvoiceLines(ProviderPayload):
    data: list[StripeInvoiceLine] = pydantic.Field(default_factory=list)


class StripeSubscriptionDetails(ProviderPayload):
    subscription: Optional[str] = None


class StripeInvoiceParent(ProviderPayload):
    subscription_details: Optional[StripeSubscriptionDetails] = None


class StripeInvoice(StripeObject):
    id: str
    customer: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[StripeInvoiceParent] = None
    lines: Optional[StripeInvoiceLines] = None
    amount_paid: Optional[int] = None

    @pydantic.field_validator("customer", "subscription", mode="before")
    @classmethod
    def validate_expandable(cls, v):
        return expandable_id(v)

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None

    def one_time_price_id(self) -> Optional[str]:
        for line in self.lines.data if self.lines else []:
            if not line.is_subscription_line and line.price_id:
                return line.price_id
        return None


class StripeCustomer(StripeObject):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


class StripeBillingDetails(ProviderPayload):
    email: Optional[str] = None


class StripeCharge(StripeObject):
    """Charges, payment intents and disputes."""

    id: str
    customer: Optional[str] = None
    payment_intent: Optional[str] = None
    billing_details: Optional[StripeBillingDetails] = None
    receipt_email: Optional[str] = None
    amount: Optional[int] = None

    @pydantic.field_validator("customer", "payment_intent", mode="before")
    @classmethod
    def validate_expandable(cls, v):
        return expandable_id(v)


STRIPE_OBJECT_MODELS: dict[str, Type[StripeObject]] = {
    "checkout.session": StripeCheckoutSession,
    "subscription": StripeSubscription,
    "invoice": StripeInvoice,
    "customer": StripeCustomer,
    "charge": StripeCharge,
    "payment_intent": StripeCharge,
    "dispute": StripeCharge,
}


class StripeEventData(ProviderPayload):
    object: dict[str, Any]


class StripeEvent(ProviderPayload):
    id: str = pydantic.Field(min_length=1)
    type: str = pydantic.Field(min_length=1)
    data: StripeEventData
    created: Optional[int] = None

    def data_object(self) -> StripeObject:
        kind = self.data.object.get("object")
        model = STRIPE_OBJECT_MODELS.get(kind, StripeObject) if isinstance(kind, str) else StripeObject
        return parse_payload(model, self.data.object, "stripe")


# DodoPayments


class DodoCustomer(ProviderPayload):
    customer_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class DodoCartItem(ProviderPayload):
    product_id: Optional[str] = None
    quantity: Optional[int] = None


class DodoEventData(MetadataPayload):
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    product_id: Optional[str] = None
    product_cart: list[DodoCartItem] = pydantic.Field(default_factory=list)
    # payment and subscription events nest the customer
    customer: Optional[DodoCustomer] = None
    # customer events carry it at the top level
    customer_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    total_amount: Optional[int] = None
    recurring_pre_tax_amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    previous_billing_date: Optional[str] = None

    @pydantic.field_validator("product_cart", mode="before")
    @classmethod
    def validate_product_cart(cls, v):
        return [] if v is None else v


class DodoEnvelope(ProviderPayload):
    business_id: Optional[str] = None
    type: str = pydantic.Field(min_length=1)
    timestamp: Optional[str] = None
    data: DodoEventData


# PayPal


class PayPalName(ProviderPayload):
    given_name: Optional[str] = None
    surname: Optional[str] = None

    @property
    def full_name(self) -> Optional[str]:
        return " ".join(part for part in (self.given_name, self.surname) if part) or None


class PayPalSubscriber(ProviderPayload):
    payer_id: Optional[str] = None
    email_address: Optional[str] = None
    name: Optional[PayPalName] = None


class PayPalAmount(ProviderPayload):
    # sales use total/currency, captures use value/currency_code
    total: Optional[Decimal] = None
    value: Optional[Decimal] = None
    currency: Optional[str] = None
    currency_code: Optional[str] = None

    @property
    def minor_units(self) -> Optional[int]:
        amount = self.total if self.total is not None else self.value
        return int(amount * 100) if amount is not None else None

    @property
    def currency_name(self) -> Optional[str]:
        currency = self.currency or self.currency_code
        return currency.lower() if currency else None


class PayPalResource(ProviderPayload):
    """Subscription, sale or capture resource."""

    id: Optional[str] = None
    status: Optional[str] = None
    state: Optional[str] = None
    plan_id: Optional[str] = None
    subscriber: Optional[PayPalSubscriber] = None
    billing_agreement_id: Optional[str] = None
    amount: Optional[PayPalAmount] = None
    custom_id: Optional[str] = None
    custom: Optional[str] = None


class PayPalNotification(ProviderPayload):
    id: str = pydantic.Field(min_length=1)
    event_type: str = pydantic.Field(min_length=1)
    resource_type: Optional[str] = None
    resource: PayPalResource
