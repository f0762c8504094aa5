"""Custom exceptions for billing reconciliation"""

from typing import Optional


class BillingError(Exception):
    """
    A business rule prevented the requested billing change.

    Webhook handlers acknowledge these with a 200 so the provider stops
    redelivering; views translate them to a 4xx using `status_code`.
    """

    status_code: int = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class DuplicatePaymentError(BillingError):
    """A ledger entry already exists for this payment id; the change was applied before."""

    status_code = 409

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Transaction with paymentId {payment_id} already exists")


class ConcurrentPaymentError(DuplicatePaymentError):
    """
    A concurrent transaction committed the same payment id first.

    The failed insert leaves the session unusable until it is rolled back.
    """


class InsufficientCreditsError(BillingError):
    status_code = 402

    def __init__(self, credit_type: str, available: int, required: int):
        self.credit_type = credit_type
        self.available = available
        self.required = required
        super().__init__(f"Insufficient {credit_type} credits. Available: {available}, Required: {required}")


class InvalidCreditAmountError(BillingError):
    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"Credit amount must be a positive integer, got {amount!r}")


class InvalidCreditTypeError(BillingError):
    def __init__(self, credit_type: str):
        self.credit_type = credit_type
        super().__init__(f"Unknown credit type '{credit_type}'")


class OrganizationNotFoundError(BillingError):
    status_code = 404

    def __init__(self, org_id):
        self.org_id = org_id
        super().__init__(f"Organization {org_id} not found")


class EngagementNotFoundError(BillingError):
    status_code = 404

    def __init__(self, engagement_id):
        self.engagement_id = engagement_id
        super().__init__(f"Engagement {engagement_id} not found")


class InvoiceNotFoundError(BillingError):
    status_code = 404

    def __init__(self, invoice_id):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} not found")


class UnmappedProductError(BillingError):
    """No plan in the catalog references the provider's product or price id."""

    def __init__(self, provider: str, product_id: Optional[str]):
        self.provider = provider
        self.product_id = product_id
        super().__init__(f"No plan found for {provider} product {product_id}")


class InvalidInvoiceTransitionError(BillingError):
    status_code = 409

    def __init__(self, invoice_id, current_status: str, target_status: str):
        self.invoice_id = invoice_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(f"Invoice {invoice_id} cannot move from {current_status} to {target_status}")


class InvoiceMismatchError(BillingError):
    """The event names an invoice that belongs to a different engagement."""

    status_code = 409

    def __init__(self, invoice_id, engagement_id):
        self.invoice_id = invoice_id
        self.engagement_id = engagement_id
        super().__init__(f"Invoice {invoice_id} does not belong to engagement {engagement_id}")


class OutstandingInvoiceError(BillingError):
    status_code = 409

    def __init__(self, engagement_id, invoice_id):
        self.engagement_id = engagement_id
        self.invoice_id = invoice_id
        super().__init__(f"Engagement {engagement_id} already has pending invoice {invoice_id}")


class CheckoutCreationError(BillingError):
    status_code = 502

    def __init__(self, invoice_id, message: str):
        self.invoice_id = invoice_id
        super().__init__(f"Could not create checkout for invoice {invoice_id}: {message}")


class InvalidWebhookPayloadError(BillingError):
    """The envelope parsed but is missing fields the event type requires."""


class WebhookSignatureError(Exception):
    """Signature headers are missing or do not verify against the configured secret."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"{provider} signature verification failed: {message}")


class WebhookConfigurationError(Exception):
    """A webhook arrived in production but no signing secret is configured."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"{provider} webhook secret not configured")


class ProviderAPIError(Exception):
    """A supplementary call to a provider API failed or timed out."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"{provider} API error: {message}")
