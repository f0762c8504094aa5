import pydantic
from datetime import datetime
from enum import Enum
from uuid import UUID
from typing import Literal, Optional

from .billing_constants import CreditType


def uuid_to_str(v) -> str:
    """Convert UUID to string for Pydantic models."""
    if isinstance(v, UUID):
        return str(v)
    return v


def enum_to_str(v) -> str:
    if isinstance(v, Enum):
        return v.value
    return v


class BaseSchema(pydantic.BaseModel):
    """
    Base schema type intended to be used for creating input schemas.
    """

    pass


class BaseResponse(BaseSchema):
    """
    Base response type intended to be directly populated by a sqlalchemy model.
    """

    model_config = pydantic.ConfigDict(
        from_attributes=True,
    )


class StatusResponse(BaseResponse):
    success: bool = True
    message: str | None = None


class CreditBalancesResponse(BaseResponse):
    org_id: str
    credits: dict[str, int]


class CreditTransactionResponse(BaseResponse):
    id: str
    credit_type: str
    transaction_type: str
    amount: int
    payment_id: str | None
    expiration_date: datetime | None
    metadata: dict = pydantic.Field(default_factory=dict, validation_alias="transaction_metadata")
    created_at: datetime | None

    @pydantic.field_validator("id", mode="before")
    @classmethod
    def validate_uuid(cls, v):
        return uuid_to_str(v)

    @pydantic.field_validator("transaction_type", mode="before")
    @classmethod
    def validate_enum(cls, v):
        return enum_to_str(v)


class PaginationResponse(BaseSchema):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class CreditTransactionsResponse(BaseResponse):
    current_credits: dict[str, int]
    transactions: list[CreditTransactionResponse]
    pagination: PaginationResponse


class CreditAdjustmentSchema(BaseSchema):
    """
    Administrative credit change. `allow_negative` lets a deduction or expiry take
    the balance below zero.
    """

    action: Literal["add", "deduct", "expire"]
    credit_type: CreditType
    amount: int = pydantic.Field(gt=0)
    reason: str = pydantic.Field(min_length=1)
    allow_negative: bool = False
    expiration_date: Optional[datetime] = None


class CreditAdjustmentResponse(StatusResponse):
    updated_credits: dict[str, int]


class InvoiceCreateSchema(BaseSchema):
    amount: int = pydantic.Field(gt=0, description="Amount in minor currency units")
    currency: str = "usd"


class CheckoutResponse(BaseResponse):
    invoice_id: str
    checkout_url: str


class InvoiceResponse(BaseResponse):
    id: str
    engagement_id: str
    amount: int
    commission_amount: int
    payout_amount: int
    currency: str
    status: str
    provider: str | None
    external_payment_id: str | None
    failure_reason: str | None
    created_at: datetime | None
    paid_at: datetime | None

    @pydantic.field_validator("id", "engagement_id", mode="before")
    @classmethod
    def validate_uuid(cls, v):
        return uuid_to_str(v)

    @pydantic.field_validator("status", mode="before")
    @classmethod
    def validate_enum(cls, v):
        return enum_to_str(v)
