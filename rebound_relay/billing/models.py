"""
SQLAlchemy models for billing reconciliation.

Organizations, plans and the marketplace entities are owned by the CRUD layer;
only the columns reconciliation reads or writes are mapped here. The credit ledger
(`CreditTransaction`) is append-only and `CreditBalance` is its materialized view.
"""

from typing import Optional
import enum
import uuid
import sqlalchemy as model
from sqlalchemy import func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session

from rebound_relay.common.orm import BaseModel, normalize_uuid
from .billing_constants import (
    AdminRole,
    CreditType,
    InvoiceStatus,
    Provider,
    TransactionType,
)


JSONType = model.JSON().with_variant(JSONB, "postgresql")


class OrgRoles(enum.Enum):
    """Role types for organization members"""

    owner = "owner"
    admin = "admin"
    member = "member"


class UserModel(BaseModel):
    __tablename__ = "users"

    id = model.Column(model.Uuid, primary_key=True, default=uuid.uuid4)
    email = model.Column(model.String, nullable=False, index=True)
    full_name = model.Column(model.String, nullable=True)
    created_at = model.Column(model.DateTime(timezone=True), default=func.now())

    @classmethod
    def get_by_email(cls, orm: Session, email: str) -> Optional['UserModel']:
        return orm.query(cls).filter(func.lower(cls.email) == email.strip().lower()).first()


class UserOrgModel(BaseModel):
    __tablename__ = "user_orgs"

    user_id = model.Column(model.Uuid, model.ForeignKey("users.id"), primary_key=True)
    org_id = model.Column(model.Uuid, model.ForeignKey("orgs.id"), primary_key=True)
    role = model.Column(model.Enum(OrgRoles, name="org_roles"), nullable=False, default=OrgRoles.member)


class PlanModel(BaseModel):
    """Static plan catalog. Reconciliation only ever reads it."""

    __tablename__ = "plans"

    id = model.Column(model.Uuid, primary_key=True, default=uuid.uuid4)
    codename = model.Column(model.String, unique=True, nullable=False)
    name = model.Column(model.String, nullable=False)
    is_default = model.Column(model.Boolean, nullable=False, default=False)

    monthly_stripe_price_id = model.Column(model.String, nullable=True)
    yearly_stripe_price_id = model.Column(model.String, nullable=True)
    onetime_stripe_price_id = model.Column(model.String, nullable=True)

    monthly_dodo_product_id = model.Column(model.String, nullable=True)
    yearly_dodo_product_id = model.Column(model.String, nullable=True)
    onetime_dodo_product_id = model.Column(model.String, nullable=True)

    monthly_paypal_plan_id = model.Column(model.String, nullable=True)
    yearly_paypal_plan_id = model.Column(model.String, nullable=True)

    # {credit_type: credits allocated per billing period}
    quotas = model.Column(JSONType, nullable=False, default=dict)

    @classmethod
    def product_columns(cls, provider: Provider) -> list:
        """Columns that hold the given provider's price/product/plan ids."""
        return {
            Provider.stripe: [
                cls.monthly_stripe_price_id,
                cls.yearly_stripe_price_id,
                cls.onetime_stripe_price_id,
            ],
            Provider.dodo: [
                cls.monthly_dodo_product_id,
                cls.yearly_dodo_product_id,
                cls.onetime_dodo_product_id,
            ],
            Provider.paypal: [
                cls.monthly_paypal_plan_id,
                cls.yearly_paypal_plan_id,
            ],
        }[Provider(provider)]

    def credit_quotas(self) -> dict[str, int]:
        """Positive per-period allocations for known credit types."""
        quotas = {}
        for credit_type, amount in (self.quotas or {}).items():
            if credit_type in CreditType._value2member_map_ and int(amount) > 0:
                quotas[credit_type] = int(amount)
        return quotas


class OrgModel(BaseModel):
    __tablename__ = "orgs"

    id = model.Column(model.Uuid, primary_key=True, default=uuid.uuid4)
    name = model.Column(model.String, nullable=False)
    billing_email = model.Column(model.String, nullable=True, index=True)
    plan_id = model.Column(model.Uuid, model.ForeignKey("plans.id"), nullable=True)

    # at most one external customer per provider, never shared between orgs
    stripe_customer_id = model.Column(model.String, unique=True, nullable=True)
    dodo_customer_id = model.Column(model.String, unique=True, nullable=True)
    paypal_payer_id = model.Column(model.String, unique=True, nullable=True)

    stripe_subscription_id = model.Column(model.String, nullable=True, index=True)
    dodo_subscription_id = model.Column(model.String, nullable=True, index=True)
    paypal_subscription_id = model.Column(model.String, nullable=True, index=True)

    created_at = model.Column(model.DateTime(timezone=True), default=func.now())

    _customer_attrs = {
        Provider.stripe: "stripe_customer_id",
        Provider.dodo: "dodo_customer_id",
        Provider.paypal: "paypal_payer_id",
    }
    _subscription_attrs = {
        Provider.stripe: "stripe_subscription_id",
        Provider.dodo: "dodo_subscription_id",
        Provider.paypal: "paypal_subscription_id",
    }

    @classmethod
    def customer_id_attr(cls, provider: Provider) -> str:
        return cls._customer_attrs[Provider(provider)]

    @classmethod
    def subscription_id_attr(cls, provider: Provider) -> str:
        return cls._subscription_attrs[Provider(provider)]

    def get_customer_id(self, provider: Provider) -> Optional[str]:
        return getattr(self, self.customer_id_attr(provider))

    def set_customer_id(self, provider: Provider, customer_id: str) -> None:
        setattr(self, self.customer_id_attr(provider), customer_id)

    def set_subscription_id(self, provider: Provider, subscription_id: Optional[str]) -> None:
        setattr(self, self.subscription_id_attr(provider), subscription_id)

    @classmethod
    def get_by_id(cls, orm: Session, org_id, for_update: bool = False) -> Optional['OrgModel']:
        try:
            org_id = normalize_uuid(org_id)
        except (ValueError, TypeError, AttributeError):
            return None

        query = orm.query(cls).filter(cls.id == org_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    @classmethod
    def get_by_customer_id(cls, orm: Session, provider: Provider, customer_id: str) -> Optional['OrgModel']:
        column = getattr(cls, cls.customer_id_attr(provider))
        return orm.query(cls).filter(column == customer_id).first()

    @classmethod
    def get_by_subscription_id(
        cls, orm: Session, provider: Provider, subscription_id: str
    ) -> Optional['OrgModel']:
        column = getattr(cls, cls.subscription_id_attr(provider))
        return orm.query(cls).filter(column == subscription_id).first()

    def is_user_member(self, orm: Session, user_id) -> bool:
        return (
            orm.query(UserOrgModel)
            .filter(UserOrgModel.org_id == self.id, UserOrgModel.user_id == normalize_uuid(user_id))
            .first()
            is not None
        )


class CreditTransaction(BaseModel):
    """Immutable ledger entry. Rows are only ever inserted."""

    __tablename__ = "credit_transactions"
    __table_args__ = (model.Index("ix_credit_transactions_org_type", "org_id", "credit_type"),)

    id = model.Column(model.Uuid, primary_key=True, default=uuid.uuid4)
    org_id = model.Column(model.Uuid, model.ForeignKey("orgs.id"), nullable=False)
    credit_type = model.Column(model.String, nullable=False)
    transaction_type = model.Column(model.Enum(TransactionType, name="credit_transaction_type"), nullable=False)
    amount = model.Column(model.Integer, nullable=False)
    # idempotency key; one ledger entry per external payment
    payment_id = model.Column(model.String, unique=True, nullable=True)
    expiration_date = model.Column(model.DateTime(timezone=True), nullable=True)
    transaction_metadata = model.Column("metadata", JSONType, nullable=False, default=dict)
    created_at = model.Column(model.DateTime(timezone=True), default=func.now())

    @property
    def signed_amount(self) -> int:
        if self.transaction_type == TransactionType.credit:
            return self.amount
        return -self.amount


class CreditBalance(BaseModel):
    """Cached balance per (org, credit type); always equal to the replayed ledger sum."""

    __tablename__ = "credit_balances"

    org_id = model.Column(model.Uuid, model.ForeignKey("orgs.id"), primary_key=True)
    credit_type = model.Column(model.String, primary_key=True)
    balance = model.Column(model.Integer, nullable=False, default=0)
    updated_at = model.Column(model.DateTime(timezone=True), default=func.now(), onupdate=func.now())


class ConsultantModel(BaseModel):
    __tablename__ = "consultants"

    id = model.Column(model.Uuid, primary_key=True, default=uuid.uuid4)
    user_id = model.Column(model.Uuid, model.ForeignKey("users.id"), nullable=True)
    name = model.Column(model.String, nullable=False)
    email = model.Column(model.String, nullable=True)
    # Stripe Connect account receiving the payout split
    stripe_account_id = model.Column(model.String, nullable=True)
    stripe_onboarding_complete = model.Column(model.Boolean, nullable=False, default=False)

    @property
    def can_receive_payouts(self) -> bool:
        return bool(self.stripe_account_id) and bool(self.stripe_onboarding_complete)


class EngagementModel(BaseModel):
    __tablename__ = "engagements"

    id = model.Column(model.Uuid, primary_key=True, default=uuid.uuid4)
    client_org_id = model.Column(model.Uuid, model.ForeignKey("orgs.id"), nullable=False)
    consultant_id = model.Column(model.Uuid, model.ForeignKey("consultants.id"), nullable=False)
    title = model.Column(model.String, nullable=False)
    status = model.Column(model.String, nullable=False, default="active")
    created_at = model.Column(model.DateTime(timezone=True), default=func.now())


class MarketplaceInvoice(BaseModel):
    """
    A single payment request for an engagement.

    `commission_amount` and `payout_amount` are computed once at creation and never
    recomputed. Status only moves PENDING -> PAID or PENDING -> FAILED.
    """

    __tablename__ = "invoices"
    __table_args__ = (
        # one outstanding invoice per engagement
        model.Index(
            "uq_invoices_engagement_pending",
            "engagement_id",
            unique=True,
            postgresql_where=model.text("status = 'PENDING'"),
            sqlite_where=model.text("status = 'PENDING'"),
        ),
    )

    id = model.Column(model.Uuid, primary_key=True, default=uuid.uuid4)
    engagement_id = model.Column(model.Uuid, model.ForeignKey("engagements.id"), nullable=False)
    amount = model.Column(model.Integer, nullable=False)
    commission_amount = model.Column(model.Integer, nullable=False)
    payout_amount = model.Column(model.Integer, nullable=False)
    currency = model.Column(model.String, nullable=False, default="usd")
    status = model.Column(
        model.Enum(InvoiceStatus, name="invoice_status"),
        nullable=False,
        default=InvoiceStatus.PENDING,
    )
    provider = model.Column(model.String, nullable=True)
    checkout_session_id = model.Column(model.String, nullable=True)
    external_payment_id = model.Column(model.String, nullable=True)
    failure_reason = model.Column(model.String, nullable=True)
    created_at = model.Column(model.DateTime(timezone=True), default=func.now())
    updated_at = model.Column(model.DateTime(timezone=True), default=func.now(), onupdate=func.now())
    paid_at = model.Column(model.DateTime(timezone=True), nullable=True)

    @classmethod
    def get_by_id(cls, orm: Session, invoice_id, for_update: bool = False) -> Optional['MarketplaceInvoice']:
        try:
            invoice_id = normalize_uuid(invoice_id)
        except (ValueError, TypeError, AttributeError):
            return None

        query = orm.query(cls).filter(cls.id == invoice_id)
        if for_update:
            query = query.with_for_update()
        return query.first()


class WebhookEvent(BaseModel):
    """Processed webhook events; written in the same transaction as the event's changes."""

    __tablename__ = "webhook_events"

    provider = model.Column(model.String, primary_key=True)
    event_id = model.Column(model.String, primary_key=True)
    event_type = model.Column(model.String, nullable=True)
    processed_at = model.Column(model.DateTime(timezone=True), default=func.now())


class EndedSubscription(BaseModel):
    """
    Provider subscriptions that have been cancelled or expired.

    Providers may deliver a subscription's events out of order; an activation
    that arrives after the end is stale and must not re-assign the plan.
    """

    __tablename__ = "ended_subscriptions"

    provider = model.Column(model.String, primary_key=True)
    subscription_id = model.Column(model.String, primary_key=True)
    event_id = model.Column(model.String, nullable=True)
    ended_at = model.Column(model.DateTime(timezone=True), default=func.now())

    @classmethod
    def exists(cls, orm: Session, provider: Provider, subscription_id: str) -> bool:
        return orm.get(cls, (Provider(provider).value, subscription_id)) is not None

    @classmethod
    def record(cls, orm: Session, provider: Provider, subscription_id: str, event_id: Optional[str] = None) -> None:
        if cls.exists(orm, provider, subscription_id):
            return
        orm.add(cls(provider=Provider(provider).value, subscription_id=subscription_id, event_id=event_id))
        orm.flush()


class BillingAuditLog(BaseModel):
    __tablename__ = "billing_audit_logs"

    id = model.Column(model.Uuid, primary_key=True, default=uuid.uuid4)
    org_id = model.Column(model.Uuid, model.ForeignKey("orgs.id"), nullable=True)
    # null for changes made by a webhook
    user_id = model.Column(model.Uuid, model.ForeignKey("users.id"), nullable=True)
    action = model.Column(model.String, nullable=False)
    details = model.Column(JSONType, nullable=False)
    created_at = model.Column(model.DateTime(timezone=True), default=func.now())


class AdminRoleModel(BaseModel):
    """Platform-level admin roles, independent of organization membership."""

    __tablename__ = "admin_role_assignments"

    user_id = model.Column(model.Uuid, model.ForeignKey("users.id"), primary_key=True)
    role = model.Column(model.Enum(AdminRole, name="admin_role"), primary_key=True)
    granted_at = model.Column(model.DateTime(timezone=True), default=func.now())
