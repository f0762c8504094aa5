import logging
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from rebound_relay.api.exceptions import ConcurrentPaymentError, DuplicatePaymentError
from rebound_relay.common.environment import DEFAULT_PLAN_CODENAME
from ..billing_constants import BillingAuditAction, Provider
from ..models import BillingAuditLog, OrgModel, PlanModel
from . import credit_ledger

logger = logging.getLogger(__name__)


def get_plan_for_provider_product(orm: Session, provider: Provider, product_id: Optional[str]) -> Optional[PlanModel]:
    """Find the catalog plan that lists `product_id` under any of the provider's price/product columns."""
    if not product_id:
        return None
    columns = PlanModel.product_columns(provider)
    return orm.query(PlanModel).filter(or_(*[column == product_id for column in columns])).first()


def get_default_plan(orm: Session) -> Optional[PlanModel]:
    plan = orm.query(PlanModel).filter(PlanModel.is_default.is_(True)).first()
    if plan is None:
        plan = orm.query(PlanModel).filter(PlanModel.codename == DEFAULT_PLAN_CODENAME).first()
    return plan


def allocate_plan_credits(
    orm: Session,
    org_id,
    plan: PlanModel,
    payment_id: str,
    payment_metadata: Optional[dict] = None,
) -> dict[str, int]:
    """
    Grant the plan's per-period quotas, once per (org, plan, payment id).

    Callers pass a billing-period-scoped `payment_id`, so a redelivered renewal for
    the same period lands on existing keys and is skipped.
    """
    allocated = {}
    for credit_type, amount in plan.credit_quotas().items():
        allocation_key = f"plan:{org_id}:{plan.id}:{payment_id}:{credit_type}"
        try:
            credit_ledger.add_credits(
                orm,
                org_id,
                credit_type,
                amount,
                payment_id=allocation_key,
                metadata={
                    **(payment_metadata or {}),
                    "reason": "plan_allocation",
                    "plan_id": str(plan.id),
                    "plan_codename": plan.codename,
                    "source_payment_id": payment_id,
                },
            )
            allocated[credit_type] = amount
        except ConcurrentPaymentError:
            # the whole allocation was committed by another delivery
            raise
        except DuplicatePaymentError:
            logger.info(f"Plan credits already allocated for {allocation_key}; skipping")

    if allocated:
        orm.add(
            BillingAuditLog(
                org_id=org_id,
                action=BillingAuditAction.PLAN_CREDITS_ALLOCATED.value,
                details={"plan_id": str(plan.id), "payment_id": payment_id, "credits": allocated},
            )
        )
    return allocated


def update_plan(
    orm: Session,
    org: OrgModel,
    plan: PlanModel,
    payment_id: Optional[str] = None,
    payment_metadata: Optional[dict] = None,
) -> dict[str, int]:
    """
    Point the org at `plan`. Any plan may replace any other; the provider is authoritative.

    When `payment_id` is given the plan's quota credits are allocated against it.
    """
    previous_plan_id = org.plan_id
    org.plan_id = plan.id

    if previous_plan_id != plan.id:
        logger.info(f"Org {org.id} plan changed {previous_plan_id} -> {plan.id} ({plan.codename})")
        orm.add(
            BillingAuditLog(
                org_id=org.id,
                action=BillingAuditAction.PLAN_CHANGED.value,
                details={
                    "before": {"plan_id": str(previous_plan_id) if previous_plan_id else None},
                    "after": {"plan_id": str(plan.id), "codename": plan.codename},
                    "payment_id": payment_id,
                },
            )
        )
    orm.flush()

    if payment_id:
        return allocate_plan_credits(orm, org.id, plan, payment_id, payment_metadata)
    return {}


def downgrade_to_default_plan(orm: Session, org: OrgModel, reason: Optional[str] = None) -> Optional[PlanModel]:
    """Move the org to the baseline plan, or clear its plan when the catalog has none."""
    plan = get_default_plan(orm)
    previous_plan_id = org.plan_id
    org.plan_id = plan.id if plan else None

    if plan is None:
        logger.warning(f"No default plan configured; clearing plan for org {org.id}")

    orm.add(
        BillingAuditLog(
            org_id=org.id,
            action=BillingAuditAction.PLAN_DOWNGRADED.value,
            details={
                "before": {"plan_id": str(previous_plan_id) if previous_plan_id else None},
                "after": {"plan_id": str(plan.id) if plan else None},
                "reason": reason,
            },
        )
    )
    orm.flush()
    return plan
