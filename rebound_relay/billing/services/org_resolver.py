"""
Map an inbound provider customer onto an organization.

Lookup order: explicit org id from event metadata, the provider's customer id,
the customer's email, and finally creation of a new org owned by that email.
"""

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..billing_constants import BillingAuditAction, Provider
from ..models import BillingAuditLog, OrgModel, OrgRoles, UserModel, UserOrgModel
from .plan_service import get_default_plan

logger = logging.getLogger(__name__)


def _normalize_email(email: Optional[str]) -> Optional[str]:
    if not email or not email.strip():
        return None
    return email.strip().lower()


def _attach_customer_id(orm: Session, org: OrgModel, provider: Provider, customer_id: Optional[str]) -> None:
    if not customer_id or org.get_customer_id(provider):
        return

    holder = OrgModel.get_by_customer_id(orm, provider, customer_id)
    if holder is not None and holder.id != org.id:
        logger.warning(f"{provider.value} customer {customer_id} already linked to org {holder.id}; not relinking")
        return

    logger.info(f"Linking {provider.value} customer {customer_id} to org {org.id}")
    org.set_customer_id(provider, customer_id)
    orm.flush()


def find_organization_by_email(orm: Session, provider: Provider, email: str) -> Optional[OrgModel]:
    """
    An org billed to this email, else the first org owned by a user with this email.

    Orgs already linked to a different customer of the same provider are skipped so
    two provider customers never collapse into one tenant.
    """
    customer_column = getattr(OrgModel, OrgModel.customer_id_attr(provider))

    org = (
        orm.query(OrgModel)
        .filter(func.lower(OrgModel.billing_email) == email, customer_column.is_(None))
        .order_by(OrgModel.created_at, OrgModel.id)
        .first()
    )
    if org is not None:
        return org

    return (
        orm.query(OrgModel)
        .join(UserOrgModel, UserOrgModel.org_id == OrgModel.id)
        .join(UserModel, UserModel.id == UserOrgModel.user_id)
        .filter(
            func.lower(UserModel.email) == email,
            UserOrgModel.role == OrgRoles.owner,
            customer_column.is_(None),
        )
        .order_by(OrgModel.created_at, OrgModel.id)
        .first()
    )


def get_or_create_organization_by_customer(
    orm: Session,
    provider: Provider,
    customer_id: Optional[str],
    email: str,
    name: Optional[str] = None,
) -> OrgModel:
    """Create the owning user (when absent) and a new org on the default plan."""
    user = UserModel.get_by_email(orm, email)
    if user is None:
        user = UserModel(email=email, full_name=name)
        orm.add(user)
        orm.flush()

    default_plan = get_default_plan(orm)
    org = OrgModel(
        name=f"{name or email}'s Organization",
        billing_email=email,
        plan_id=default_plan.id if default_plan else None,
    )
    if customer_id:
        org.set_customer_id(provider, customer_id)
    orm.add(org)
    orm.flush()

    orm.add(UserOrgModel(user_id=user.id, org_id=org.id, role=OrgRoles.owner))
    orm.add(
        BillingAuditLog(
            org_id=org.id,
            user_id=user.id,
            action=BillingAuditAction.ORG_CREATED_BY_WEBHOOK.value,
            details={"provider": provider.value, "customer_id": customer_id, "email": email},
        )
    )
    orm.flush()

    logger.info(f"Created org {org.id} for {provider.value} customer {customer_id} ({email})")
    return org


def resolve_organization(
    orm: Session,
    provider: Provider,
    customer_id: Optional[str],
    email: Optional[str],
    name: Optional[str] = None,
    org_id_hint: Optional[str] = None,
) -> Optional[OrgModel]:
    """
    Return the org for this provider customer, creating one when nothing matches.

    Returns None when the event carries neither a matching id nor an email; the
    caller skips tenant mutations in that case.
    """
    provider = Provider(provider)
    email = _normalize_email(email)

    if org_id_hint:
        org = OrgModel.get_by_id(orm, org_id_hint)
        if org is not None:
            _attach_customer_id(orm, org, provider, customer_id)
            return org
        logger.warning(f"Event references unknown org {org_id_hint}; falling back to customer lookup")

    if customer_id:
        org = OrgModel.get_by_customer_id(orm, provider, customer_id)
        if org is not None:
            return org

    if email is None:
        logger.info(f"No org resolvable for {provider.value} customer {customer_id}: no id match and no email")
        return None

    org = find_organization_by_email(orm, provider, email)
    if org is not None:
        _attach_customer_id(orm, org, provider, customer_id)
        return org

    try:
        return get_or_create_organization_by_customer(orm, provider, customer_id, email, name)
    except IntegrityError:
        # a concurrent delivery for the same customer created the org first
        orm.rollback()
        logger.info(f"Concurrent org creation for {provider.value} customer {customer_id}; re-reading")
        if customer_id:
            return OrgModel.get_by_customer_id(orm, provider, customer_id)
        return find_organization_by_email(orm, provider, email)
