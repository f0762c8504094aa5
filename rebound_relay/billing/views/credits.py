import logging
import math

from fastapi import Depends, HTTPException, Query
from sqlalchemy.orm import Session

from rebound_relay.api.exceptions import BillingError
from rebound_relay.common.environment import APP_URL
from rebound_relay.common.orm import get_orm_session
from rebound_relay.common.route_config import BaseView
from rebound_relay.common.views import add_cors_headers, get_session_user_id
from ..billing_constants import BillingAuditAction, BillingConstants, TransactionType
from ..models import BillingAuditLog, OrgModel
from ..policy import Permission, PolicyEvaluator
from ..schemas import (
    CreditAdjustmentResponse,
    CreditAdjustmentSchema,
    CreditBalancesResponse,
    CreditTransactionResponse,
    CreditTransactionsResponse,
    PaginationResponse,
)
from ..services import credit_ledger

logger = logging.getLogger(__name__)


def _get_org_or_404(orm: Session, org_id: str) -> OrgModel:
    org = OrgModel.get_by_id(orm, org_id)
    if org is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return org


class OrgCreditsView(BaseView):
    """Current credit balances for an organization the user belongs to."""

    @add_cors_headers(
        origins=[APP_URL],
        methods=["GET", "OPTIONS"],
    )
    async def __call__(
        self,
        org_id: str,
        orm: Session = Depends(get_orm_session),
    ) -> CreditBalancesResponse:
        user_id = get_session_user_id(self.request)
        org = _get_org_or_404(orm, org_id)

        if not PolicyEvaluator(orm).can_access_org(user_id, org, Permission.VIEW_CREDITS):
            raise HTTPException(status_code=403, detail="Access denied")

        credits = credit_ledger.get_organization_credits(orm, org.id)
        return CreditBalancesResponse(org_id=str(org.id), credits=credits)


class AdminCreditTransactionsView(BaseView):
    """Paginated ledger history for support and billing admins."""

    async def __call__(
        self,
        org_id: str,
        page: int = Query(1, ge=1),
        limit: int = Query(
            BillingConstants.DEFAULT_TRANSACTIONS_PAGE_SIZE,
            ge=1,
            le=BillingConstants.MAX_TRANSACTIONS_PAGE_SIZE,
        ),
        orm: Session = Depends(get_orm_session),
    ) -> CreditTransactionsResponse:
        user_id = get_session_user_id(self.request)
        PolicyEvaluator(orm).require(user_id, Permission.VIEW_CREDITS)
        org = _get_org_or_404(orm, org_id)

        transactions, total = credit_ledger.list_credit_transactions(orm, org.id, page=page, limit=limit)
        return CreditTransactionsResponse(
            current_credits=credit_ledger.get_organization_credits(orm, org.id),
            transactions=[CreditTransactionResponse.model_validate(t) for t in transactions],
            pagination=PaginationResponse(
                page=page,
                limit=limit,
                total=total,
                total_pages=math.ceil(total / limit),
                has_next=page * limit < total,
                has_prev=page > 1,
            ),
        )


class AdminCreditAdjustmentView(BaseView):
    """
    Grant, deduct or expire credits by hand.

    Admin adjustments carry no payment id, so they are never deduplicated.
    """

    async def __call__(
        self,
        org_id: str,
        body: CreditAdjustmentSchema,
        orm: Session = Depends(get_orm_session),
    ) -> CreditAdjustmentResponse:
        user_id = get_session_user_id(self.request)
        PolicyEvaluator(orm).require(user_id, Permission.MANAGE_CREDITS)
        org = _get_org_or_404(orm, org_id)

        metadata = {"reason": body.reason, "admin_action": True, "admin_id": str(user_id)}
        transaction_type = {
            "add": TransactionType.credit,
            "deduct": TransactionType.debit,
            "expire": TransactionType.expired,
        }[body.action]

        try:
            credit_ledger.add_credit_transaction(
                orm,
                org.id,
                body.credit_type.value,
                transaction_type,
                body.amount,
                metadata=metadata,
                expiration_date=body.expiration_date,
                enforce_balance=not body.allow_negative,
            )
            orm.add(
                BillingAuditLog(
                    org_id=org.id,
                    user_id=user_id,
                    action=BillingAuditAction.CREDITS_ADJUSTED.value,
                    details={
                        "action": body.action,
                        "credit_type": body.credit_type.value,
                        "amount": body.amount,
                        "reason": body.reason,
                        "allow_negative": body.allow_negative,
                    },
                )
            )
            orm.commit()
        except BillingError as e:
            orm.rollback()
            raise HTTPException(status_code=e.status_code, detail=e.message)

        logger.info(f"Admin {user_id} {body.action} {body.amount} {body.credit_type.value} credits for org {org.id}")
        past_tense = {"add": "added", "deduct": "deducted", "expire": "expired"}[body.action]
        return CreditAdjustmentResponse(
            message=f"Successfully {past_tense} {body.amount} {body.credit_type.value} credits",
            updated_credits=credit_ledger.get_organization_credits(orm, org.id),
        )


class AdminRecalculateCreditsView(BaseView):
    """Rebuild the cached balances from the ledger."""

    async def __call__(
        self,
        org_id: str,
        orm: Session = Depends(get_orm_session),
    ) -> CreditAdjustmentResponse:
        user_id = get_session_user_id(self.request)
        PolicyEvaluator(orm).require(user_id, Permission.RECALCULATE_CREDITS)
        org = _get_org_or_404(orm, org_id)

        before = credit_ledger.get_organization_credits(orm, org.id)
        credits = credit_ledger.recalculate_organization_credits(orm, org.id)
        orm.add(
            BillingAuditLog(
                org_id=org.id,
                user_id=user_id,
                action=BillingAuditAction.CREDITS_RECALCULATED.value,
                details={"before": before, "after": credits},
            )
        )
        orm.commit()

        return CreditAdjustmentResponse(message="Credits recalculated", updated_credits=credits)
