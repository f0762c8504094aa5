"""
Append-only credit ledger with a cached balance per (org, credit type).

Every mutation locks the org row before touching the balance cache, so the
read-balance -> check -> insert transaction -> write balance sequence is atomic
per tenant. Functions here flush but never commit; the caller owns the
transaction and must roll back on any raised error.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rebound_relay.api.exceptions import (
    ConcurrentPaymentError,
    DuplicatePaymentError,
    InsufficientCreditsError,
    InvalidCreditAmountError,
    InvalidCreditTypeError,
    OrganizationNotFoundError,
)
from ..billing_constants import BillingConstants, CreditType, TransactionType
from ..models import CreditBalance, CreditTransaction, OrgModel

logger = logging.getLogger(__name__)


def _validate_amount(amount) -> int:
    # bool is an int subclass; True is not a credit amount
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidCreditAmountError(amount)
    return amount


def _validate_credit_type(credit_type) -> str:
    try:
        return CreditType(credit_type).value
    except ValueError:
        raise InvalidCreditTypeError(str(credit_type))


def _lock_org(orm: Session, org_id) -> OrgModel:
    org = OrgModel.get_by_id(orm, org_id, for_update=True)
    if org is None:
        raise OrganizationNotFoundError(org_id)
    return org


def _get_balance_row(orm: Session, org_id, credit_type: str) -> CreditBalance:
    """Fetch the cached balance row, creating it at zero. Caller must hold the org lock."""
    balance = (
        orm.query(CreditBalance)
        .filter(CreditBalance.org_id == org_id, CreditBalance.credit_type == credit_type)
        .with_for_update()
        .first()
    )
    if balance is None:
        balance = CreditBalance(org_id=org_id, credit_type=credit_type, balance=0)
        orm.add(balance)
        orm.flush()
    return balance


def payment_id_exists(orm: Session, payment_id: str) -> bool:
    return orm.query(CreditTransaction.id).filter(CreditTransaction.payment_id == payment_id).first() is not None


def add_credit_transaction(
    orm: Session,
    org_id,
    credit_type: str,
    transaction_type: TransactionType,
    amount: int,
    payment_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    expiration_date: Optional[datetime] = None,
    enforce_balance: bool = True,
) -> CreditTransaction:
    """
    Append one ledger entry and apply it to the cached balance.

    `enforce_balance=False` lets a debit or expiry take the balance negative and is
    reserved for administrative overrides.
    """
    amount = _validate_amount(amount)
    credit_type = _validate_credit_type(credit_type)
    transaction_type = TransactionType(transaction_type)

    org = _lock_org(orm, org_id)

    if payment_id and payment_id_exists(orm, payment_id):
        raise DuplicatePaymentError(payment_id)

    balance = _get_balance_row(orm, org.id, credit_type)

    if transaction_type != TransactionType.credit and enforce_balance and balance.balance < amount:
        raise InsufficientCreditsError(credit_type, balance.balance, amount)

    transaction = CreditTransaction(
        org_id=org.id,
        credit_type=credit_type,
        transaction_type=transaction_type,
        amount=amount,
        payment_id=payment_id,
        expiration_date=expiration_date,
        transaction_metadata=dict(metadata or {}),
    )
    orm.add(transaction)
    balance.balance = balance.balance + transaction.signed_amount

    try:
        orm.flush()
    except IntegrityError:
        if payment_id:
            raise ConcurrentPaymentError(payment_id)
        raise

    logger.info(
        f"Credit ledger {transaction_type.value}: org={org.id} type={credit_type} "
        f"amount={amount} balance={balance.balance} payment_id={payment_id}"
    )
    return transaction


def add_credits(
    orm: Session,
    org_id,
    credit_type: str,
    amount: int,
    payment_id: Optional[str],
    metadata: Optional[dict] = None,
    expiration_date: Optional[datetime] = None,
) -> int:
    """Credit the org and return the new balance. Raises `DuplicatePaymentError` on replay."""
    transaction = add_credit_transaction(
        orm,
        org_id,
        credit_type,
        TransactionType.credit,
        amount,
        payment_id=payment_id,
        metadata=metadata,
        expiration_date=expiration_date,
    )
    return get_balance(orm, transaction.org_id, transaction.credit_type)


def deduct_credits(
    orm: Session,
    org_id,
    credit_type: str,
    amount: int,
    metadata: Optional[dict] = None,
    allow_negative: bool = False,
) -> int:
    """Debit the org and return the new balance. Raises `InsufficientCreditsError` without writing."""
    transaction = add_credit_transaction(
        orm,
        org_id,
        credit_type,
        TransactionType.debit,
        amount,
        metadata=metadata,
        enforce_balance=not allow_negative,
    )
    return get_balance(orm, transaction.org_id, transaction.credit_type)


def expire_credits(
    orm: Session,
    org_id,
    credit_type: str,
    amount: int,
    metadata: Optional[dict] = None,
    allow_negative: bool = False,
) -> int:
    transaction = add_credit_transaction(
        orm,
        org_id,
        credit_type,
        TransactionType.expired,
        amount,
        metadata=metadata,
        enforce_balance=not allow_negative,
    )
    return get_balance(orm, transaction.org_id, transaction.credit_type)


def get_balance(orm: Session, org_id, credit_type: str) -> int:
    balance = (
        orm.query(CreditBalance.balance)
        .filter(CreditBalance.org_id == org_id, CreditBalance.credit_type == credit_type)
        .scalar()
    )
    return balance or 0


def get_organization_credits(orm: Session, org_id) -> dict[str, int]:
    """Cached balances for every known credit type (zero when the org never held any)."""
    org = OrgModel.get_by_id(orm, org_id)
    if org is None:
        raise OrganizationNotFoundError(org_id)

    credits = {credit_type.value: 0 for credit_type in CreditType}
    for row in orm.query(CreditBalance).filter(CreditBalance.org_id == org.id).all():
        credits[row.credit_type] = row.balance
    return credits


def replay_transactions(orm: Session, org_id) -> dict[str, int]:
    """Balances derived from the ledger alone, ignoring the cache."""
    rows = (
        orm.query(
            CreditTransaction.credit_type,
            CreditTransaction.transaction_type,
            func.sum(CreditTransaction.amount),
        )
        .filter(CreditTransaction.org_id == org_id)
        .group_by(CreditTransaction.credit_type, CreditTransaction.transaction_type)
        .all()
    )

    totals: dict[str, int] = {}
    for credit_type, transaction_type, total in rows:
        sign = 1 if transaction_type == TransactionType.credit else -1
        totals[credit_type] = totals.get(credit_type, 0) + sign * int(total or 0)
    return totals


def recalculate_organization_credits(orm: Session, org_id) -> dict[str, int]:
    """
    Rebuild every cached balance for the org from a full ledger replay.

    Balance rows for credit types with no transactions are reset to zero.
    """
    org = _lock_org(orm, org_id)
    totals = replay_transactions(orm, org.id)

    existing = {
        row.credit_type: row
        for row in orm.query(CreditBalance).filter(CreditBalance.org_id == org.id).with_for_update().all()
    }

    for credit_type in set(existing) | set(totals):
        value = totals.get(credit_type, 0)
        row = existing.get(credit_type)
        if row is None:
            orm.add(CreditBalance(org_id=org.id, credit_type=credit_type, balance=value))
            continue
        if row.balance != value:
            logger.warning(
                f"Credit balance drift for org={org.id} type={credit_type}: cached={row.balance} ledger={value}"
            )
            row.balance = value

    orm.flush()
    return get_organization_credits(orm, org.id)


def list_credit_transactions(
    orm: Session,
    org_id,
    page: int = 1,
    limit: int = BillingConstants.DEFAULT_TRANSACTIONS_PAGE_SIZE,
) -> tuple[list[CreditTransaction], int]:
    """Newest-first page of the org's ledger and the total entry count."""
    org = OrgModel.get_by_id(orm, org_id)
    if org is None:
        raise OrganizationNotFoundError(org_id)

    page = max(page, 1)
    limit = min(max(limit, 1), BillingConstants.MAX_TRANSACTIONS_PAGE_SIZE)

    query = orm.query(CreditTransaction).filter(CreditTransaction.org_id == org.id)
    total = query.count()
    transactions = (
        query.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return transactions, total
