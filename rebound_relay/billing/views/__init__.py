from .credits import (
    OrgCreditsView,
    AdminCreditTransactionsView,
    AdminCreditAdjustmentView,
    AdminRecalculateCreditsView,
)
from .invoices import create_invoice, get_invoice, get_engagement_invoices

__all__ = [
    # Credit views
    'OrgCreditsView',
    'AdminCreditTransactionsView',
    'AdminCreditAdjustmentView',
    'AdminRecalculateCreditsView',
    # Invoice views
    'create_invoice',
    'get_invoice',
    'get_engagement_invoices',
]
