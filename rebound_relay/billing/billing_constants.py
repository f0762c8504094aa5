from enum import Enum


class BillingConstants:
    # page size ceiling for the admin transaction history
    MAX_TRANSACTIONS_PAGE_SIZE = 100
    DEFAULT_TRANSACTIONS_PAGE_SIZE = 20
    DEFAULT_CURRENCY = "usd"


class Provider(str, Enum):
    stripe = "stripe"
    dodo = "dodo"
    paypal = "paypal"


class CreditType(str, Enum):
    image_generation = "image_generation"
    video_generation = "video_generation"


class TransactionType(str, Enum):
    credit = "credit"
    debit = "debit"
    expired = "expired"


class InvoiceStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class BillingAuditAction(str, Enum):
    PLAN_CHANGED = "plan_changed"
    PLAN_DOWNGRADED = "plan_downgraded"
    PLAN_CREDITS_ALLOCATED = "plan_credits_allocated"
    CREDITS_PURCHASED = "credits_purchased"
    CREDITS_ADJUSTED = "credits_adjusted"
    CREDITS_RECALCULATED = "credits_recalculated"
    INVOICE_CREATED = "invoice_created"
    INVOICE_PAID = "invoice_paid"
    INVOICE_FAILED = "invoice_failed"
    ORG_CREATED_BY_WEBHOOK = "org_created_by_webhook"


class AdminRole(str, Enum):
    super_admin = "super_admin"
    billing_admin = "billing_admin"
    support = "support"
