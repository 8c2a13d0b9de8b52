"""
Business logic constants for the carlOS finance backend.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(auto sync, timezone, notification window), see config.py.
"""

from decimal import Decimal

from app.models.finance import BillingCycle, BillStatus, SubscriptionStatus

API_TITLE = "carlOS Finance API"
API_VERSION = "0.1.0"

# --- Monthly normalization ---
# weekly amounts are multiplied, longer cycles are divided (30 / 12 == 2.5 exactly)
MONTHLY_DIVISORS: dict[BillingCycle, int] = {
    BillingCycle.QUARTERLY: 3,
    BillingCycle.SEMI_ANNUAL: 6,
    BillingCycle.YEARLY: 12,
}
WEEKS_PER_MONTH = Decimal("4.33")
MONTHS_PER_YEAR = 12

# Statuses that count towards the monthly/yearly spend
BILLABLE_SUBSCRIPTION_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL}

# Bill statuses considered "still owed"
OPEN_BILL_STATUSES = [BillStatus.PENDING, BillStatus.OVERDUE]

# --- Remote procedures (server-side, opaque to this codebase) ---
RPC_GENERATE_NEXT_BILL = "generate_next_subscription_bill"
RPC_GENERATE_ALL_PENDING_BILLS = "generate_all_pending_subscription_bills"
RPC_CHECK_BILLS_INTEGRITY = "check_subscription_bills_integrity"

# Days ahead of next_billing_date in which a bill is generated.
# Fixed server-side; the in-memory store mirrors it.
SUBSCRIPTION_LOOKAHEAD_DAYS = 7

# --- Subscription list flags ---
DEFAULT_NOTIFY_BEFORE_DAYS = 3

# --- Invoice closing ---
PT_BR_MONTH_NAMES = [
    "janeiro",
    "fevereiro",
    "março",
    "abril",
    "maio",
    "junho",
    "julho",
    "agosto",
    "setembro",
    "outubro",
    "novembro",
    "dezembro",
]
INVOICE_DESCRIPTION_TEMPLATE = "Fatura {card_name} - {month}"
INVOICE_BILL_CATEGORY = "Cartão de Crédito"

# --- Table names ---
TABLE_SUBSCRIPTIONS = "subscriptions"
TABLE_BILLS = "bills"
TABLE_TRANSACTIONS = "transactions"
TABLE_CREDIT_CARDS = "credit_cards"
SUBSCRIPTION_SELECT = "*, credit_card:credit_cards(*), account:accounts(*)"
