"""
Deterministic billing arithmetic.

Pure functions, no store calls: monthly normalization of recurring amounts,
spend totals, invoice due dates and billing-date advancement.
"""

import calendar
from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from app.constants import (
    BILLABLE_SUBSCRIPTION_STATUSES,
    DEFAULT_NOTIFY_BEFORE_DAYS,
    MONTHLY_DIVISORS,
    MONTHS_PER_YEAR,
    PT_BR_MONTH_NAMES,
    WEEKS_PER_MONTH,
)
from app.models.finance import (
    BillingCycle,
    Subscription,
    SubscriptionStatus,
    parse_billing_cycle,
)

_CYCLE_STEPS: dict[BillingCycle, relativedelta] = {
    BillingCycle.WEEKLY: relativedelta(weeks=1),
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.QUARTERLY: relativedelta(months=3),
    BillingCycle.SEMI_ANNUAL: relativedelta(months=6),
    BillingCycle.YEARLY: relativedelta(years=1),
}


def _as_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def today_in(timezone: str) -> date:
    """Current calendar date in the given IANA zone."""
    return datetime.now(ZoneInfo(timezone)).date()


def normalize_to_monthly(amount: Decimal | int | float | str, billing_cycle: BillingCycle | str) -> Decimal:
    """
    Monthly equivalent of a recurring amount.

    weekly x 4.33, monthly x 1, quarterly / 3, semi_annual / 6, yearly / 12.
    Unknown cycles return the amount unchanged.
    """
    value = _as_decimal(amount)
    cycle = parse_billing_cycle(billing_cycle)
    if cycle == BillingCycle.WEEKLY:
        return value * WEEKS_PER_MONTH
    if cycle in MONTHLY_DIVISORS:
        return value / MONTHLY_DIVISORS[cycle]
    return value


def is_billable(subscription: Subscription) -> bool:
    return subscription.status in BILLABLE_SUBSCRIPTION_STATUSES


def monthly_total(subscriptions: Iterable[Subscription]) -> Decimal:
    """Sum of monthly equivalents over active and trial subscriptions."""
    return sum(
        (normalize_to_monthly(s.amount, s.billing_cycle) for s in subscriptions if is_billable(s)),
        Decimal("0"),
    )


def yearly_total(monthly: Decimal) -> Decimal:
    """Yearly projection of a monthly total."""
    return monthly * MONTHS_PER_YEAR


def compute_invoice_due_date(today: date, closing_day: int, due_day: int) -> date:
    """
    Due date of the invoice that closes today.

    On or after the closing day the invoice is due next month (rolling the
    year after December); before it, this month. A due_day past the end of
    the target month is clamped to its last day.
    """
    year, month = today.year, today.month
    if today.day >= closing_day:
        month += 1
        if month > 12:
            month = 1
            year += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(due_day, last_day))


def advance_billing_date(current: date, billing_cycle: BillingCycle | str) -> date:
    """Next charge date one cycle after `current`. Unknown cycles step monthly."""
    cycle = parse_billing_cycle(billing_cycle) or BillingCycle.MONTHLY
    return current + _CYCLE_STEPS[cycle]


def days_until(target: date | None, today: date) -> int | None:
    if target is None:
        return None
    return (target - today).days


def is_upcoming(
    days: int | None,
    notify_before_days: int | None,
    default_window: int = DEFAULT_NOTIFY_BEFORE_DAYS,
) -> bool:
    if days is None:
        return False
    window = notify_before_days or default_window
    return 0 <= days <= window


def is_overdue(days: int | None, status: SubscriptionStatus) -> bool:
    return days is not None and days < 0 and status == SubscriptionStatus.ACTIVE


def invoice_month_label(today: date) -> str:
    """Long pt-BR month name, e.g. 'outubro'."""
    return PT_BR_MONTH_NAMES[today.month - 1]
