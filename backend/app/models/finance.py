"""
Data models for personal finance: subscriptions, bills, cards and transactions.

Rows come straight from Supabase (PostgREST JSON), so every model ignores
columns it does not use and money is kept as Decimal end to end.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class BillingCycle(str, Enum):
    """Recurring charge period of a subscription."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUAL = "semi_annual"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a subscription."""

    ACTIVE = "active"
    CANCELED = "canceled"
    PAUSED = "paused"
    TRIAL = "trial"

    @classmethod
    def _missing_(cls, value: object) -> "SubscriptionStatus | None":
        # Older rows were written with the British spelling
        if value == "cancelled":
            return cls.CANCELED
        return None


class BillStatus(str, Enum):
    """Payment status of a bill (payable)."""

    PENDING = "pending"
    OVERDUE = "overdue"
    PAID = "paid"


class PaymentMethod(str, Enum):
    """How a subscription is charged."""

    CREDIT_CARD = "credit_card"
    ACCOUNT = "account"
    PIX = "pix"
    OTHER = "other"


def parse_billing_cycle(value: Any) -> BillingCycle | None:
    """Return the BillingCycle for a stored value, or None if it is not one."""
    if isinstance(value, BillingCycle):
        return value
    try:
        return BillingCycle(value)
    except ValueError:
        return None


class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CreditCard(_Row):
    """Credit card with its statement configuration."""

    id: str
    name: str
    limit_amount: Decimal = Decimal("0")
    closing_day: int = Field(ge=1, le=31)
    due_day: int = Field(ge=1, le=31)
    user_id: str | None = None


class Account(_Row):
    """Bank/cash account."""

    id: str
    name: str
    type: str = "checking"
    balance: Decimal = Decimal("0")
    user_id: str | None = None


class Subscription(_Row):
    """A recurring service charge, joined with its card or account."""

    id: str
    user_id: str | None = None
    service_name: str
    description: str | None = None
    category: str = "other"
    service_url: str | None = None
    amount: Decimal = Field(ge=0)
    # Unknown cycles are kept as-is and normalize to the identity
    billing_cycle: BillingCycle | str = BillingCycle.MONTHLY
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    start_date: date | None = None
    next_billing_date: date | None = None
    payment_method: PaymentMethod | None = None
    credit_card_id: str | None = None
    account_id: str | None = None
    notes: str | None = None
    notify_before_days: int | None = None
    credit_card: CreditCard | None = None
    account: Account | None = None

    @field_validator("billing_cycle", mode="before")
    @classmethod
    def _known_cycle(cls, value: Any) -> Any:
        return parse_billing_cycle(value) or value

    @field_validator("status", mode="before")
    @classmethod
    def _legacy_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return SubscriptionStatus(value)
        return value


class SubscriptionCreate(BaseModel):
    """Payload for a new subscription."""

    service_name: str = Field(min_length=1)
    description: str | None = None
    category: str = "other"
    service_url: str | None = None
    amount: Decimal = Field(ge=0)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    start_date: date | None = None
    next_billing_date: date
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    credit_card_id: str | None = None
    account_id: str | None = None
    notes: str | None = None
    notify_before_days: int = Field(default=3, ge=0)

    @field_validator("service_name")
    @classmethod
    def _strip_service_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("service_name must not be blank")
        return value

    def to_row(self) -> dict[str, Any]:
        row = self.model_dump(mode="json")
        # card only applies when paying by card
        if self.payment_method != PaymentMethod.CREDIT_CARD:
            row["credit_card_id"] = None
        return row


_NOT_NULL_SUBSCRIPTION_FIELDS = ("service_name", "category", "amount", "billing_cycle", "status")


class SubscriptionUpdate(BaseModel):
    """Partial update; only the fields that were sent are written."""

    service_name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    category: str | None = None
    service_url: str | None = None
    amount: Decimal | None = Field(default=None, ge=0)
    billing_cycle: BillingCycle | None = None
    status: SubscriptionStatus | None = None
    start_date: date | None = None
    next_billing_date: date | None = None
    payment_method: PaymentMethod | None = None
    credit_card_id: str | None = None
    account_id: str | None = None
    notes: str | None = None
    notify_before_days: int | None = Field(default=None, ge=0)

    @field_validator("service_name")
    @classmethod
    def _strip_service_name(cls, value: str | None) -> str | None:
        if value is None:
            return value
        value = value.strip()
        if not value:
            raise ValueError("service_name must not be blank")
        return value

    @model_validator(mode="after")
    def _reject_nulls(self) -> "SubscriptionUpdate":
        # these columns are NOT NULL; omitting them is fine, nulling them is not
        nulled = sorted(
            name
            for name in _NOT_NULL_SUBSCRIPTION_FIELDS
            if name in self.model_fields_set and getattr(self, name) is None
        )
        if nulled:
            raise ValueError(f"fields cannot be null: {', '.join(nulled)}")
        return self

    def to_row(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


class Bill(_Row):
    """An amount owed by a due date."""

    id: str
    user_id: str | None = None
    description: str
    category: str | None = None
    amount: Decimal
    due_date: date
    payment_date: date | None = None
    status: BillStatus = BillStatus.PENDING
    subscription_id: str | None = None


class Transaction(_Row):
    """A card or account movement. Locked once included in a closed invoice."""

    id: str
    user_id: str | None = None
    description: str = ""
    amount: Decimal
    date: date
    is_locked: bool = False
    credit_card_id: str | None = None
    installment_current: int | None = None
    installment_total: int | None = None

    @field_validator("date", mode="before")
    @classmethod
    def _date_part(cls, value: Any) -> Any:
        # Transactions are stored as noon-anchored ISO timestamps
        if isinstance(value, str) and "T" in value:
            return value.split("T")[0]
        return value

    @field_validator("is_locked", mode="before")
    @classmethod
    def _null_is_unlocked(cls, value: Any) -> Any:
        return False if value is None else value


class SubscriptionStats(BaseModel):
    """Aggregates over the bill history of one subscription."""

    total_bills: int = 0
    paid_count: int = 0
    pending_count: int = 0
    overdue_count: int = 0
    total_paid: Decimal = Decimal("0")
    average_amount: Decimal = Decimal("0")


class SubscriptionView(BaseModel):
    """Subscription with the values the list screen derives from it."""

    subscription: Subscription
    monthly_amount: Decimal
    days_until: int | None = None
    is_upcoming: bool = False
    is_overdue: bool = False


class SyncState(BaseModel):
    """Outcome channel of the background bill sync."""

    status: Literal["idle", "running", "succeeded", "failed", "cancelled"] = "idle"
    last_error: str | None = None
    last_result: Any = None


class SubscriptionListResponse(BaseModel):
    """Subscriptions plus derived totals."""

    subscriptions: list[SubscriptionView]
    active_count: int
    monthly_total: Decimal
    yearly_total: Decimal
    sync: SyncState


class InvoiceSummary(BaseModel):
    """Open (not yet closed) invoice of a credit card."""

    card: CreditCard
    open_transactions: list[Transaction]
    total_open: Decimal
    available_limit: Decimal
    due_date: date


class InvoiceCloseResult(BaseModel):
    """Payable created by closing an invoice."""

    bill: Bill
    locked_transaction_ids: list[str]
    amount: Decimal
    due_date: date


class IntegrityRow(_Row):
    """One row of the bills integrity diagnostic."""

    model_config = ConfigDict(extra="allow")

    subscription_id: str | None = None
    service_name: str | None = None
    status: str | None = None
