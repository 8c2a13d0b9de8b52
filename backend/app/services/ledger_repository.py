"""Finance ledger repositories: subscriptions, bills, cards and transactions."""

import uuid
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any, Protocol

import structlog
from postgrest.exceptions import APIError

from app.constants import (
    OPEN_BILL_STATUSES,
    RPC_CHECK_BILLS_INTEGRITY,
    RPC_GENERATE_ALL_PENDING_BILLS,
    RPC_GENERATE_NEXT_BILL,
    SUBSCRIPTION_LOOKAHEAD_DAYS,
    SUBSCRIPTION_SELECT,
    TABLE_BILLS,
    TABLE_CREDIT_CARDS,
    TABLE_SUBSCRIPTIONS,
    TABLE_TRANSACTIONS,
)
from app.models.finance import (
    Bill,
    BillStatus,
    CreditCard,
    Subscription,
    SubscriptionStatus,
    Transaction,
)
from app.services.finance_calculator import advance_billing_date

logger = structlog.get_logger(__name__)


class LedgerStoreError(RuntimeError):
    """A store call failed. Carries the raw message from the backend."""


class LedgerRepository(Protocol):
    """Storage contract for the finance ledger."""

    async def list_subscriptions(self, user_id: str) -> list[Subscription]:
        """Subscriptions of a user joined with card/account, by status then next_billing_date."""

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        """Fetch one subscription."""

    async def insert_subscription(self, user_id: str, row: dict[str, Any]) -> Subscription:
        """Create a subscription owned by user_id."""

    async def update_subscription(self, subscription_id: str, updates: dict[str, Any]) -> Subscription | None:
        """Apply a partial update. Returns None if the row does not exist."""

    async def delete_subscription(self, subscription_id: str) -> bool:
        """Delete a subscription. Returns False if it did not exist."""

    async def list_bills_for_subscription(self, subscription_id: str) -> list[Bill]:
        """All bills of a subscription, newest due date first."""

    async def get_pending_bill(self, subscription_id: str) -> Bill | None:
        """Soonest pending/overdue bill of a subscription."""

    async def insert_bill(self, row: dict[str, Any]) -> Bill:
        """Create a bill."""

    async def get_credit_card(self, card_id: str) -> CreditCard | None:
        """Fetch one credit card."""

    async def list_card_transactions(self, card_id: str) -> list[Transaction]:
        """All transactions charged to a card."""

    async def lock_transactions(self, transaction_ids: list[str]) -> list[str]:
        """Set is_locked on the given ids where it is still false.

        Returns the ids this call actually locked.
        """

    async def unlock_transactions(self, transaction_ids: list[str]) -> None:
        """Clear is_locked on the given ids."""

    async def generate_next_subscription_bill(self, subscription_id: str) -> str | None:
        """Remote procedure: generate the next bill of one subscription if due."""

    async def generate_all_pending_subscription_bills(self) -> Any:
        """Remote procedure: generate bills for every subscription due soon."""

    async def check_subscription_bills_integrity(self) -> list[dict[str, Any]]:
        """Remote procedure: diagnostic rows about subscriptions and their bills."""


class InMemoryLedgerRepository:
    """In-memory repository used for tests and local fallback.

    Emulates the bill generation procedures that live in the database: an
    active subscription gets a pending bill once its next_billing_date is
    within the lookahead window, and next_billing_date moves one cycle ahead.
    """

    def __init__(self, today_provider: Callable[[], date] = date.today) -> None:
        self.today_provider = today_provider
        self.subscriptions: dict[str, Subscription] = {}
        self.bills: dict[str, Bill] = {}
        self.credit_cards: dict[str, CreditCard] = {}
        self.transactions: dict[str, Transaction] = {}

    # -- seeding -----------------------------------------------------------

    def add_credit_card(self, card: CreditCard) -> CreditCard:
        self.credit_cards[card.id] = card.model_copy(deep=True)
        return card

    def add_transaction(self, transaction: Transaction) -> Transaction:
        self.transactions[transaction.id] = transaction.model_copy(deep=True)
        return transaction

    def add_subscription(self, subscription: Subscription) -> Subscription:
        self.subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription

    def add_bill(self, bill: Bill) -> Bill:
        self.bills[bill.id] = bill.model_copy(deep=True)
        return bill

    # -- subscriptions -----------------------------------------------------

    def _joined(self, subscription: Subscription) -> Subscription:
        joined = subscription.model_copy(deep=True)
        if joined.credit_card_id:
            card = self.credit_cards.get(joined.credit_card_id)
            joined.credit_card = card.model_copy(deep=True) if card else None
        return joined

    async def list_subscriptions(self, user_id: str) -> list[Subscription]:
        rows = [s for s in self.subscriptions.values() if s.user_id == user_id]
        # Postgres ascending order puts NULLs last
        rows.sort(
            key=lambda s: (
                s.status.value,
                s.next_billing_date is None,
                s.next_billing_date or date.min,
            )
        )
        return [self._joined(s) for s in rows]

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        subscription = self.subscriptions.get(subscription_id)
        return self._joined(subscription) if subscription else None

    async def insert_subscription(self, user_id: str, row: dict[str, Any]) -> Subscription:
        subscription = Subscription.model_validate({**row, "id": str(uuid.uuid4()), "user_id": user_id})
        self.subscriptions[subscription.id] = subscription
        return self._joined(subscription)

    async def update_subscription(self, subscription_id: str, updates: dict[str, Any]) -> Subscription | None:
        current = self.subscriptions.get(subscription_id)
        if current is None:
            return None
        merged = {**current.model_dump(mode="json", exclude={"credit_card", "account"}), **updates}
        updated = Subscription.model_validate(merged)
        self.subscriptions[subscription_id] = updated
        return self._joined(updated)

    async def delete_subscription(self, subscription_id: str) -> bool:
        return self.subscriptions.pop(subscription_id, None) is not None

    # -- bills -------------------------------------------------------------

    async def list_bills_for_subscription(self, subscription_id: str) -> list[Bill]:
        rows = [b for b in self.bills.values() if b.subscription_id == subscription_id]
        rows.sort(key=lambda b: b.due_date, reverse=True)
        return [b.model_copy(deep=True) for b in rows]

    async def get_pending_bill(self, subscription_id: str) -> Bill | None:
        rows = [
            b
            for b in self.bills.values()
            if b.subscription_id == subscription_id and b.status in OPEN_BILL_STATUSES
        ]
        if not rows:
            return None
        return min(rows, key=lambda b: b.due_date).model_copy(deep=True)

    async def insert_bill(self, row: dict[str, Any]) -> Bill:
        bill = Bill.model_validate({**row, "id": str(uuid.uuid4())})
        self.bills[bill.id] = bill
        return bill.model_copy(deep=True)

    # -- cards / transactions ---------------------------------------------

    async def get_credit_card(self, card_id: str) -> CreditCard | None:
        card = self.credit_cards.get(card_id)
        return card.model_copy(deep=True) if card else None

    async def list_card_transactions(self, card_id: str) -> list[Transaction]:
        return [
            t.model_copy(deep=True)
            for t in self.transactions.values()
            if t.credit_card_id == card_id
        ]

    async def lock_transactions(self, transaction_ids: list[str]) -> list[str]:
        locked: list[str] = []
        for transaction_id in transaction_ids:
            transaction = self.transactions.get(transaction_id)
            if transaction is not None and not transaction.is_locked:
                transaction.is_locked = True
                locked.append(transaction_id)
        return locked

    async def unlock_transactions(self, transaction_ids: list[str]) -> None:
        for transaction_id in transaction_ids:
            transaction = self.transactions.get(transaction_id)
            if transaction is not None:
                transaction.is_locked = False

    # -- procedures --------------------------------------------------------

    def _generate_bill(self, subscription: Subscription) -> str | None:
        # the procedure bills active subscriptions only; trials are not charged yet
        if subscription.status != SubscriptionStatus.ACTIVE or subscription.next_billing_date is None:
            return None
        horizon = self.today_provider() + timedelta(days=SUBSCRIPTION_LOOKAHEAD_DAYS)
        due_date = subscription.next_billing_date
        if due_date > horizon:
            return None

        already_billed = any(
            b.subscription_id == subscription.id and b.due_date == due_date
            for b in self.bills.values()
        )
        bill_id: str | None = None
        if not already_billed:
            bill = Bill(
                id=str(uuid.uuid4()),
                user_id=subscription.user_id,
                description=subscription.service_name,
                category="Assinaturas",
                amount=subscription.amount,
                due_date=due_date,
                status=BillStatus.PENDING,
                subscription_id=subscription.id,
            )
            self.bills[bill.id] = bill
            bill_id = bill.id

        subscription.next_billing_date = advance_billing_date(due_date, subscription.billing_cycle)
        return bill_id

    async def generate_next_subscription_bill(self, subscription_id: str) -> str | None:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            return None
        return self._generate_bill(subscription)

    async def generate_all_pending_subscription_bills(self) -> Any:
        bill_ids = []
        for subscription in self.subscriptions.values():
            bill_id = self._generate_bill(subscription)
            if bill_id:
                bill_ids.append(bill_id)
        return {"generated": len(bill_ids), "bill_ids": bill_ids}

    async def check_subscription_bills_integrity(self) -> list[dict[str, Any]]:
        rows = []
        for subscription in self.subscriptions.values():
            open_bills = [
                b
                for b in self.bills.values()
                if b.subscription_id == subscription.id and b.status in OPEN_BILL_STATUSES
            ]
            rows.append(
                {
                    "subscription_id": subscription.id,
                    "user_id": subscription.user_id,
                    "service_name": subscription.service_name,
                    "status": subscription.status.value,
                    "next_billing_date": (
                        subscription.next_billing_date.isoformat()
                        if subscription.next_billing_date
                        else None
                    ),
                    "open_bills": len(open_bills),
                    "needs_bill": subscription.status == SubscriptionStatus.ACTIVE and not open_bills,
                }
            )
        return rows


class SupabaseLedgerRepository:
    """Supabase-backed repository for the finance ledger."""

    def __init__(self, client) -> None:
        self.client = client

    async def _execute(self, query, operation: str):
        try:
            return await query.execute()
        except APIError as e:
            message = e.message or str(e)
            logger.warning("ledger_store_call_failed", operation=operation, error=message)
            raise LedgerStoreError(message) from e

    # -- subscriptions -----------------------------------------------------

    async def list_subscriptions(self, user_id: str) -> list[Subscription]:
        response = await self._execute(
            self.client.table(TABLE_SUBSCRIPTIONS)
            .select(SUBSCRIPTION_SELECT)
            .eq("user_id", user_id)
            .order("status")
            .order("next_billing_date"),
            "list_subscriptions",
        )
        return [Subscription.model_validate(row) for row in response.data or []]

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        response = await self._execute(
            self.client.table(TABLE_SUBSCRIPTIONS)
            .select(SUBSCRIPTION_SELECT)
            .eq("id", subscription_id)
            .limit(1),
            "get_subscription",
        )
        rows = response.data or []
        return Subscription.model_validate(rows[0]) if rows else None

    async def insert_subscription(self, user_id: str, row: dict[str, Any]) -> Subscription:
        response = await self._execute(
            self.client.table(TABLE_SUBSCRIPTIONS).insert({**row, "user_id": user_id}),
            "insert_subscription",
        )
        return Subscription.model_validate(response.data[0])

    async def update_subscription(self, subscription_id: str, updates: dict[str, Any]) -> Subscription | None:
        response = await self._execute(
            self.client.table(TABLE_SUBSCRIPTIONS).update(updates).eq("id", subscription_id),
            "update_subscription",
        )
        rows = response.data or []
        return Subscription.model_validate(rows[0]) if rows else None

    async def delete_subscription(self, subscription_id: str) -> bool:
        response = await self._execute(
            self.client.table(TABLE_SUBSCRIPTIONS).delete().eq("id", subscription_id),
            "delete_subscription",
        )
        return bool(response.data)

    # -- bills -------------------------------------------------------------

    async def list_bills_for_subscription(self, subscription_id: str) -> list[Bill]:
        response = await self._execute(
            self.client.table(TABLE_BILLS)
            .select("*")
            .eq("subscription_id", subscription_id)
            .order("due_date", desc=True),
            "list_bills_for_subscription",
        )
        return [Bill.model_validate(row) for row in response.data or []]

    async def get_pending_bill(self, subscription_id: str) -> Bill | None:
        response = await self._execute(
            self.client.table(TABLE_BILLS)
            .select("*")
            .eq("subscription_id", subscription_id)
            .in_("status", [s.value for s in OPEN_BILL_STATUSES])
            .order("due_date")
            .limit(1),
            "get_pending_bill",
        )
        rows = response.data or []
        return Bill.model_validate(rows[0]) if rows else None

    async def insert_bill(self, row: dict[str, Any]) -> Bill:
        response = await self._execute(self.client.table(TABLE_BILLS).insert(row), "insert_bill")
        return Bill.model_validate(response.data[0])

    # -- cards / transactions ---------------------------------------------

    async def get_credit_card(self, card_id: str) -> CreditCard | None:
        response = await self._execute(
            self.client.table(TABLE_CREDIT_CARDS).select("*").eq("id", card_id).limit(1),
            "get_credit_card",
        )
        rows = response.data or []
        return CreditCard.model_validate(rows[0]) if rows else None

    async def list_card_transactions(self, card_id: str) -> list[Transaction]:
        response = await self._execute(
            self.client.table(TABLE_TRANSACTIONS)
            .select("*")
            .eq("credit_card_id", card_id)
            .order("date", desc=True),
            "list_card_transactions",
        )
        return [Transaction.model_validate(row) for row in response.data or []]

    async def lock_transactions(self, transaction_ids: list[str]) -> list[str]:
        if not transaction_ids:
            return []
        # Conditional update: rows already locked by a concurrent close are not returned
        response = await self._execute(
            self.client.table(TABLE_TRANSACTIONS)
            .update({"is_locked": True})
            .in_("id", transaction_ids)
            .eq("is_locked", False),
            "lock_transactions",
        )
        return [str(row["id"]) for row in response.data or []]

    async def unlock_transactions(self, transaction_ids: list[str]) -> None:
        if not transaction_ids:
            return
        await self._execute(
            self.client.table(TABLE_TRANSACTIONS)
            .update({"is_locked": False})
            .in_("id", transaction_ids),
            "unlock_transactions",
        )

    # -- procedures --------------------------------------------------------

    async def generate_next_subscription_bill(self, subscription_id: str) -> str | None:
        response = await self._execute(
            self.client.rpc(RPC_GENERATE_NEXT_BILL, {"p_subscription_id": subscription_id}),
            RPC_GENERATE_NEXT_BILL,
        )
        return str(response.data) if response.data else None

    async def generate_all_pending_subscription_bills(self) -> Any:
        response = await self._execute(
            self.client.rpc(RPC_GENERATE_ALL_PENDING_BILLS, {}), RPC_GENERATE_ALL_PENDING_BILLS
        )
        return response.data

    async def check_subscription_bills_integrity(self) -> list[dict[str, Any]]:
        response = await self._execute(
            self.client.rpc(RPC_CHECK_BILLS_INTEGRITY, {}), RPC_CHECK_BILLS_INTEGRITY
        )
        return response.data or []
