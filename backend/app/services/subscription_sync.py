"""
Sync between subscriptions and bills.

Thin facade over the store: bill generation itself runs in the database
(generate_next_subscription_bill / generate_all_pending_subscription_bills).
This module triggers it, reads bill history and reduces it to stats.
Failures are logged and re-raised to the caller; nothing is retried.
"""

from decimal import Decimal
from typing import Any

import structlog

from app.models.finance import Bill, BillStatus, IntegrityRow, SubscriptionStats
from app.services.ledger_repository import LedgerRepository

logger = structlog.get_logger(__name__)


class SubscriptionBillSync:
    """Triggers bill generation and reads bills per subscription."""

    def __init__(self, repository: LedgerRepository) -> None:
        self.repository = repository

    async def sync_subscription(self, subscription_id: str) -> str | None:
        """Force generation of the next bill of one subscription.

        Returns the id of the created bill, or None when none was needed.
        """
        try:
            bill_id = await self.repository.generate_next_subscription_bill(subscription_id)
        except Exception:
            logger.exception("subscription_sync_failed", subscription_id=subscription_id)
            raise
        logger.info("subscription_synced", subscription_id=subscription_id, bill_id=bill_id)
        return bill_id

    async def sync_all_subscriptions(self) -> Any:
        """Generate bills for every active subscription charging in the next 7 days."""
        try:
            result = await self.repository.generate_all_pending_subscription_bills()
        except Exception:
            logger.exception("subscriptions_sync_all_failed")
            raise
        logger.info("subscriptions_synced", result=result)
        return result

    async def get_pending_bill(self, subscription_id: str) -> Bill | None:
        return await self.repository.get_pending_bill(subscription_id)

    async def get_subscription_bills(self, subscription_id: str) -> list[Bill]:
        return await self.repository.list_bills_for_subscription(subscription_id)

    async def check_integrity(self, user_id: str | None = None) -> list[IntegrityRow]:
        """Diagnostic listing of subscriptions and the state of their bills.

        The procedure reports every subscription in the store; with user_id
        only rows of that user's subscriptions are kept.
        """
        rows = [
            IntegrityRow.model_validate(row)
            for row in await self.repository.check_subscription_bills_integrity()
        ]
        if user_id is None:
            return rows
        owned = {s.id for s in await self.repository.list_subscriptions(user_id)}
        return [row for row in rows if row.subscription_id in owned]

    async def get_subscription_stats(self, subscription_id: str) -> SubscriptionStats:
        bills = await self.get_subscription_bills(subscription_id)
        return compute_subscription_stats(bills)


def compute_subscription_stats(bills: list[Bill]) -> SubscriptionStats:
    """Counts by status, paid total and average paid amount (0 without paid bills)."""
    paid = [b for b in bills if b.status == BillStatus.PAID]
    total_paid = sum((b.amount for b in paid), Decimal("0"))
    return SubscriptionStats(
        total_bills=len(bills),
        paid_count=len(paid),
        pending_count=sum(1 for b in bills if b.status == BillStatus.PENDING),
        overdue_count=sum(1 for b in bills if b.status == BillStatus.OVERDUE),
        total_paid=total_paid,
        average_amount=total_paid / len(paid) if paid else Decimal("0"),
    )
