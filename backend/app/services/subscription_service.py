"""Subscription list, totals and CRUD, plus the background bill sync."""

import asyncio
import contextlib
from collections.abc import Callable
from datetime import date

import structlog

from app.config import FinanceConfig
from app.models.finance import (
    Subscription,
    SubscriptionCreate,
    SubscriptionListResponse,
    SubscriptionStatus,
    SubscriptionUpdate,
    SubscriptionView,
    SyncState,
)
from app.services.finance_calculator import (
    days_until,
    is_billable,
    is_overdue,
    is_upcoming,
    monthly_total,
    normalize_to_monthly,
    today_in,
    yearly_total,
)
from app.services.ledger_repository import LedgerRepository
from app.services.subscription_sync import SubscriptionBillSync

logger = structlog.get_logger(__name__)


class SubscriptionNotFoundError(LookupError):
    """No subscription with the given id."""


class BackgroundSync:
    """Runs sync_all_subscriptions as a cancellable task.

    Outcomes go to `state` instead of the caller: a failed sync never fails
    the request that started it. Only one run at a time; no retries.

    The run is process-wide because the procedure bills every user's
    subscriptions. Only the user who started a run sees its result or error
    and may cancel it; everyone else sees just the status.
    """

    def __init__(self, sync: SubscriptionBillSync) -> None:
        self.sync = sync
        self.state = SyncState()
        self.started_by: str | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, started_by: str | None = None) -> bool:
        """Start a run unless one is in flight. Returns True if a run was started."""
        if self.running:
            return False
        self.started_by = started_by
        self.state = SyncState(status="running")
        self._task = asyncio.create_task(self._run(), name="subscription-bill-sync")
        return True

    def state_for(self, user_id: str) -> SyncState:
        """State as seen by user_id: result and error only for the run's owner."""
        if user_id == self.started_by:
            return self.state
        return SyncState(status=self.state.status)

    async def _run(self) -> None:
        try:
            result = await self.sync.sync_all_subscriptions()
        except asyncio.CancelledError:
            self.state = SyncState(status="cancelled")
            raise
        except Exception as e:
            # already logged with traceback by the facade
            self.state = SyncState(status="failed", last_error=str(e))
            return
        self.state = SyncState(status="succeeded", last_result=result)

    async def wait(self) -> SyncState:
        """Wait for the current run, if any, and return the final state."""
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        return self.state

    async def cancel(self, user_id: str | None = None) -> bool:
        """Cancel the run in flight.

        With user_id, only a run that user started is cancelled. Returns False
        if nothing was cancelled.
        """
        if not self.running:
            return False
        if user_id is not None and user_id != self.started_by:
            return False
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        logger.info("subscription_background_sync_cancelled", started_by=self.started_by)
        return True


class SubscriptionService:
    """Loads subscriptions with derived monthly/yearly spend."""

    def __init__(
        self,
        repository: LedgerRepository,
        sync: SubscriptionBillSync,
        config: FinanceConfig,
        today_provider: Callable[[], date] | None = None,
    ) -> None:
        self.repository = repository
        self.config = config
        self.today_provider = today_provider or (lambda: today_in(config.timezone))
        self.background_sync = BackgroundSync(sync)
        # subscription count at the last auto-sync, per user
        self._synced_counts: dict[str, int] = {}

    def _view(self, subscription: Subscription, today: date) -> SubscriptionView:
        days = days_until(subscription.next_billing_date, today)
        return SubscriptionView(
            subscription=subscription,
            monthly_amount=normalize_to_monthly(subscription.amount, subscription.billing_cycle),
            days_until=days,
            is_upcoming=is_upcoming(
                days, subscription.notify_before_days, self.config.default_notify_before_days
            ),
            is_overdue=is_overdue(days, subscription.status),
        )

    def _maybe_start_sync(self, user_id: str, count: int) -> None:
        if not self.config.auto_sync_on_load or count == 0:
            return
        if self._synced_counts.get(user_id) == count:
            return
        # recorded only when a run actually starts, so a busy runner retries on the next load
        if self.background_sync.start(started_by=user_id):
            self._synced_counts[user_id] = count
            logger.info("subscription_background_sync_started", user_id=user_id, count=count)

    async def list_subscriptions(self, user_id: str) -> SubscriptionListResponse:
        subscriptions = await self.repository.list_subscriptions(user_id)
        self._maybe_start_sync(user_id, len(subscriptions))

        today = self.today_provider()
        monthly = monthly_total(subscriptions)
        return SubscriptionListResponse(
            subscriptions=[self._view(s, today) for s in subscriptions],
            active_count=sum(1 for s in subscriptions if is_billable(s)),
            monthly_total=monthly,
            yearly_total=yearly_total(monthly),
            sync=self.background_sync.state_for(user_id),
        )

    async def add_subscription(self, user_id: str, payload: SubscriptionCreate) -> Subscription:
        subscription = await self.repository.insert_subscription(user_id, payload.to_row())
        logger.info("subscription_created", subscription_id=subscription.id, user_id=user_id)
        return subscription

    async def get_subscription(self, user_id: str, subscription_id: str) -> Subscription:
        """Fetch a subscription owned by user_id."""
        subscription = await self.repository.get_subscription(subscription_id)
        # rows of other users are reported as missing
        if subscription is None or (subscription.user_id and subscription.user_id != user_id):
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def update_subscription(
        self, user_id: str, subscription_id: str, payload: SubscriptionUpdate
    ) -> Subscription:
        current = await self.get_subscription(user_id, subscription_id)
        updates = payload.to_row()
        if not updates:
            return current
        subscription = await self.repository.update_subscription(subscription_id, updates)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        logger.info("subscription_updated", subscription_id=subscription_id, fields=sorted(updates))
        return subscription

    async def delete_subscription(self, user_id: str, subscription_id: str) -> None:
        await self.get_subscription(user_id, subscription_id)
        if not await self.repository.delete_subscription(subscription_id):
            raise SubscriptionNotFoundError(subscription_id)
        logger.info("subscription_deleted", subscription_id=subscription_id)

    async def toggle_status(self, user_id: str, subscription_id: str) -> Subscription:
        """Pause an active subscription; reactivate anything else."""
        current = await self.get_subscription(user_id, subscription_id)
        new_status = (
            SubscriptionStatus.PAUSED
            if current.status == SubscriptionStatus.ACTIVE
            else SubscriptionStatus.ACTIVE
        )
        return await self.update_subscription(
            user_id, subscription_id, SubscriptionUpdate(status=new_status)
        )
