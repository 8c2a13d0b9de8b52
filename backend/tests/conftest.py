"""
Shared test fixtures for the carlOS finance backend test suite.
"""

from datetime import date
from decimal import Decimal

import pytest
import structlog
from fastapi.testclient import TestClient

from app.auth import AuthenticatedUser, get_current_user
from app.config import FinanceConfig
from app.models.finance import (
    BillingCycle,
    CreditCard,
    Subscription,
    SubscriptionStatus,
    Transaction,
)
from app.services.invoice_service import InvoiceService
from app.services.ledger_repository import InMemoryLedgerRepository
from app.services.subscription_service import SubscriptionService
from app.services.subscription_sync import SubscriptionBillSync

TODAY = date(2026, 10, 15)
USER_ID = "user-1"


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep Settings away from any real Supabase project."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("DEBUG", "false")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def repository() -> InMemoryLedgerRepository:
    return InMemoryLedgerRepository(today_provider=lambda: TODAY)


@pytest.fixture
def sample_card() -> CreditCard:
    """Card closing on the 10th and due on the 17th."""
    return CreditCard(
        id="card-1",
        name="Nubank",
        limit_amount=Decimal("5000.00"),
        closing_day=10,
        due_day=17,
        user_id=USER_ID,
    )


@pytest.fixture
def open_transactions(sample_card: CreditCard) -> list[Transaction]:
    return [
        Transaction(
            id="tx-1",
            user_id=USER_ID,
            description="Mercado",
            amount=Decimal("45.00"),
            date=date(2026, 10, 3),
            credit_card_id=sample_card.id,
        ),
        Transaction(
            id="tx-2",
            user_id=USER_ID,
            description="Padaria",
            amount=Decimal("12.50"),
            date=date(2026, 10, 8),
            credit_card_id=sample_card.id,
        ),
    ]


@pytest.fixture
def sample_subscription() -> Subscription:
    """Yearly subscription charging within the sync lookahead."""
    return Subscription(
        id="sub-1",
        user_id=USER_ID,
        service_name="iCloud",
        amount=Decimal("30"),
        billing_cycle=BillingCycle.YEARLY,
        status=SubscriptionStatus.ACTIVE,
        next_billing_date=date(2026, 10, 20),
    )


@pytest.fixture
def services(repository: InMemoryLedgerRepository):
    """Sync facade, subscription and invoice services over one in-memory store."""
    sync = SubscriptionBillSync(repository)
    subscription_service = SubscriptionService(
        repository,
        sync,
        FinanceConfig(auto_sync_on_load=False),
        today_provider=lambda: TODAY,
    )
    invoice_service = InvoiceService(repository, today_provider=lambda: TODAY)
    return sync, subscription_service, invoice_service


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from app.config import get_settings

    get_settings.cache_clear()

    from app.main import app

    return TestClient(app)


async def _fake_user() -> AuthenticatedUser:
    return AuthenticatedUser(id=USER_ID, email="carlos@example.com")


@pytest.fixture
def authed_client(client: TestClient, services):
    """Client with services on app.state and auth overridden to USER_ID."""
    sync, subscription_service, invoice_service = services
    client.app.state.subscription_sync = sync
    client.app.state.subscription_service = subscription_service
    client.app.state.invoice_service = invoice_service
    client.app.dependency_overrides[get_current_user] = _fake_user
    yield client
    client.app.dependency_overrides.clear()
