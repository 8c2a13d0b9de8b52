"""Integration tests for the subscription endpoints."""

from datetime import date
from decimal import Decimal

import pytest

from app.models.finance import Bill, BillStatus, Subscription
from app.services.ledger_repository import LedgerStoreError


def _bill(bill_id: str, status: BillStatus, due: date) -> Bill:
    return Bill(
        id=bill_id,
        description="iCloud",
        amount=Decimal("30"),
        due_date=due,
        status=status,
        subscription_id="sub-1",
    )


class TestListSubscriptions:
    def test_returns_views_and_totals(self, authed_client, repository, sample_subscription):
        repository.add_subscription(sample_subscription)

        response = authed_client.get("/api/v1/subscriptions")

        assert response.status_code == 200
        data = response.json()
        assert data["active_count"] == 1
        assert Decimal(data["monthly_total"]) == Decimal("2.5")
        assert Decimal(data["yearly_total"]) == Decimal("30")
        assert data["subscriptions"][0]["subscription"]["service_name"] == "iCloud"
        assert data["subscriptions"][0]["days_until"] == 5
        assert data["sync"]["status"] == "idle"

    def test_service_missing_returns_503(self, authed_client):
        authed_client.app.state.subscription_service = None

        response = authed_client.get("/api/v1/subscriptions")

        assert response.status_code == 503

    def test_store_error_returns_502(self, authed_client, repository, monkeypatch):
        async def boom(_user_id):
            raise LedgerStoreError("JWT expired")

        monkeypatch.setattr(repository, "list_subscriptions", boom)

        response = authed_client.get("/api/v1/subscriptions")

        assert response.status_code == 502
        assert response.json()["detail"] == "JWT expired"


class TestSubscriptionCrud:
    def test_create(self, authed_client, repository):
        response = authed_client.post(
            "/api/v1/subscriptions",
            json={
                "service_name": "Spotify",
                "amount": "21.90",
                "billing_cycle": "monthly",
                "next_billing_date": "2026-11-01",
                "payment_method": "pix",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["user_id"] == "user-1"
        assert data["notify_before_days"] == 3
        assert data["id"] in repository.subscriptions

    def test_create_without_next_billing_date_returns_422(self, authed_client):
        response = authed_client.post(
            "/api/v1/subscriptions", json={"service_name": "Spotify", "amount": "21.90"}
        )
        assert response.status_code == 422

    def test_get_update_delete(self, authed_client, repository, sample_subscription):
        repository.add_subscription(sample_subscription)

        assert authed_client.get("/api/v1/subscriptions/sub-1").json()["service_name"] == "iCloud"

        response = authed_client.patch("/api/v1/subscriptions/sub-1", json={"amount": "36"})
        assert response.status_code == 200
        assert Decimal(response.json()["amount"]) == Decimal("36")

        assert authed_client.delete("/api/v1/subscriptions/sub-1").status_code == 204
        assert authed_client.get("/api/v1/subscriptions/sub-1").status_code == 404

    def test_unknown_subscription_returns_404(self, authed_client):
        assert authed_client.get("/api/v1/subscriptions/nope").status_code == 404
        assert authed_client.patch("/api/v1/subscriptions/nope", json={"notes": "x"}).status_code == 404
        assert authed_client.delete("/api/v1/subscriptions/nope").status_code == 404
        assert authed_client.post("/api/v1/subscriptions/nope/toggle").status_code == 404

    def test_other_users_subscription_returns_404(self, authed_client, repository, sample_subscription):
        sample_subscription.user_id = "user-2"
        repository.add_subscription(sample_subscription)

        assert authed_client.get("/api/v1/subscriptions/sub-1").status_code == 404
        assert authed_client.get("/api/v1/subscriptions/sub-1/bills").status_code == 404
        assert authed_client.post("/api/v1/subscriptions/sub-1/sync").status_code == 404

    @pytest.mark.parametrize("field", ["amount", "service_name", "billing_cycle", "status"])
    def test_patch_null_required_field_returns_422(self, authed_client, repository, sample_subscription, field):
        repository.add_subscription(sample_subscription)

        response = authed_client.patch("/api/v1/subscriptions/sub-1", json={field: None})

        assert response.status_code == 422
        assert repository.subscriptions["sub-1"].amount == Decimal("30")
        assert repository.subscriptions["sub-1"].service_name == "iCloud"

    def test_patch_blank_service_name_returns_422(self, authed_client, repository, sample_subscription):
        repository.add_subscription(sample_subscription)

        response = authed_client.patch("/api/v1/subscriptions/sub-1", json={"service_name": "  "})

        assert response.status_code == 422

    def test_toggle(self, authed_client, repository, sample_subscription):
        repository.add_subscription(sample_subscription)

        first = authed_client.post("/api/v1/subscriptions/sub-1/toggle")
        second = authed_client.post("/api/v1/subscriptions/sub-1/toggle")

        assert first.json()["status"] == "paused"
        assert second.json()["status"] == "active"


class TestBillSyncEndpoints:
    def test_sync_one(self, authed_client, repository, sample_subscription):
        repository.add_subscription(sample_subscription)

        response = authed_client.post("/api/v1/subscriptions/sub-1/sync")

        assert response.status_code == 200
        bill_id = response.json()["bill_id"]
        assert bill_id in repository.bills

    def test_sync_all(self, authed_client, repository, sample_subscription):
        repository.add_subscription(sample_subscription)

        response = authed_client.post("/api/v1/subscriptions/sync")

        assert response.status_code == 200
        assert response.json()["result"]["generated"] == 1

    def test_sync_store_error_returns_502(self, authed_client, repository, sample_subscription, monkeypatch):
        repository.add_subscription(sample_subscription)

        async def boom(_subscription_id):
            raise LedgerStoreError("function generate_next_subscription_bill(uuid) does not exist")

        monkeypatch.setattr(repository, "generate_next_subscription_bill", boom)

        response = authed_client.post("/api/v1/subscriptions/sub-1/sync")

        assert response.status_code == 502
        assert "does not exist" in response.json()["detail"]

    def test_sync_all_skips_trial_subscriptions(self, authed_client, repository, sample_subscription):
        sample_subscription.status = "trial"
        sample_subscription.next_billing_date = date(2026, 10, 16)
        repository.add_subscription(sample_subscription)

        response = authed_client.post("/api/v1/subscriptions/sync")

        assert response.status_code == 200
        assert response.json()["result"]["generated"] == 0
        assert repository.bills == {}

    def test_background_sync_status_and_cancel_when_idle(self, authed_client):
        assert authed_client.get("/api/v1/subscriptions/sync/status").json()["status"] == "idle"
        assert authed_client.delete("/api/v1/subscriptions/sync").json() == {"cancelled": False}

    def test_integrity(self, authed_client, repository, sample_subscription):
        repository.add_subscription(sample_subscription)

        response = authed_client.get("/api/v1/subscriptions/integrity")

        assert response.status_code == 200
        rows = response.json()
        assert rows[0]["subscription_id"] == "sub-1"
        assert rows[0]["needs_bill"] is True

    def test_integrity_hides_other_users_subscriptions(self, authed_client, repository, sample_subscription):
        repository.add_subscription(sample_subscription)
        repository.add_subscription(
            Subscription(
                id="sub-other",
                user_id="someone-else",
                service_name="Netflix",
                amount=Decimal("55.90"),
                next_billing_date=date(2026, 10, 18),
            )
        )

        response = authed_client.get("/api/v1/subscriptions/integrity")

        assert response.status_code == 200
        assert [r["service_name"] for r in response.json()] == ["iCloud"]

    def test_other_users_sync_cannot_be_cancelled(self, authed_client, services):
        _, subscription_service, _ = services
        subscription_service.background_sync.started_by = "someone-else"

        response = authed_client.delete("/api/v1/subscriptions/sync")

        assert response.json() == {"cancelled": False}


class TestBillHistoryEndpoints:
    def test_bills_pending_and_stats(self, authed_client, repository, sample_subscription):
        repository.add_subscription(sample_subscription)
        repository.add_bill(_bill("b-paid", BillStatus.PAID, date(2025, 10, 20)))
        repository.add_bill(_bill("b-open", BillStatus.PENDING, date(2026, 10, 20)))

        bills = authed_client.get("/api/v1/subscriptions/sub-1/bills").json()
        pending = authed_client.get("/api/v1/subscriptions/sub-1/bills/pending").json()
        stats = authed_client.get("/api/v1/subscriptions/sub-1/stats").json()

        assert [b["id"] for b in bills] == ["b-open", "b-paid"]
        assert pending["id"] == "b-open"
        assert stats["total_bills"] == 2
        assert stats["paid_count"] == 1
        assert Decimal(stats["average_amount"]) == Decimal("30")

    def test_no_pending_bill_is_null(self, authed_client, repository, sample_subscription):
        repository.add_subscription(sample_subscription)

        response = authed_client.get("/api/v1/subscriptions/sub-1/bills/pending")

        assert response.status_code == 200
        assert response.json() is None
