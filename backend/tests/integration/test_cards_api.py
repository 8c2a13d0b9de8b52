"""Integration tests for the credit card invoice endpoints."""

from decimal import Decimal

from app.services.ledger_repository import LedgerStoreError


def _seed(repository, card, transactions):
    repository.add_credit_card(card)
    for tx in transactions:
        repository.add_transaction(tx)


class TestOpenInvoice:
    def test_returns_summary(self, authed_client, repository, sample_card, open_transactions):
        _seed(repository, sample_card, open_transactions)

        response = authed_client.get("/api/v1/cards/card-1/invoice")

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["total_open"]) == Decimal("57.50")
        assert Decimal(data["available_limit"]) == Decimal("4942.50")
        assert data["due_date"] == "2026-11-17"
        assert len(data["open_transactions"]) == 2

    def test_unknown_card_returns_404(self, authed_client):
        response = authed_client.get("/api/v1/cards/card-404/invoice")
        assert response.status_code == 404
        assert response.json()["detail"] == "Cartão não encontrado"

    def test_service_missing_returns_503(self, authed_client):
        authed_client.app.state.invoice_service = None
        assert authed_client.get("/api/v1/cards/card-1/invoice").status_code == 503


class TestCloseInvoice:
    def test_confirmed_close_creates_bill(self, authed_client, repository, sample_card, open_transactions):
        _seed(repository, sample_card, open_transactions)

        response = authed_client.post("/api/v1/cards/card-1/invoice/close", json={"confirm": True})

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["amount"]) == Decimal("57.50")
        assert data["due_date"] == "2026-11-17"
        assert data["bill"]["description"] == "Fatura Nubank - outubro"
        assert data["bill"]["status"] == "pending"
        assert sorted(data["locked_transaction_ids"]) == ["tx-1", "tx-2"]
        assert all(t.is_locked for t in repository.transactions.values())

    def test_unconfirmed_close_returns_409_and_writes_nothing(
        self, authed_client, repository, sample_card, open_transactions
    ):
        _seed(repository, sample_card, open_transactions)

        response = authed_client.post("/api/v1/cards/card-1/invoice/close", json={})

        assert response.status_code == 409
        assert "R$ 57.50" in response.json()["detail"]
        assert repository.bills == {}
        assert not any(t.is_locked for t in repository.transactions.values())

    def test_nothing_to_close_returns_400(self, authed_client, repository, sample_card):
        repository.add_credit_card(sample_card)

        response = authed_client.post("/api/v1/cards/card-1/invoice/close", json={"confirm": True})

        assert response.status_code == 400
        assert response.json()["detail"] == "Não há valor para fechar nesta fatura."

    def test_second_close_has_nothing_left(self, authed_client, repository, sample_card, open_transactions):
        _seed(repository, sample_card, open_transactions)

        first = authed_client.post("/api/v1/cards/card-1/invoice/close", json={"confirm": True})
        second = authed_client.post("/api/v1/cards/card-1/invoice/close", json={"confirm": True})

        assert first.status_code == 200
        assert second.status_code == 400
        assert len(repository.bills) == 1

    def test_other_users_card_returns_404(self, authed_client, repository, sample_card, open_transactions):
        sample_card.user_id = "user-2"
        _seed(repository, sample_card, open_transactions)

        response = authed_client.post("/api/v1/cards/card-1/invoice/close", json={"confirm": True})

        assert response.status_code == 404
        assert repository.bills == {}

    def test_bill_insert_failure_returns_502_and_unlocks(
        self, authed_client, repository, sample_card, open_transactions, monkeypatch
    ):
        _seed(repository, sample_card, open_transactions)

        async def boom(_row):
            raise LedgerStoreError("duplicate key value violates unique constraint")

        monkeypatch.setattr(repository, "insert_bill", boom)

        response = authed_client.post("/api/v1/cards/card-1/invoice/close", json={"confirm": True})

        assert response.status_code == 502
        assert response.json()["detail"].startswith("Erro ao fechar fatura: duplicate key")
        assert not any(t.is_locked for t in repository.transactions.values())
