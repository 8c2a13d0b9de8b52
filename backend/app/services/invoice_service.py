"""
Credit card invoice closing.

Turns a card's open (unlocked) transactions into one pending bill and locks
them so a later close cannot count them again.

Order of writes:
  1. lock the open transactions with a conditional update (only rows still
     unlocked are flipped); if any was already locked, undo and abort
  2. insert the bill; if that fails, unlock what step 1 locked
Closes of the same card are serialized in-process by a per-card lock.
"""

import asyncio
from collections import defaultdict
from collections.abc import Callable
from datetime import date
from decimal import Decimal

import structlog

from app.constants import INVOICE_BILL_CATEGORY, INVOICE_DESCRIPTION_TEMPLATE
from app.models.finance import (
    BillStatus,
    CreditCard,
    InvoiceCloseResult,
    InvoiceSummary,
    Transaction,
)
from app.services.finance_calculator import compute_invoice_due_date, invoice_month_label
from app.services.ledger_repository import LedgerRepository

logger = structlog.get_logger(__name__)


class CardNotFoundError(LookupError):
    """No credit card with the given id."""


class InvoiceCloseError(ValueError):
    """An invoice close was refused before anything was written."""


class NothingToCloseError(InvoiceCloseError):
    def __init__(self) -> None:
        super().__init__("Não há valor para fechar nesta fatura.")


class ConfirmationRequiredError(InvoiceCloseError):
    def __init__(self, amount: Decimal) -> None:
        self.amount = amount
        super().__init__(
            f"Deseja fechar a fatura no valor de R$ {amount:.2f}? Isso gerará uma Conta a Pagar."
        )


class TransactionsAlreadyLockedError(InvoiceCloseError):
    def __init__(self, transaction_ids: list[str]) -> None:
        self.transaction_ids = transaction_ids
        super().__init__("Fatura já fechada por outra operação; atualize e tente novamente.")


def open_transactions_for_card(card: CreditCard, transactions: list[Transaction]) -> list[Transaction]:
    """Unlocked transactions of this card, newest first."""
    rows = [t for t in transactions if t.credit_card_id == card.id and not t.is_locked]
    rows.sort(key=lambda t: t.date, reverse=True)
    return rows


class InvoiceService:
    """Reads and closes credit card invoices."""

    def __init__(self, repository: LedgerRepository, today_provider: Callable[[], date]) -> None:
        self.repository = repository
        self.today_provider = today_provider
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_open_invoice(
        self, card_id: str, *, user_id: str | None = None, today: date | None = None
    ) -> InvoiceSummary:
        card = await self.repository.get_credit_card(card_id)
        if card is None or (user_id and card.user_id and card.user_id != user_id):
            raise CardNotFoundError(card_id)

        transactions = await self.repository.list_card_transactions(card_id)
        open_rows = open_transactions_for_card(card, transactions)
        total_open = sum((t.amount for t in open_rows), Decimal("0"))

        return InvoiceSummary(
            card=card,
            open_transactions=open_rows,
            total_open=total_open,
            available_limit=card.limit_amount - total_open,
            due_date=compute_invoice_due_date(today or self.today_provider(), card.closing_day, card.due_day),
        )

    async def close_invoice(self, user_id: str, card_id: str, *, confirmed: bool) -> InvoiceCloseResult:
        """Create the payable for a card's open transactions and lock them.

        Raises:
            CardNotFoundError: unknown card.
            NothingToCloseError: open total is zero or negative.
            ConfirmationRequiredError: caller did not confirm the amount.
            TransactionsAlreadyLockedError: a concurrent close got there first.
            LedgerStoreError: a store call failed.
        """
        async with self._locks[card_id]:
            today = self.today_provider()
            invoice = await self.get_open_invoice(card_id, user_id=user_id, today=today)

            if invoice.total_open <= 0:
                raise NothingToCloseError()
            if not confirmed:
                raise ConfirmationRequiredError(invoice.total_open)

            transaction_ids = [t.id for t in invoice.open_transactions]
            locked = await self.repository.lock_transactions(transaction_ids)
            if set(locked) != set(transaction_ids):
                await self.repository.unlock_transactions(locked)
                already_locked = sorted(set(transaction_ids) - set(locked))
                logger.warning(
                    "invoice_close_conflict",
                    card_id=card_id,
                    already_locked=already_locked,
                )
                raise TransactionsAlreadyLockedError(already_locked)

            description = INVOICE_DESCRIPTION_TEMPLATE.format(
                card_name=invoice.card.name, month=invoice_month_label(today)
            )
            try:
                bill = await self.repository.insert_bill(
                    {
                        "user_id": user_id,
                        "description": description,
                        "category": INVOICE_BILL_CATEGORY,
                        "amount": str(invoice.total_open),
                        "due_date": invoice.due_date.isoformat(),
                        "status": BillStatus.PENDING.value,
                    }
                )
            except Exception:
                logger.exception("invoice_bill_insert_failed", card_id=card_id)
                await self.repository.unlock_transactions(locked)
                raise

            logger.info(
                "invoice_closed",
                card_id=card_id,
                bill_id=bill.id,
                amount=str(invoice.total_open),
                due_date=invoice.due_date.isoformat(),
                transactions=len(locked),
            )
            return InvoiceCloseResult(
                bill=bill,
                locked_transaction_ids=locked,
                amount=invoice.total_open,
                due_date=invoice.due_date,
            )
