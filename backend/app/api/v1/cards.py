"""Credit card invoice endpoints."""

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from app.auth import CurrentUser
from app.models.finance import InvoiceCloseResult, InvoiceSummary
from app.services.invoice_service import (
    CardNotFoundError,
    ConfirmationRequiredError,
    InvoiceService,
    NothingToCloseError,
    TransactionsAlreadyLockedError,
)
from app.services.ledger_repository import LedgerStoreError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/cards", tags=["cards"])


class CloseInvoiceRequest(BaseModel):
    """Invoice close request."""

    confirm: bool = Field(default=False, description="User confirmed the amount to close")


def _get_invoice_service(request: Request) -> InvoiceService:
    service = getattr(request.app.state, "invoice_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Serviço de faturas indisponível")
    return service


@router.get("/{card_id}/invoice", response_model=InvoiceSummary)
async def open_invoice(card_id: str, request: Request, user: CurrentUser) -> InvoiceSummary:
    """Open transactions of the card, their total and the due date a close would get."""
    service = _get_invoice_service(request)
    try:
        return await service.get_open_invoice(card_id, user_id=user.id)
    except CardNotFoundError:
        raise HTTPException(status_code=404, detail="Cartão não encontrado")
    except LedgerStoreError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/{card_id}/invoice/close", response_model=InvoiceCloseResult)
async def close_invoice(
    card_id: str,
    body: CloseInvoiceRequest,
    request: Request,
    user: CurrentUser,
) -> InvoiceCloseResult:
    """Close the card's open invoice into a pending bill and lock its transactions."""
    service = _get_invoice_service(request)
    try:
        return await service.close_invoice(user.id, card_id, confirmed=body.confirm)
    except CardNotFoundError:
        raise HTTPException(status_code=404, detail="Cartão não encontrado")
    except NothingToCloseError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (ConfirmationRequiredError, TransactionsAlreadyLockedError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except LedgerStoreError as e:
        logger.warning("invoice_close_store_error", card_id=card_id, error=str(e))
        raise HTTPException(status_code=502, detail=f"Erro ao fechar fatura: {e}")
