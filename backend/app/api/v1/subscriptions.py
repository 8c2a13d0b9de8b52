"""Subscription API endpoints: list/CRUD, bill sync and bill history."""

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel

from app.auth import CurrentUser
from app.models.finance import (
    Bill,
    IntegrityRow,
    Subscription,
    SubscriptionCreate,
    SubscriptionListResponse,
    SubscriptionStats,
    SubscriptionUpdate,
    SyncState,
)
from app.services.ledger_repository import LedgerStoreError
from app.services.subscription_service import SubscriptionNotFoundError, SubscriptionService
from app.services.subscription_sync import SubscriptionBillSync

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class SyncSubscriptionResponse(BaseModel):
    """Result of forcing the next bill of one subscription."""

    subscription_id: str
    bill_id: str | None = None


class SyncAllResponse(BaseModel):
    """Result of the bulk bill generation procedure (opaque)."""

    result: Any = None


class CancelSyncResponse(BaseModel):
    cancelled: bool


def _get_subscription_service(request: Request) -> SubscriptionService:
    service = getattr(request.app.state, "subscription_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Serviço de assinaturas indisponível")
    return service


def _get_sync(request: Request) -> SubscriptionBillSync:
    sync = getattr(request.app.state, "subscription_sync", None)
    if sync is None:
        raise HTTPException(status_code=503, detail="Serviço de sincronização indisponível")
    return sync


def _store_error(e: LedgerStoreError) -> HTTPException:
    return HTTPException(status_code=502, detail=str(e))


def _not_found(subscription_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Assinatura '{subscription_id}' não encontrada")


@router.get("", response_model=SubscriptionListResponse)
async def list_subscriptions(request: Request, user: CurrentUser) -> SubscriptionListResponse:
    """Subscriptions with monthly/yearly totals; starts a background bill sync."""
    service = _get_subscription_service(request)
    try:
        return await service.list_subscriptions(user.id)
    except LedgerStoreError as e:
        raise _store_error(e)


@router.post("", response_model=Subscription, status_code=201)
async def create_subscription(
    body: SubscriptionCreate,
    request: Request,
    user: CurrentUser,
) -> Subscription:
    service = _get_subscription_service(request)
    try:
        return await service.add_subscription(user.id, body)
    except LedgerStoreError as e:
        raise _store_error(e)


@router.post("/sync", response_model=SyncAllResponse)
async def sync_all_subscriptions(request: Request, _user: CurrentUser) -> SyncAllResponse:
    """Generate bills for every active subscription charging in the next 7 days."""
    sync = _get_sync(request)
    try:
        return SyncAllResponse(result=await sync.sync_all_subscriptions())
    except LedgerStoreError as e:
        raise _store_error(e)


@router.get("/sync/status", response_model=SyncState)
async def background_sync_status(request: Request, user: CurrentUser) -> SyncState:
    """Status of the background sync; result and error only for the user who started it."""
    return _get_subscription_service(request).background_sync.state_for(user.id)


@router.delete("/sync", response_model=CancelSyncResponse)
async def cancel_background_sync(request: Request, user: CurrentUser) -> CancelSyncResponse:
    """Cancel the background sync, if the caller started it."""
    service = _get_subscription_service(request)
    return CancelSyncResponse(cancelled=await service.background_sync.cancel(user.id))


@router.get("/integrity", response_model=list[IntegrityRow])
async def check_integrity(request: Request, user: CurrentUser) -> list[IntegrityRow]:
    """Diagnostic: the caller's subscriptions and the state of their bills."""
    sync = _get_sync(request)
    try:
        return await sync.check_integrity(user.id)
    except LedgerStoreError as e:
        raise _store_error(e)


@router.get("/{subscription_id}", response_model=Subscription)
async def get_subscription(subscription_id: str, request: Request, user: CurrentUser) -> Subscription:
    service = _get_subscription_service(request)
    try:
        return await service.get_subscription(user.id, subscription_id)
    except SubscriptionNotFoundError:
        raise _not_found(subscription_id)
    except LedgerStoreError as e:
        raise _store_error(e)


@router.patch("/{subscription_id}", response_model=Subscription)
async def update_subscription(
    subscription_id: str,
    body: SubscriptionUpdate,
    request: Request,
    user: CurrentUser,
) -> Subscription:
    service = _get_subscription_service(request)
    try:
        return await service.update_subscription(user.id, subscription_id, body)
    except SubscriptionNotFoundError:
        raise _not_found(subscription_id)
    except LedgerStoreError as e:
        raise _store_error(e)


@router.delete("/{subscription_id}", status_code=204)
async def delete_subscription(subscription_id: str, request: Request, user: CurrentUser) -> Response:
    service = _get_subscription_service(request)
    try:
        await service.delete_subscription(user.id, subscription_id)
    except SubscriptionNotFoundError:
        raise _not_found(subscription_id)
    except LedgerStoreError as e:
        raise _store_error(e)
    return Response(status_code=204)


@router.post("/{subscription_id}/toggle", response_model=Subscription)
async def toggle_subscription(subscription_id: str, request: Request, user: CurrentUser) -> Subscription:
    """Pause an active subscription or reactivate a paused/cancelled one."""
    service = _get_subscription_service(request)
    try:
        return await service.toggle_status(user.id, subscription_id)
    except SubscriptionNotFoundError:
        raise _not_found(subscription_id)
    except LedgerStoreError as e:
        raise _store_error(e)


async def _sync_for_owned(request: Request, user_id: str, subscription_id: str) -> SubscriptionBillSync:
    """Sync facade, after checking the subscription belongs to the caller."""
    service = _get_subscription_service(request)
    sync = _get_sync(request)
    try:
        await service.get_subscription(user_id, subscription_id)
    except SubscriptionNotFoundError:
        raise _not_found(subscription_id)
    except LedgerStoreError as e:
        raise _store_error(e)
    return sync


@router.post("/{subscription_id}/sync", response_model=SyncSubscriptionResponse)
async def sync_subscription(
    subscription_id: str, request: Request, user: CurrentUser
) -> SyncSubscriptionResponse:
    """Force generation of the next bill of one subscription."""
    sync = await _sync_for_owned(request, user.id, subscription_id)
    try:
        bill_id = await sync.sync_subscription(subscription_id)
    except LedgerStoreError as e:
        raise _store_error(e)
    return SyncSubscriptionResponse(subscription_id=subscription_id, bill_id=bill_id)


@router.get("/{subscription_id}/bills", response_model=list[Bill])
async def subscription_bills(subscription_id: str, request: Request, user: CurrentUser) -> list[Bill]:
    """Bill history, newest due date first."""
    sync = await _sync_for_owned(request, user.id, subscription_id)
    try:
        return await sync.get_subscription_bills(subscription_id)
    except LedgerStoreError as e:
        raise _store_error(e)


@router.get("/{subscription_id}/bills/pending", response_model=Bill | None)
async def pending_bill(subscription_id: str, request: Request, user: CurrentUser) -> Bill | None:
    """Soonest pending or overdue bill, or null."""
    sync = await _sync_for_owned(request, user.id, subscription_id)
    try:
        return await sync.get_pending_bill(subscription_id)
    except LedgerStoreError as e:
        raise _store_error(e)


@router.get("/{subscription_id}/stats", response_model=SubscriptionStats)
async def subscription_stats(
    subscription_id: str, request: Request, user: CurrentUser
) -> SubscriptionStats:
    sync = await _sync_for_owned(request, user.id, subscription_id)
    try:
        return await sync.get_subscription_stats(subscription_id)
    except LedgerStoreError as e:
        raise _store_error(e)
