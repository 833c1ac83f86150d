"""Custodial wallet endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from kalypso_api.auth.session_auth import AuthContext, get_current_user
from kalypso_api.routers.deps import service_provider
from kalypso_api.schemas import WalletBalanceOut, WalletCreateRequest, WalletOut
from kalypso_api.services.wallets import WalletService

router = APIRouter(prefix="/api/bridge/wallets", tags=["wallets"])

get_wallet_service = service_provider(WalletService)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=WalletOut)
async def create_wallet(
    body: WalletCreateRequest,
    auth: AuthContext = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
):
    return await service.create_wallet(auth.user_id, body.wallet_type, body.chain)


@router.get("", response_model=list[WalletOut])
async def list_wallets(
    status_filter: Optional[str] = Query(None, alias="status"),
    auth: AuthContext = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
):
    return service.list_wallets(auth.user_id, status=status_filter)


@router.get("/total-balances")
async def get_total_balances(
    auth: AuthContext = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
) -> list[dict]:
    """Platform-wide totals as reported by Bridge (not scoped to the caller)."""
    return await service.get_total_balances()


@router.get("/{wallet_id}", response_model=WalletOut)
async def get_wallet(
    wallet_id: str,
    auth: AuthContext = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
):
    return service.get_wallet(auth.user_id, wallet_id)


@router.get("/{wallet_id}/balances", response_model=list[WalletBalanceOut])
async def get_wallet_balances(
    wallet_id: str,
    auth: AuthContext = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
):
    return service.list_balances(auth.user_id, wallet_id)


@router.post("/{wallet_id}/refresh", response_model=list[WalletBalanceOut])
async def refresh_wallet_balances(
    wallet_id: str,
    auth: AuthContext = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
):
    """Recompute balances from Bridge history."""
    service.get_wallet(auth.user_id, wallet_id)
    return await service.refresh_balance(wallet_id)


@router.get("/{wallet_id}/history")
async def get_wallet_history(
    wallet_id: str,
    limit: int = Query(50, ge=1, le=1000),
    updated_after_ms: Optional[int] = Query(None, ge=0),
    updated_before_ms: Optional[int] = Query(None, ge=0),
    auth: AuthContext = Depends(get_current_user),
    service: WalletService = Depends(get_wallet_service),
) -> list[dict]:
    service.get_wallet(auth.user_id, wallet_id)
    return await service.get_wallet_history(
        wallet_id,
        limit=limit,
        updated_after_ms=updated_after_ms,
        updated_before_ms=updated_before_ms,
    )
