"""Liquidation address endpoints."""

from fastapi import APIRouter, Depends, Query, status

from kalypso_api.auth.session_auth import AuthContext, get_current_user
from kalypso_api.routers.deps import service_provider
from kalypso_api.schemas import (
    LiquidationAddressCreateRequest,
    LiquidationAddressOut,
    MirrorStatusRequest,
)
from kalypso_api.services.liquidation import LiquidationService, supported_options

router = APIRouter(prefix="/api/bridge/liquidation", tags=["liquidation"])

get_liquidation_service = service_provider(LiquidationService)


# Registered before /{address_id} so "options" is not taken as an ID.
@router.get("/options")
async def get_liquidation_options() -> dict[str, list[str]]:
    return supported_options()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=LiquidationAddressOut)
async def create_liquidation_address(
    body: LiquidationAddressCreateRequest,
    auth: AuthContext = Depends(get_current_user),
    service: LiquidationService = Depends(get_liquidation_service),
):
    return await service.create_liquidation_address(
        auth.user_id, body.currency, body.chain, external_account_id=body.external_account_id
    )


@router.get("", response_model=list[LiquidationAddressOut])
async def list_liquidation_addresses(
    auth: AuthContext = Depends(get_current_user),
    service: LiquidationService = Depends(get_liquidation_service),
):
    return service.list_liquidation_addresses(auth.user_id)


@router.get("/{address_id}", response_model=LiquidationAddressOut)
async def get_liquidation_address(
    address_id: str,
    refresh: bool = Query(False),
    auth: AuthContext = Depends(get_current_user),
    service: LiquidationService = Depends(get_liquidation_service),
):
    if refresh:
        return await service.get_liquidation_address(auth.user_id, address_id)
    return service.get_owned(auth.user_id, address_id)


@router.patch("/{address_id}", response_model=LiquidationAddressOut)
async def update_liquidation_address_status(
    address_id: str,
    body: MirrorStatusRequest,
    auth: AuthContext = Depends(get_current_user),
    service: LiquidationService = Depends(get_liquidation_service),
):
    service.get_owned(auth.user_id, address_id)
    return service.update_status(address_id, body.status)
