"""Virtual bank account endpoints."""

from fastapi import APIRouter, Depends, Query, status

from kalypso_api.auth.session_auth import AuthContext, get_current_user
from kalypso_api.routers.deps import service_provider
from kalypso_api.schemas import MirrorStatusRequest, VirtualAccountOut
from kalypso_api.services.virtual_accounts import VirtualAccountService

router = APIRouter(prefix="/api/bridge/virtual-accounts", tags=["virtual-accounts"])

get_virtual_account_service = service_provider(VirtualAccountService)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=VirtualAccountOut)
async def create_virtual_account(
    auth: AuthContext = Depends(get_current_user),
    service: VirtualAccountService = Depends(get_virtual_account_service),
):
    return await service.create_virtual_account(auth.user_id)


@router.get("", response_model=list[VirtualAccountOut])
async def list_virtual_accounts(
    auth: AuthContext = Depends(get_current_user),
    service: VirtualAccountService = Depends(get_virtual_account_service),
):
    return service.list_virtual_accounts(auth.user_id)


@router.get("/{account_id}", response_model=VirtualAccountOut)
async def get_virtual_account(
    account_id: str,
    refresh: bool = Query(False),
    auth: AuthContext = Depends(get_current_user),
    service: VirtualAccountService = Depends(get_virtual_account_service),
):
    if refresh:
        return await service.get_virtual_account(auth.user_id, account_id)
    return service.get_owned(auth.user_id, account_id)


@router.patch("/{account_id}", response_model=VirtualAccountOut)
async def update_virtual_account_status(
    account_id: str,
    body: MirrorStatusRequest,
    auth: AuthContext = Depends(get_current_user),
    service: VirtualAccountService = Depends(get_virtual_account_service),
):
    service.get_owned(auth.user_id, account_id)
    return service.update_status(account_id, body.status)
