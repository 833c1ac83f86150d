"""Transfer endpoints.

Clients should send an ``Idempotency-Key`` header when creating a transfer and
reuse it on retry; without one a fresh key is generated per request.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, status

from kalypso_api.auth.session_auth import AuthContext, get_current_user
from kalypso_api.routers.deps import service_provider
from kalypso_api.schemas import TransferCreateRequest, TransferOut
from kalypso_api.services.transfers import TransferService

router = APIRouter(prefix="/api/bridge/transfers", tags=["transfers"])

get_transfer_service = service_provider(TransferService)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=TransferOut)
async def create_transfer(
    body: TransferCreateRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    auth: AuthContext = Depends(get_current_user),
    service: TransferService = Depends(get_transfer_service),
):
    return await service.create_transfer(
        auth.user_id, body.model_dump(), idempotency_key=idempotency_key
    )


@router.get("", response_model=list[TransferOut])
async def list_transfers(
    type_filter: Optional[str] = Query(None, alias="type"),
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(get_current_user),
    service: TransferService = Depends(get_transfer_service),
):
    """Newest first, optionally filtered by type and status."""
    return service.list_transfers(
        auth.user_id, kind=type_filter, status=status_filter, limit=limit, offset=offset
    )


@router.get("/{transfer_id}", response_model=TransferOut)
async def get_transfer(
    transfer_id: str,
    refresh: bool = Query(True, description="Fetch the current state from Bridge first"),
    auth: AuthContext = Depends(get_current_user),
    service: TransferService = Depends(get_transfer_service),
):
    if refresh:
        return await service.get_transfer_status(auth.user_id, transfer_id)
    return service.get_transfer(auth.user_id, transfer_id)


@router.post("/{transfer_id}/cancel", response_model=TransferOut)
async def cancel_transfer(
    transfer_id: str,
    auth: AuthContext = Depends(get_current_user),
    service: TransferService = Depends(get_transfer_service),
):
    return service.cancel_transfer(auth.user_id, transfer_id)
