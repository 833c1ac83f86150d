"""KYC endpoints: Bridge customer creation, hosted KYC link and status sync."""

import logging

from fastapi import APIRouter, Depends

from kalypso_api.auth.session_auth import AuthContext, get_current_user
from kalypso_api.routers.deps import service_provider
from kalypso_api.schemas import CustomerUpdateRequest, KycInitiateRequest, KycSyncResponse
from kalypso_api.services.customers import CustomerService

router = APIRouter(prefix="/api/bridge/kyc", tags=["kyc"])
logger = logging.getLogger(__name__)

get_customer_service = service_provider(CustomerService)


@router.post("/initiate")
async def initiate_kyc(
    body: KycInitiateRequest | None = None,
    auth: AuthContext = Depends(get_current_user),
    service: CustomerService = Depends(get_customer_service),
) -> dict:
    """Create the Bridge customer if needed and return the hosted KYC link."""
    profile = body.model_dump(exclude_none=True) if body else None
    return await service.initiate_kyc(auth.user_id, profile)


@router.get("/status")
async def get_kyc_status(
    auth: AuthContext = Depends(get_current_user),
    service: CustomerService = Depends(get_customer_service),
) -> dict:
    return await service.get_kyc_status(auth.user_id)


@router.post("/sync", response_model=KycSyncResponse)
async def sync_kyc_status(
    auth: AuthContext = Depends(get_current_user),
    service: CustomerService = Depends(get_customer_service),
) -> KycSyncResponse:
    """Pull the customer from Bridge and apply its status to the local user.

    Used when a ``customer.updated`` webhook was missed.
    """
    result = await service.sync_customer_status(auth.user_id)
    return KycSyncResponse(
        previous_status=result.previous_status,
        kyc_status=result.status,
        kyc_tier=result.tier,
        status_changed=result.status_changed,
    )


@router.put("/customer")
async def update_customer(
    body: CustomerUpdateRequest,
    auth: AuthContext = Depends(get_current_user),
    service: CustomerService = Depends(get_customer_service),
) -> dict:
    return await service.update_customer(auth.user_id, body.model_dump(exclude_none=True))
