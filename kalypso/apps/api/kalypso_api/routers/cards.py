"""Card endpoints. ``card_id`` is the local card ID."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from kalypso_api.auth.session_auth import AuthContext, get_current_user
from kalypso_api.routers.deps import service_provider
from kalypso_api.schemas import (
    CardActivateRequest,
    CardControlsRequest,
    CardCreateRequest,
    CardLimitsRequest,
    CardOut,
    CardReasonRequest,
    CardTransactionOut,
)
from kalypso_api.services.cards import CardService

router = APIRouter(prefix="/api/bridge/cards", tags=["cards"])

get_card_service = service_provider(CardService)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=CardOut)
async def create_card(
    body: CardCreateRequest,
    auth: AuthContext = Depends(get_current_user),
    service: CardService = Depends(get_card_service),
):
    return await service.create_card(
        auth.user_id, card_type=body.card_type, cardholder_name=body.cardholder_name, brand=body.brand
    )


@router.get("", response_model=list[CardOut])
async def list_cards(
    status_filter: Optional[str] = Query(None, alias="status"),
    auth: AuthContext = Depends(get_current_user),
    service: CardService = Depends(get_card_service),
):
    return service.list_cards(auth.user_id, status=status_filter)


@router.get("/{card_id}", response_model=CardOut)
async def get_card(
    card_id: str,
    refresh: bool = Query(False),
    auth: AuthContext = Depends(get_current_user),
    service: CardService = Depends(get_card_service),
):
    if refresh:
        return await service.refresh_card(auth.user_id, card_id)
    return service.get_card(auth.user_id, card_id)


@router.post("/{card_id}/activate", response_model=CardOut)
async def activate_card(
    card_id: str,
    body: CardActivateRequest | None = None,
    auth: AuthContext = Depends(get_current_user),
    service: CardService = Depends(get_card_service),
):
    code = body.activation_code if body else None
    return await service.activate_card(auth.user_id, card_id, code)


@router.post("/{card_id}/freeze", response_model=CardOut)
async def freeze_card(
    card_id: str,
    body: CardReasonRequest | None = None,
    auth: AuthContext = Depends(get_current_user),
    service: CardService = Depends(get_card_service),
):
    reason = body.reason if body else "user_requested"
    return await service.freeze_card(auth.user_id, card_id, reason)


@router.post("/{card_id}/unfreeze", response_model=CardOut)
async def unfreeze_card(
    card_id: str,
    auth: AuthContext = Depends(get_current_user),
    service: CardService = Depends(get_card_service),
):
    return await service.unfreeze_card(auth.user_id, card_id)


@router.put("/{card_id}/limits", response_model=CardOut)
async def update_spending_limits(
    card_id: str,
    body: CardLimitsRequest,
    auth: AuthContext = Depends(get_current_user),
    service: CardService = Depends(get_card_service),
):
    return await service.update_spending_limits(auth.user_id, card_id, body.model_dump(exclude_none=True))


@router.put("/{card_id}/controls", response_model=CardOut)
async def update_card_controls(
    card_id: str,
    body: CardControlsRequest,
    auth: AuthContext = Depends(get_current_user),
    service: CardService = Depends(get_card_service),
):
    return await service.update_card_controls(auth.user_id, card_id, body.model_dump(exclude_none=True))


@router.post("/{card_id}/cancel", response_model=CardOut)
async def cancel_card(
    card_id: str,
    body: CardReasonRequest | None = None,
    auth: AuthContext = Depends(get_current_user),
    service: CardService = Depends(get_card_service),
):
    reason = body.reason if body else "user_requested"
    return await service.cancel_card(auth.user_id, card_id, reason)


@router.get("/{card_id}/transactions", response_model=list[CardTransactionOut])
async def get_card_transactions(
    card_id: str,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(get_current_user),
    service: CardService = Depends(get_card_service),
):
    return service.get_card_transactions(auth.user_id, card_id, limit=limit, offset=offset)


@router.get("/{card_id}/sensitive")
async def get_sensitive_card_data(
    card_id: str,
    auth: AuthContext = Depends(get_current_user),
    service: CardService = Depends(get_card_service),
) -> dict:
    """PAN and CVV straight from Bridge. Never cached or persisted."""
    return await service.get_sensitive_data(auth.user_id, card_id)
