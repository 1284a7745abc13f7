from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.apps.api.deps import get_capabilities, get_db
from cinevault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from cinevault.apps.api.response import SuccessEnvelope, success_response
from cinevault.apps.api.routes.auth import UserResponse, user_payload
from cinevault.core.errors import StaleIdentityError
from cinevault.services.capabilities import Capabilities
from cinevault.services.identity import get_identity, update_profile, update_push_token


router = APIRouter(prefix="/users", tags=["users"], responses=DEFAULT_ERROR_RESPONSES)


class MeResponse(BaseModel):
    user: UserResponse
    plan: str
    subscription_status: str
    can_access_premium: bool
    has_push_token: bool


class ProfileUpdateRequest(BaseModel):
    # Omitted fields stay unchanged.
    first_name: str | None = Field(default=None, max_length=128)
    last_name: str | None = Field(default=None, max_length=128)
    mobile_number: str | None = Field(default=None, max_length=32)


class PushTokenRequest(BaseModel):
    # null clears the binding.
    push_token: str | None = Field(default=None, max_length=4096)


class PushTokenResponse(BaseModel):
    message: str
    has_push_token: bool


@router.get("/me", response_model=SuccessEnvelope[MeResponse])
async def me(
    request: Request,
    capabilities: Capabilities = Depends(get_capabilities),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await get_identity(db, capabilities.identity_id)
    if user is None:
        raise StaleIdentityError()
    data = MeResponse(
        user=user_payload(user),
        plan=capabilities.plan,
        subscription_status=capabilities.status,
        can_access_premium=capabilities.can_access_premium,
        has_push_token=user.push_token is not None,
    )
    return success_response(request=request, data=data)


@router.patch("/me", response_model=SuccessEnvelope[UserResponse])
async def update_me(
    request: Request,
    payload: ProfileUpdateRequest,
    capabilities: Capabilities = Depends(get_capabilities),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await update_profile(
        db,
        capabilities.identity_id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        mobile_number=payload.mobile_number,
    )
    return success_response(request=request, data=user_payload(user))


@router.patch("/me/push_token", response_model=SuccessEnvelope[PushTokenResponse])
async def update_my_push_token(
    request: Request,
    payload: PushTokenRequest,
    capabilities: Capabilities = Depends(get_capabilities),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await update_push_token(db, capabilities.identity_id, payload.push_token)
    data = PushTokenResponse(message="Push token updated", has_push_token=user.push_token is not None)
    return success_response(request=request, data=data)
