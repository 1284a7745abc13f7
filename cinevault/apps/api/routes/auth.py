from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.apps.api.deps import Principal, get_current_principal, get_db, optional_bearer_token
from cinevault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from cinevault.apps.api.response import SuccessEnvelope, success_response
from cinevault.domain.models import User
from cinevault.services.auth.sessions import issue_session_token, sign_in, sign_out, sign_out_everywhere
from cinevault.services.identity import RegistrationRequest, register_identity
from cinevault.services.notifications import dispatch_effects, whatsapp_opt_in


router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(max_length=256)
    first_name: str = Field(max_length=128)
    last_name: str = Field(max_length=128)
    mobile_number: str = Field(max_length=32)


class SignInRequest(BaseModel):
    email: str | None = None
    password: str | None = None
    push_token: str | None = Field(default=None, max_length=4096)


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    mobile_number: str
    role: str
    created_at: datetime | None
    updated_at: datetime | None


class AuthTokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserResponse


class RegisterResponse(AuthTokenResponse):
    whatsapp_opt_in_required: bool


class SignOutResponse(BaseModel):
    status: str


class SignOutEverywhereResponse(BaseModel):
    status: str
    token_epoch: int


def user_payload(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        mobile_number=user.mobile_number,
        role=user.role,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


@router.post("/register", status_code=201, response_model=SuccessEnvelope[RegisterResponse])
async def register(
    request: Request,
    payload: RegisterRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Public sign-up always creates standard identities.
    user = await register_identity(
        db,
        RegistrationRequest(
            email=payload.email,
            password=payload.password,
            first_name=payload.first_name,
            last_name=payload.last_name,
            mobile_number=payload.mobile_number,
        ),
    )
    issued = issue_session_token(user)
    background_tasks.add_task(dispatch_effects, [whatsapp_opt_in(user.id)])
    data = RegisterResponse(
        token=issued.token,
        expires_at=issued.expires_at,
        user=user_payload(user),
        whatsapp_opt_in_required=True,
    )
    return success_response(request=request, data=data)


@router.post("/sign_in", response_model=SuccessEnvelope[AuthTokenResponse])
async def sign_in_route(
    request: Request,
    payload: SignInRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await sign_in(
        db,
        email=payload.email,
        password=payload.password,
        push_token=payload.push_token,
    )
    data = AuthTokenResponse(
        token=result.token.token,
        expires_at=result.token.expires_at,
        user=user_payload(result.identity),
    )
    return success_response(request=request, data=data)


@router.delete("/sign_out", response_model=SuccessEnvelope[SignOutResponse])
async def sign_out_route(
    request: Request,
    token: str | None = Depends(optional_bearer_token),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Idempotent: a dead or missing token reports already_signed_out.
    result = await sign_out(db, token)
    return success_response(request=request, data=SignOutResponse(status=result.status))


@router.post("/sign_out_everywhere", response_model=SuccessEnvelope[SignOutEverywhereResponse])
async def sign_out_everywhere_route(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    epoch = await sign_out_everywhere(db, principal.identity_id)
    data = SignOutEverywhereResponse(status="signed_out", token_epoch=epoch)
    return success_response(request=request, data=data)
