"""Authentication endpoints"""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_db, User
from app.errors import Unauthorized, Forbidden
from app.schemas import (
    SignInRequest, SignInResponse, VerifyOtpRequest, TokenResponse, MeResponse, UserResponse,
)
from app.services.auth_service import (
    OtpSender, get_otp_sender, initiate_signin, verify_signin,
    get_user_by_id, create_access_token, decode_access_token,
)
from app.structured_logging import set_request_context

router = APIRouter(prefix="/auth", tags=["Authentication"])
security = HTTPBearer(auto_error=False)  # Missing token is rendered as our own 401 body


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Dependency to get the current authenticated user from the Bearer token."""
    user_id = None
    if credentials and credentials.credentials:
        user_id = decode_access_token(credentials.credentials)

    if not user_id:
        raise Unauthorized()

    user = await get_user_by_id(db, user_id)
    if not user:
        raise Unauthorized("User not found")
    if not user.is_active:
        raise Forbidden("User account is disabled")

    set_request_context(user_id=user.id)
    return user


@router.post("/initiate_signin", response_model=SignInResponse)
async def initiate_signin_endpoint(
    request: SignInRequest,
    db: AsyncSession = Depends(get_db),
    sender: OtpSender = Depends(get_otp_sender),
):
    """Send a one-time sign-in code, creating the account on first use."""
    code = await initiate_signin(db, request.email)
    await sender.send(request.email, code)
    return SignInResponse(message="A sign-in code has been sent to your email")


@router.post("/signin", response_model=TokenResponse)
async def signin(
    request: VerifyOtpRequest,
    db: AsyncSession = Depends(get_db),
):
    """Exchange a one-time code for an access token."""
    user = await verify_signin(db, request.email, request.otp)
    return TokenResponse(token=create_access_token(user.id))


@router.get("/me", response_model=MeResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Get current user info"""
    return MeResponse(user=UserResponse.model_validate(current_user))
