from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import get_current_user
from cms.models import User
from cms.responses import api_success
from cms.schemas import (
    ForgotPasswordRequest,
    LoginRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UpdateProfileRequest,
)
from cms.services import auth_service, user_service

router = APIRouter(prefix="/api/v1", tags=["auth"])


@router.post("/auth/register")
async def register(data: RegisterRequest, db: AsyncSession = Depends(get_db)):
    user = await auth_service.register(db, data)
    payload = await user_service.get_user_payload(db, user.id)
    return api_success(payload, "Registration successful.", status_code=201)


@router.post("/auth/login")
async def login(data: LoginRequest, db: AsyncSession = Depends(get_db)):
    tokens = await auth_service.login(db, data.email, data.password)
    return api_success(tokens, "Login successful.")


@router.post("/auth/refresh")
async def refresh(data: RefreshTokenRequest, db: AsyncSession = Depends(get_db)):
    tokens = await auth_service.refresh_access_token(db, data.refresh_token)
    return api_success(tokens, "Token refreshed successfully.")


@router.post("/auth/logout")
async def logout(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    await auth_service.logout(db, user.id)
    return api_success(None, "Logout successful.")


@router.post("/auth/forgot-password")
async def forgot_password(data: ForgotPasswordRequest, db: AsyncSession = Depends(get_db)):
    await auth_service.forgot_password(db, data.email)
    return api_success(None, "If that email is registered, a password reset link has been sent.")


@router.post("/auth/reset-password")
async def reset_password(data: ResetPasswordRequest, db: AsyncSession = Depends(get_db)):
    await auth_service.reset_password(db, data.email, data.token, data.password)
    return api_success(None, "Password has been reset successfully.")


@router.get("/me", tags=["profile"])
async def me(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return api_success(await user_service.get_user_payload(db, user.id))


@router.put("/profile", tags=["profile"])
async def update_profile(
    data: UpdateProfileRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    payload = await user_service.update_profile(db, user, data)
    return api_success(payload, "Profile updated successfully.")
