from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Cookie, Depends, Path, Response

from asphaltworks.api.admission import user_rate_limit
from asphaltworks.api.dependencies import current_user, optional_user, verified_user
from asphaltworks.api.schemas import (
    TOKEN_PATTERN,
    AuthResponse,
    AuthStatusResponse,
    ChangePasswordRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    ProfileUpdateRequest,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
)
from asphaltworks.logging import get_correlation_id, get_logger
from asphaltworks.service.runtime import get_runtime
from asphaltworks.service.tokens import IssuedTokens
from asphaltworks.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

_FORGOT_PASSWORD_MESSAGE = (
    "if an account exists for this email, a password reset link has been sent"
)
_RESEND_MESSAGE = "if the account exists and is not verified, a verification email has been sent"


def ok(data: Any = None, message: Optional[str] = None) -> Envelope:
    return Envelope(message=message, data=data, request_id=get_correlation_id())


def _apply_token_cookies(response: Response, issued: IssuedTokens, *, refresh_ttl_minutes: int) -> None:
    response.set_cookie(
        "token",
        issued.access_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=issued.access_expires_in,
        path="/",
    )
    response.set_cookie(
        "refresh_token",
        issued.refresh_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=refresh_ttl_minutes * 60,
        path="/api/auth",
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    """Create a ``user`` account and email a verification link."""
    runtime = get_runtime()
    user = await runtime.auth.register(
        username=body.username,
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return ok(
        {"user": UserResponse.from_user(user)},
        "account created, check your email to verify your address",
    )


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Raises:
        401: invalid credentials, locked or deactivated account
        429: too many failed attempts from this IP
    """
    runtime = get_runtime()
    user, issued = await runtime.auth.login(email=body.email, password=body.password)
    _apply_token_cookies(
        response, issued, refresh_ttl_minutes=runtime.settings.refresh_token_ttl_minutes
    )
    return ok(
        AuthResponse(
            user=UserResponse.from_user(user),
            token=issued.access_token,
            refresh_token=issued.refresh_token,
            expires_in=issued.access_expires_in,
        ),
        "login successful",
    )


@router.post("/refresh-token", response_model=Envelope)
async def refresh_token(
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
):
    """Rotate the refresh token; the presented one stops working."""
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_cookie
    _, issued = await runtime.auth.refresh(presented)
    _apply_token_cookies(
        response, issued, refresh_ttl_minutes=runtime.settings.refresh_token_ttl_minutes
    )
    return ok(
        RefreshResponse(
            token=issued.access_token,
            refresh_token=issued.refresh_token,
            expires_in=issued.access_expires_in,
        ),
        "token refreshed",
    )


@router.post("/logout", response_model=Envelope)
async def logout(response: Response, user: User = Depends(current_user)):
    runtime = get_runtime()
    await runtime.auth.logout(user)
    response.delete_cookie("token", path="/")
    response.delete_cookie("refresh_token", path="/api/auth")
    return ok(message="logged out")


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return ok(message=_FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password/{token}", response_model=Envelope)
async def reset_password(
    body: ResetPasswordRequest,
    token: str = Path(..., pattern=TOKEN_PATTERN),
):
    runtime = get_runtime()
    await runtime.auth.reset_password(token, body.new_password)
    return ok(message="password has been reset, you can now log in")


@router.get("/verify-email/{token}", response_model=Envelope)
async def verify_email(token: str = Path(..., pattern=TOKEN_PATTERN)):
    runtime = get_runtime()
    user = await runtime.auth.verify_email(token)
    return ok({"user": UserResponse.from_user(user)}, "email verified")


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await runtime.auth.resend_verification(body.email)
    return ok(message=_RESEND_MESSAGE)


@router.post(
    "/change-password",
    response_model=Envelope,
    dependencies=[Depends(user_rate_limit("change-password", 5, 60 * 60))],
)
async def change_password(body: ChangePasswordRequest, user: User = Depends(verified_user)):
    runtime = get_runtime()
    await runtime.auth.change_password(
        user, current_password=body.current_password, new_password=body.new_password
    )
    return ok(message="password changed")


@router.get("/profile", response_model=Envelope)
async def get_profile(user: User = Depends(current_user)):
    return ok({"user": UserResponse.from_user(user)})


@router.put("/profile", response_model=Envelope)
async def update_profile(body: ProfileUpdateRequest, user: User = Depends(verified_user)):
    runtime = get_runtime()
    changes = body.model_dump(exclude_unset=True)
    updated = await runtime.auth.update_profile(user, changes)
    message = "profile updated"
    if updated.email != user.email:
        message = "profile updated, check your new email address to verify it"
    return ok({"user": UserResponse.from_user(updated)}, message)


@router.get("/status", response_model=Envelope)
async def auth_status(user: Optional[User] = Depends(optional_user)):
    return ok(
        AuthStatusResponse(
            authenticated=user is not None,
            user=UserResponse.from_user(user) if user else None,
        )
    )
