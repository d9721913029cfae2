"""
Auth Routes - Signup with email OTP, login, password reset and profile.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status

from chatbot.api.dependencies import get_auth_service, get_current_user_id
from chatbot.models.api import (
    ApiResponse,
    DeletedResponse,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    OTPDispatchResponse,
    ResetPasswordRequest,
    SignupRequest,
    UpdateProfileRequest,
    UserResponse,
    VerifyOTPRequest,
)
from chatbot.models.domain import OTPDispatch, UserData
from chatbot.services.auth import AuthService

router = APIRouter()


def user_response(user: UserData) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        credits=user.credits,
        is_verified=user.is_verified,
        created_at=user.created_at,
    )


def dispatch_response(dispatch: OTPDispatch) -> OTPDispatchResponse:
    return OTPDispatchResponse(
        email=dispatch.email,
        expires_at=dispatch.expires_at,
        email_sent=dispatch.delivered,
        otp=dispatch.code,
    )


# ============================================================================
# Signup
# ============================================================================


@router.post(
    "/auth/signup",
    response_model=ApiResponse[OTPDispatchResponse],
    status_code=status.HTTP_201_CREATED,
)
async def signup(
    request: SignupRequest,
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[OTPDispatchResponse]:
    """Register an unverified account and email a verification code."""
    dispatch = await auth.initiate_signup(request.name, request.email, request.password)
    return ApiResponse(
        data=dispatch_response(dispatch),
        message="OTP sent to your email. Please verify to complete registration.",
    )


@router.post("/auth/verify-otp", response_model=ApiResponse[LoginResponse])
async def verify_otp(
    request: VerifyOTPRequest,
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[LoginResponse]:
    """Verify the signup code; the caller is logged in on success."""
    user = await auth.verify_signup(request.email, request.otp)
    token = auth.tokens.create(user)
    return ApiResponse(
        data=LoginResponse(access_token=token, user=user_response(user)),
        message="Email verified successfully",
    )


@router.post("/auth/resend-otp", response_model=ApiResponse[OTPDispatchResponse])
async def resend_otp(
    request: EmailRequest,
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[OTPDispatchResponse]:
    dispatch = await auth.resend_signup_otp(request.email)
    return ApiResponse(data=dispatch_response(dispatch), message="OTP resent to your email")


# ============================================================================
# Login & Password Reset
# ============================================================================


@router.post("/auth/login", response_model=ApiResponse[LoginResponse])
async def login(
    request: LoginRequest,
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[LoginResponse]:
    user, token = await auth.login(request.email, request.password)
    return ApiResponse(
        data=LoginResponse(access_token=token, user=user_response(user)),
        message="Login successful",
    )


@router.post("/auth/forgot-password", response_model=ApiResponse[OTPDispatchResponse])
async def forgot_password(
    request: EmailRequest,
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[OTPDispatchResponse]:
    """
    Email a password reset code.

    The response is the same whether or not the email is registered; the
    dispatch details are only included when codes are exposed for
    development.
    """
    notice, dispatch = await auth.request_password_reset(request.email)
    data = dispatch_response(dispatch) if dispatch and dispatch.code else None
    return ApiResponse(data=data, message=notice)


@router.post("/auth/reset-password", response_model=ApiResponse[None])
async def reset_password(
    request: ResetPasswordRequest,
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[None]:
    await auth.reset_password(request.email, request.otp, request.new_password)
    return ApiResponse(message="Password reset successfully")


# ============================================================================
# Profile
# ============================================================================


@router.get("/users/me", response_model=ApiResponse[UserResponse])
async def get_me(
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[UserResponse]:
    return ApiResponse(data=user_response(await auth.get_user(user_id)))


@router.patch("/users/me", response_model=ApiResponse[UserResponse])
async def update_me(
    request: UpdateProfileRequest,
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[UserResponse]:
    user = await auth.update_profile(user_id, name=request.name, email=request.email)
    return ApiResponse(data=user_response(user), message="Profile updated")


@router.delete("/users/me", response_model=ApiResponse[DeletedResponse])
async def delete_me(
    user_id: UUID = Depends(get_current_user_id),
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[DeletedResponse]:
    """Delete the account with all of its chats and remembered content."""
    await auth.delete_account(user_id)
    return ApiResponse(data=DeletedResponse(), message="Account deleted")
