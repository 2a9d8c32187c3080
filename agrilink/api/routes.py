from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Response

from agrilink.api.dependencies import (
    get_identity,
    require_permission,
    require_second_factor,
)
from agrilink.api.schemas import (
    AccessResponse,
    AuthResponse,
    BackupCodesResponse,
    Envelope,
    LoginRequest,
    MFADisableRequest,
    MFASetupResponse,
    MFAStatusResponse,
    MFAVerifyRequest,
    MFAVerifyResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    RoleUpdateRequest,
    UserListResponse,
    UserResponse,
    UserStatusUpdateRequest,
)
from agrilink.logging import get_logger
from agrilink.service.auth import Identity
from agrilink.service.errors import ForbiddenError, NotFoundError, RateLimitedError
from agrilink.service.runtime import check_rate_limit, collect_health, get_runtime
from agrilink.service.tokens import IssuedToken
from agrilink.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Consume one token for ``key`` and raise 429 when the bucket is empty.

    When ``response`` is given the ``X-RateLimit-*`` headers are set on it.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        logger.warning("rate_limited", key_prefix=key.split(":", 1)[0], retry_after=reset_seconds)
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": reset_seconds}
        )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        role=user.role,
        phone=user.phone,
        location=user.location,
        farm_name=user.farm_name,
        farm_location=user.farm_location,
        is_verified=user.is_verified,
        is_active=user.is_active,
    )


def _auth_response(user: User, token: IssuedToken, *, second_factor_verified: bool) -> AuthResponse:
    return AuthResponse(
        user=_user_response(user),
        access_token=token.token,
        expires_at=datetime.fromtimestamp(token.expires_at, tz=timezone.utc),
        second_factor_verified=second_factor_verified,
    )


def _load_user(identity: Identity) -> User:
    user = get_runtime().store.get_user(identity.id)
    if user is None:
        raise NotFoundError("user not found", detail={"user_id": identity.id})
    return user


# -- auth --------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a buyer or farmer account and return an access token.

    Raises:
        403: If signup is disabled in settings
        409: If the email or phone is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("signup disabled")
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
        response=response,
    )
    user, token = runtime.auth.register(
        name=body.name,
        email=body.email,
        password=body.password,
        phone=body.phone,
        role=body.role,
        location=body.location,
        farm_name=body.farm_name,
        farm_location=body.farm_location,
    )
    return Envelope(
        status="ok", data=_auth_response(user, token, second_factor_verified=False)
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password, plus a code when 2FA is enabled.

    Raises:
        401: If credentials are invalid or the two-factor code is missing or wrong
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password, body.code)
    return Envelope(
        status="ok",
        data=_auth_response(
            result.user,
            result.token,
            second_factor_verified=result.second_factor_verified,
        ),
    )


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest, response: Response):
    """Issue a password reset token.

    The answer is the same whether or not the account exists. Delivery is
    left to the mail integration; in test mode the token is returned inline.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    token = runtime.auth.request_password_reset(body.email)
    data = {"status": "sent"}
    if token and runtime.settings.test_mode:
        data["reset_token"] = token
    return Envelope(status="ok", data=data)


@router.get("/auth/password/reset/{token}", response_model=Envelope, tags=["auth"])
async def verify_reset_token(token: str = Path(..., max_length=256)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, "reset:confirm", runtime.settings.reset_rate_limit_per_minute, 60
    )
    user = runtime.auth.verify_password_reset(token)
    return Envelope(status="ok", data={"valid": True, "email": user.email})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    """Set a new password with a reset token; the token works once."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, "reset:confirm", runtime.settings.reset_rate_limit_per_minute, 60
    )
    runtime.auth.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.get("/me", response_model=Envelope, tags=["account"])
async def me(identity: Identity = Depends(get_identity)):
    return Envelope(status="ok", data=UserResponse(**identity.to_public()))


@router.get("/me/access", response_model=Envelope, tags=["account"])
async def my_access(identity: Identity = Depends(get_identity)):
    """Permissions granted by the caller's current role."""
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=AccessResponse(
            role=identity.role,
            permissions=runtime.policy.permissions_for(identity.role),
            second_factor_verified=identity.second_factor_verified,
        ),
    )


@router.put("/me", response_model=Envelope, tags=["account"])
async def update_profile(
    body: ProfileUpdateRequest, identity: Identity = Depends(get_identity)
):
    """Update the caller's profile. Farm details are ignored for non-farmers.

    Raises:
        409: If the new phone number belongs to another account
    """
    runtime = get_runtime()
    updated = runtime.auth.update_profile(
        identity.id,
        name=body.name,
        phone=body.phone,
        location=body.location,
        farm_name=body.farm_name,
        farm_location=body.farm_location,
    )
    return Envelope(status="ok", data=_user_response(updated))


@router.put("/me/password", response_model=Envelope, tags=["account"])
async def change_password(
    body: PasswordChangeRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    runtime.auth.change_password(identity.id, body.current_password, body.new_password)
    return Envelope(status="ok", data={"changed": True})


# -- two-factor --------------------------------------------------------------


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def setup_2fa(identity: Identity = Depends(get_identity)):
    """Start 2FA enrollment; the account stays password-only until a code is verified."""
    runtime = get_runtime()
    enrollment = runtime.second_factor.enroll(_load_user(identity))
    return Envelope(
        status="ok",
        data=MFASetupResponse(
            secret=enrollment.secret,
            otpauth_uri=enrollment.otpauth_uri,
            qr_code=enrollment.qr_code,
            backup_codes=enrollment.backup_codes,
        ),
    )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["2fa"])
async def verify_2fa(
    body: MFAVerifyRequest, response: Response, identity: Identity = Depends(get_identity)
):
    """Verify a TOTP or backup code and return a token marked second-factor verified.

    The first successful TOTP code after setup enables 2FA.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:verify:{identity.id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.second_factor.verify(identity.id, body.code)
    user = _load_user(identity)
    token = runtime.auth.issue_token(user, second_factor_verified=True)
    auth = _auth_response(user, token, second_factor_verified=True)
    return Envelope(
        status="ok",
        data=MFAVerifyResponse(
            **auth.model_dump(),
            method=result.method,
            activated=result.activated,
            backup_codes_remaining=result.backup_codes_remaining,
        ),
    )


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_2fa(
    body: MFADisableRequest, identity: Identity = Depends(require_second_factor())
):
    runtime = get_runtime()
    runtime.second_factor.disable(identity.id, body.password)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/2fa/backup-codes", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(identity: Identity = Depends(require_second_factor())):
    """Replace every backup code; previously issued codes stop working."""
    runtime = get_runtime()
    codes = runtime.second_factor.regenerate_backup_codes(identity.id)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.get("/auth/2fa/status", response_model=Envelope, tags=["2fa"])
async def status_2fa(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=MFAStatusResponse(**runtime.second_factor.status(identity.id))
    )


# -- admin -------------------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def list_users(
    role: Optional[str] = Query(None, max_length=64),
    limit: int = Query(100, ge=1, le=500),
    identity: Identity = Depends(require_permission("user:read")),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(role=role, limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[_user_response(u) for u in users])
    )


@router.put("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def update_user_role(
    body: RoleUpdateRequest,
    user_id: str = Path(..., max_length=64),
    identity: Identity = Depends(require_permission("user:write", second_factor=True)),
):
    """Change a user's role.

    Raises:
        403: If the caller lacks ``user:write``, targets their own account,
            or is not a super admin and the change touches an admin role
        404: If the user does not exist
    """
    runtime = get_runtime()
    updated = runtime.auth.set_role(identity, user_id, body.role)
    return Envelope(status="ok", data=_user_response(updated))


@router.put("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def update_user_status(
    body: UserStatusUpdateRequest,
    user_id: str = Path(..., max_length=64),
    identity: Identity = Depends(require_permission("user:write", second_factor=True)),
):
    """Suspend or reinstate an account.

    Raises:
        403: If the caller targets their own account, or is not a super admin
            and the target holds an admin role
        404: If the user does not exist
    """
    runtime = get_runtime()
    updated = runtime.auth.set_active(identity, user_id, body.active, reason=body.reason)
    return Envelope(status="ok", data=_user_response(updated))


@router.get("/admin/health", response_model=Envelope, tags=["admin"])
async def admin_health(identity: Identity = Depends(require_permission("system:monitor"))):
    runtime = get_runtime()
    return Envelope(status="ok", data=await collect_health(runtime))
