from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Request

from boxoffice.api.schemas import (
    BackupCodesResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    Pagination,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    TokenRefreshRequest,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorPasswordRequest,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
    UserCreateRequest,
    UserListResponse,
    UserResponse,
    UserUpdateRequest,
)
from boxoffice.config import ROLE_RANK, Role
from boxoffice.logging import get_logger
from boxoffice.service.auth import AuthContext
from boxoffice.service.errors import AuthenticationError, ForbiddenError
from boxoffice.service.runtime import get_runtime
from boxoffice.service.tokens import TokenPair
from boxoffice.storage.models import CredentialRecord

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


def _epoch(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        access_expires_at=_epoch(pair.access_expires_at),
        refresh_expires_at=_epoch(pair.refresh_expires_at),
    )


def _user_response(user: CredentialRecord) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role,
        is_active=user.is_active,
        two_factor_enabled=user.two_factor_enabled,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("Missing bearer token")
    return await get_runtime().auth.verify_request(token)


def require_role(minimum: Role):
    """Dependency factory: caller's role must rank at least ``minimum``."""

    async def _check(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        if ROLE_RANK.get(principal.role, 0) < ROLE_RANK[minimum.value]:
            logger.warning(
                "role_check_failed",
                user_id=principal.user_id,
                role=principal.role,
                required=minimum.value,
            )
            raise ForbiddenError("Insufficient permissions")
        return principal

    return _check


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Exchange email and password (plus a second factor when enabled) for tokens.

    Raises:
        401: invalid credentials, missing or wrong second factor
        423: too many failed attempts for this email
    """
    result = await get_runtime().auth.login(
        body.email,
        body.password,
        _client_ip(request),
        two_factor_code=body.two_factor_code,
        is_backup_code=body.is_backup_code,
    )
    return Envelope(
        status="ok",
        data=LoginResponse(user=_user_response(result.user), tokens=_token_response(result.tokens)),
    )


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    pair = await get_runtime().auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Revoke the presented tokens. Always succeeds, even for junk tokens."""
    await get_runtime().auth.logout(
        _bearer_token(authorization), body.refresh_token if body else None
    )
    return Envelope(status="ok", data={"status": "logged_out"})


@router.post("/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_principal)):
    version = await get_runtime().auth.logout_everywhere(principal.user_id)
    return Envelope(status="ok", data={"status": "revoked", "token_version": version})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    user = await get_runtime().auth.get_user(principal.user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/password/change", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, principal: AuthContext = Depends(get_principal)):
    pair = await get_runtime().auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/password/reset-request", response_model=Envelope, status_code=202, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, background_tasks: BackgroundTasks):
    runtime = get_runtime()
    token = await runtime.auth.request_password_reset(body.email)
    if token:
        background_tasks.add_task(
            runtime.email.send_password_reset,
            body.email,
            token,
            ttl_minutes=runtime.settings.password_reset_ttl_minutes,
        )
    # Same response whether or not the account exists
    return Envelope(status="ok", data={"status": "accepted"})


@router.post("/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    await get_runtime().auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/2fa/setup", response_model=Envelope, tags=["two-factor"])
async def two_factor_setup(principal: AuthContext = Depends(get_principal)):
    enrollment = await get_runtime().auth.begin_two_factor(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=enrollment.secret,
            otpauth_url=enrollment.otpauth_url,
            qr_code=enrollment.qr_code_data_url,
        ),
    )


@router.post("/2fa/enable", response_model=Envelope, tags=["two-factor"])
async def two_factor_enable(body: TwoFactorCodeRequest, principal: AuthContext = Depends(get_principal)):
    codes = await get_runtime().auth.enable_two_factor(principal.user_id, body.code)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.post("/2fa/verify", response_model=Envelope, tags=["two-factor"])
async def two_factor_verify(body: TwoFactorVerifyRequest, principal: AuthContext = Depends(get_principal)):
    await get_runtime().auth.verify_two_factor(principal.user_id, body.code, body.is_backup_code)
    return Envelope(status="ok", data={"verified": True})


@router.post("/2fa/disable", response_model=Envelope, tags=["two-factor"])
async def two_factor_disable(body: TwoFactorPasswordRequest, principal: AuthContext = Depends(get_principal)):
    await get_runtime().auth.disable_two_factor(principal.user_id, body.password)
    return Envelope(status="ok", data={"status": "disabled"})


@router.post("/2fa/backup-codes", response_model=Envelope, tags=["two-factor"])
async def two_factor_backup_codes(body: TwoFactorPasswordRequest, principal: AuthContext = Depends(get_principal)):
    codes = await get_runtime().auth.regenerate_backup_codes(principal.user_id, body.password)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: UserCreateRequest,
    principal: AuthContext = Depends(require_role(Role.SUPER_ADMIN)),
):
    user = await get_runtime().auth.create_user(body.email, body.password, role=body.role.value)
    logger.info("user_created_by_admin", user_id=user.id, actor_id=principal.user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(require_role(Role.SUPER_ADMIN)),
):
    result = await get_runtime().auth.list_users(page, limit)
    return Envelope(
        status="ok",
        data=UserListResponse(
            users=[_user_response(user) for user in result.users],
            pagination=Pagination(
                page=result.page, limit=result.limit, total=result.total, pages=result.pages
            ),
        ),
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: str,
    principal: AuthContext = Depends(require_role(Role.SUPER_ADMIN)),
):
    user = await get_runtime().auth.get_user(user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    user_id: str,
    body: UserUpdateRequest,
    principal: AuthContext = Depends(require_role(Role.SUPER_ADMIN)),
):
    if user_id == principal.user_id and body.is_active is False:
        raise ForbiddenError("Cannot deactivate your own account")
    user = await get_runtime().auth.update_user(
        user_id,
        role=body.role.value if body.role else None,
        is_active=body.is_active,
    )
    logger.info(
        "user_updated_by_admin",
        user_id=user.id,
        actor_id=principal.user_id,
        role=body.role.value if body.role else None,
        is_active=body.is_active,
    )
    return Envelope(status="ok", data=_user_response(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def deactivate_user(
    user_id: str,
    principal: AuthContext = Depends(require_role(Role.SUPER_ADMIN)),
):
    """Soft delete: the account is deactivated and its sessions end."""
    if user_id == principal.user_id:
        raise ForbiddenError("Cannot deactivate your own account")
    user = await get_runtime().auth.update_user(user_id, is_active=False)
    logger.info("user_deactivated_by_admin", user_id=user.id, actor_id=principal.user_id)
    return Envelope(status="ok", data=_user_response(user))
