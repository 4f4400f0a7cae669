from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from venuehub.api.error_handling import _error_response
from venuehub.api.schemas import (
    AdminCreateUserRequest,
    AdminUpdateUserRequest,
    EmergencyResetRequest,
    Envelope,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    UserListResponse,
    UserResponse,
)
from venuehub.config import Settings
from venuehub.logging import get_logger
from venuehub.service.auth import LoginResult
from venuehub.service.errors import ServiceError
from venuehub.service.runtime import get_runtime
from venuehub.storage.models import Account, Identity, Session

logger = get_logger(__name__)

router = APIRouter()


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _apply_session_cookie(response: Response, session: Session, settings: Settings) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        session.id,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        expires=session.expires_at,
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(settings.session_cookie_name, path="/")


def _identity_to_response(identity: Identity) -> IdentityResponse:
    return IdentityResponse(
        account_id=identity.account_id,
        username=identity.username,
        role=identity.role.value,
        login_at=identity.login_at,
    )


def _login_to_response(result: LoginResult) -> LoginResponse:
    return LoginResponse(
        status=result.status,
        requires_2fa=result.requires_2fa,
        identity=_identity_to_response(result.identity) if result.identity else None,
    )


def _user_to_response(account: Account) -> UserResponse:
    return UserResponse(
        id=account.id,
        username=account.username,
        role=account.role.value,
        two_factor_enabled=account.two_factor_enabled,
        created_at=account.created_at,
    )


def _lookup_session(request: Request, header_session_id: Optional[str]) -> Optional[Session]:
    runtime = get_runtime()
    session_id = request.cookies.get(runtime.settings.session_cookie_name) or header_session_id
    if not session_id:
        return None
    return runtime.store.get_session(session_id)


async def get_optional_session(
    request: Request,
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> Optional[Session]:
    return _lookup_session(request, session_id)


async def get_session(
    request: Request,
    response: Response,
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> Session:
    """Resolve the caller's session, creating one on first use."""
    session = _lookup_session(request, session_id)
    if session is None:
        runtime = get_runtime()
        session = runtime.store.create_session(runtime.settings.session_ttl_minutes)
        _apply_session_cookie(response, session, runtime.settings)
    return session


async def get_identity(session: Optional[Session] = Depends(get_optional_session)) -> Identity:
    runtime = get_runtime()
    identity = await runtime.auth.current_identity(session)
    if identity is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return identity


async def get_admin_identity(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return identity


# Login state machine


def _login_error(exc: ServiceError, session: Session) -> JSONResponse:
    """Error envelope that still carries the session cookie.

    A pending login lives on the session created for this request, so the
    client needs the cookie even when the attempt failed.
    """
    runtime = get_runtime()
    logger.warning(
        "login_step_failed",
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=exc.message,
    )
    response = _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)
    current = runtime.store.get_session(session.id)
    if current is not None:
        _apply_session_cookie(response, current, runtime.settings)
    return response


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest, response: Response, session: Session = Depends(get_session)
):
    """Password login; answers ``2fa_required`` when the account has 2FA enabled."""
    runtime = get_runtime()
    try:
        result = await runtime.auth.login(session, body.username, body.password, body.code)
    except ServiceError as exc:
        return _login_error(exc, session)
    _apply_session_cookie(response, result.session, runtime.settings)
    return Envelope(status="ok", data=_login_to_response(result))


@router.post("/login/2fa", response_model=Envelope, tags=["auth"])
async def login_second_factor(
    body: TwoFactorCodeRequest,
    response: Response,
    session: Session = Depends(get_session),
):
    runtime = get_runtime()
    try:
        result = await runtime.auth.verify_pending(session, body.code)
    except ServiceError as exc:
        return _login_error(exc, session)
    _apply_session_cookie(response, result.session, runtime.settings)
    return Envelope(status="ok", data=_login_to_response(result))


@router.get("/login/me", response_model=Envelope, tags=["auth"])
async def current_user(identity: Identity = Depends(get_identity)):
    return Envelope(status="ok", data=_identity_to_response(identity))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response, session: Optional[Session] = Depends(get_optional_session)
):
    runtime = get_runtime()
    await runtime.auth.logout(session)
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"status": "logged_out"})


# Two-factor enrollment


@router.post("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(identity: Identity = Depends(get_identity)):
    """Issue a fresh secret (and, for admins, an emergency code).

    Restarting an unconfirmed setup replaces the previous secret and code.
    """
    runtime = get_runtime()
    payload = await runtime.two_factor.start_setup(identity)
    return Envelope(status="ok", data=TwoFactorSetupResponse(**payload))


@router.post("/2fa/enable", response_model=Envelope, tags=["2fa"])
async def two_factor_enable(
    body: TwoFactorCodeRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    await runtime.two_factor.confirm_setup(identity, body.code)
    return Envelope(status="ok", data={"two_factor_enabled": True})


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: TwoFactorDisableRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    await runtime.two_factor.disable(identity, body.password, body.code)
    return Envelope(status="ok", data={"two_factor_enabled": False})


@router.get("/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    status = await runtime.two_factor.status(identity)
    return Envelope(status="ok", data=TwoFactorStatusResponse(**status))


@router.post("/2fa/reset-with-emergency-code", response_model=Envelope, tags=["2fa"])
async def two_factor_emergency_reset(body: EmergencyResetRequest):
    """Admin self-recovery without a session; log in normally afterwards."""
    runtime = get_runtime()
    await runtime.recovery.reset_with_emergency_code(
        body.username, body.password, body.emergency_code
    )
    return Envelope(status="ok", data={"two_factor_enabled": False})


# Admin back office


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=1000, description="Maximum users to return"),
    principal: Identity = Depends(get_admin_identity),
):
    runtime = get_runtime()
    accounts = runtime.accounts.list_accounts(limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[_user_to_response(a) for a in accounts])
    )


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest, principal: Identity = Depends(get_admin_identity)
):
    runtime = get_runtime()
    account = runtime.accounts.create_account(body.username, body.password, body.role)
    logger.info("admin_created_user", actor=principal.account_id, account_id=account.id)
    return Envelope(status="ok", data=_user_to_response(account))


@router.put("/admin/users/{username}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    username: str,
    body: AdminUpdateUserRequest,
    principal: Identity = Depends(get_admin_identity),
):
    runtime = get_runtime()
    account = runtime.accounts.update_account(
        username, password=body.password, role=body.role
    )
    return Envelope(status="ok", data=_user_to_response(account))


@router.delete("/admin/users/{username}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    username: str, principal: Identity = Depends(get_admin_identity)
):
    runtime = get_runtime()
    runtime.accounts.delete_account(username)
    logger.info("admin_deleted_user", actor=principal.account_id, username=username)
    return Envelope(status="ok", data={"deleted": True, "username": username})


@router.post("/admin/users/{username}/reset-2fa", response_model=Envelope, tags=["admin"])
async def admin_reset_two_factor(
    username: str, principal: Identity = Depends(get_admin_identity)
):
    runtime = get_runtime()
    account = runtime.accounts.reset_two_factor(username)
    return Envelope(status="ok", data=_user_to_response(account))
