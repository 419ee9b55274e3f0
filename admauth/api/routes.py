from __future__ import annotations

import asyncio
from typing import List, Optional

from fastapi import (
    APIRouter,
    Depends,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)

from admauth.api.schemas import (
    AccountListResponse,
    AccountResponse,
    BackupCodesResponse,
    BackupCodeStatusResponse,
    CreateAccountRequest,
    DeviceInfoResponse,
    Envelope,
    ForceLogoutRequest,
    ForceLogoutResponse,
    LoginHistoryItem,
    LoginHistoryResponse,
    LoginHistoryStatistics,
    LoginRequest,
    LoginResponse,
    MeResponse,
    PaginationResponse,
    PasswordConfirmRequest,
    SecurityResponse,
    SessionConfigBody,
    SessionConfigUpdateRequest,
    SessionListResponse,
    SessionResponse,
    SessionUserResponse,
    TwoFactorConfirmRequest,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
    UpdateAccountRequest,
)
from admauth.logging import get_logger
from admauth.service.auth import AuthContext, LoginResult, history_statistics
from admauth.service.client_info import RequestMeta
from admauth.service.permissions import Permission, ordered
from admauth.service.runtime import get_runtime
from admauth.storage.models import (
    Account,
    DeviceInfo,
    LoginHistoryEntry,
    Rank,
    Session,
    SessionConfig,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


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


def _ok(data) -> Envelope:
    return Envelope(status="ok", data=data.wire() if hasattr(data, "wire") else data)


def _request_meta(request: Request) -> RequestMeta:
    return RequestMeta.from_headers(
        request.headers, request.client.host if request.client else None
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def require_permission(permission: Permission):
    """Dependency factory gating a route on the caller's actual rank."""

    async def _dependency(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        runtime = get_runtime()
        if not runtime.resolver.has_permission(principal.rank, permission):
            logger.warning(
                "permission_denied",
                user_id=principal.user_id,
                rank=principal.rank.value,
                permission=permission.value,
            )
            raise _http_error(
                "forbidden",
                "insufficient permissions",
                status_code=403,
                details={"required": permission.value},
            )
        return principal

    return _dependency


def _effective_rank(request: Request, principal: AuthContext) -> Rank:
    runtime = get_runtime()
    header_value = request.headers.get(runtime.resolver.simulation_header)
    return runtime.resolver.effective_rank(principal.rank, header_value)


# serializers
def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        name=account.name,
        email=account.email,
        rank=account.rank.value,
        two_factor_enabled=account.two_factor_enabled,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def _device_response(info: DeviceInfo) -> DeviceInfoResponse:
    return DeviceInfoResponse(
        user_agent=info.user_agent,
        browser=info.browser,
        os=info.os,
        device=info.device,
        is_mobile=info.is_mobile,
    )


def _session_response(session: Session, account: Optional[Account]) -> SessionResponse:
    user = None
    if account is not None:
        user = SessionUserResponse(
            id=account.id, name=account.name, email=account.email, rank=account.rank.value
        )
    return SessionResponse(
        session_token=session.session_token,
        user_id=session.user_id,
        user=user,
        created_at=session.created_at,
        last_activity=session.last_activity,
        expires_at=session.expires_at,
        is_active=session.is_active,
        logout_time=session.logout_time,
        logout_reason=session.logout_reason,
        ip_address=session.ip_address,
        device_info=_device_response(session.device_info),
    )


def _config_body(config: SessionConfig) -> SessionConfigBody:
    return SessionConfigBody(
        session_timeout_days=config.session_timeout_days,
        max_active_sessions=config.max_active_sessions,
        enforce_location_tracking=config.enforce_location_tracking,
        enable_suspicious_activity_detection=config.enable_suspicious_activity_detection,
        auto_logout_on_suspicious_activity=config.auto_logout_on_suspicious_activity,
        require_reauthentication_hours=config.require_reauthentication_hours,
        cleanup_expired_sessions_interval_hours=config.cleanup_expired_sessions_interval_hours,
        updated_at=config.updated_at,
        updated_by=config.updated_by,
    )


def _history_item(entry: LoginHistoryEntry) -> LoginHistoryItem:
    return LoginHistoryItem(
        id=entry.id,
        email=entry.email,
        user_id=entry.user_id,
        success=entry.success,
        failure_reason=entry.failure_reason,
        session_token=entry.session_token,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        timestamp=entry.timestamp,
        device_info=_device_response(entry.device_info),
        security=SecurityResponse(
            is_first_login=entry.security.is_first_login,
            is_suspicious_activity=entry.security.is_suspicious_activity,
            suspicious_reasons=list(entry.security.suspicious_reasons),
            risk_score=entry.security.risk_score,
        ),
    )


def _login_response(result: LoginResult) -> LoginResponse:
    if result.requires_two_factor:
        return LoginResponse(requires_two_factor=True, user_id=result.user_id)
    session = result.session
    return LoginResponse(
        user_id=result.user_id,
        token=result.token,
        session_token=session.session_token if session else None,
        expires_at=session.expires_at if session else None,
        user=_account_response(result.account) if result.account else None,
    )


# authentication
@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Returns a credential token and session token, or ``requiresTwoFactor``
    when the account has two-factor enabled.

    Raises:
        401: If the password is wrong
        404: If no account has this email
        423: If the account is locked
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, _request_meta(request))
    return _ok(_login_response(result))


@router.post("/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: TwoFactorVerifyRequest, request: Request):
    """Redeem a pending two-factor challenge with a TOTP or backup code."""
    runtime = get_runtime()
    result = await runtime.auth.verify_two_factor(
        body.user_id,
        body.token,
        is_backup_code=body.is_backup_code,
        meta=_request_meta(request),
    )
    return _ok(_login_response(result))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    closed = await runtime.auth.logout(principal)
    return _ok({"sessionToken": closed.session_token, "loggedOut": True})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(request: Request, principal: AuthContext = Depends(get_principal)):
    """Current account plus its effective rank and permissions.

    Permissions always reflect the actual rank; a developer's simulated rank
    only changes ``effectiveRank``.
    """
    runtime = get_runtime()
    resolver = runtime.resolver
    simulated = resolver.simulated_rank(
        principal.rank, request.headers.get(resolver.simulation_header)
    )
    base = _account_response(principal.account)
    return _ok(
        MeResponse(
            **base.model_dump(),
            effective_rank=(simulated or principal.rank).value,
            simulated_rank=simulated.value if simulated else None,
            is_simulating=simulated is not None,
            can_use_view_as=resolver.can_simulate(principal.rank),
            permissions=sorted(p.value for p in resolver.permissions(principal.rank)),
            session_token=principal.session.session_token,
        )
    )


# two-factor management
@router.post("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    enrollment = runtime.two_factor.setup(principal.user_id)
    return _ok(TwoFactorSetupResponse(secret=enrollment.secret, qr_payload=enrollment.qr_payload))


@router.put("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_confirm(
    body: TwoFactorConfirmRequest, principal: AuthContext = Depends(get_principal)
):
    """Confirm enrollment; the backup codes are returned only here."""
    runtime = get_runtime()
    codes = runtime.two_factor.confirm(principal.user_id, body.token)
    return _ok(BackupCodesResponse(backup_codes=codes))


@router.delete("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: PasswordConfirmRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    runtime.two_factor.disable(principal.user_id, body.password)
    return _ok({"twoFactorEnabled": False})


@router.get("/2fa/backup-codes", response_model=Envelope, tags=["2fa"])
async def backup_code_status(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    status = runtime.two_factor.backup_code_status(principal.user_id)
    return _ok(
        BackupCodeStatusResponse(
            backup_codes=status["backupCodes"],
            total=status["total"],
            unused=status["unused"],
            used=status["used"],
        )
    )


@router.post("/2fa/backup-codes", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(
    body: PasswordConfirmRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    codes = runtime.two_factor.regenerate(principal.user_id, body.password)
    return _ok(BackupCodesResponse(backup_codes=codes))


# sessions
@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    request: Request,
    user_id: Optional[str] = Query(None, alias="userId", max_length=64),
    active_only: bool = Query(False, alias="activeOnly"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    principal: AuthContext = Depends(require_permission(Permission.VIEW_ALL_SESSIONS)),
):
    """List sessions of accounts visible to the caller's effective rank."""
    runtime = get_runtime()
    effective = _effective_rank(request, principal)
    result = runtime.sessions.list_visible(
        runtime.resolver.visible_ranks(effective),
        user_id=user_id,
        active_only=active_only,
        page=page,
        limit=limit,
    )
    return _ok(
        SessionListResponse(
            sessions=[_session_response(s, result.accounts.get(s.user_id)) for s in result.sessions],
            pagination=PaginationResponse(**result.pagination),
        )
    )


@router.delete("/sessions", response_model=Envelope, tags=["sessions"])
async def force_logout(
    body: ForceLogoutRequest,
    principal: AuthContext = Depends(require_permission(Permission.FORCE_LOGOUT_USERS)),
):
    """Terminate one session, or every active session of a user.

    The caller may target its own sessions or those of strictly junior
    accounts.
    """
    runtime = get_runtime()
    if body.session_token:
        session = runtime.store.get_session(body.session_token)
        if session is None:
            raise _http_error("not_found", "Session not found", status_code=404)
        target_id = session.user_id
    else:
        target_id = body.user_id
    target = runtime.store.get_account(target_id)
    if target is None:
        raise _http_error("not_found", "User not found", status_code=404)
    if target.id != principal.user_id and not runtime.resolver.can_manage_user(
        principal.rank, target.rank
    ):
        raise _http_error(
            "forbidden", "Cannot manage a user of equal or higher rank", status_code=403
        )
    if body.session_token:
        closed: List[Session] = [
            await runtime.sessions.invalidate(body.session_token, reason="force_logout")
        ]
    else:
        closed = await runtime.sessions.invalidate_user(target.id, reason="force_logout")
    logger.info(
        "force_logout_requested",
        actor_id=principal.user_id,
        target_id=target.id,
        count=len(closed),
    )
    return _ok(
        ForceLogoutResponse(
            logged_out=len(closed), session_tokens=[s.session_token for s in closed]
        )
    )


@router.get("/session-config", response_model=Envelope, tags=["sessions"])
async def get_session_config(
    principal: AuthContext = Depends(require_permission(Permission.CONFIGURE_SESSION_TIMEOUT)),
):
    runtime = get_runtime()
    return _ok(_config_body(runtime.sessions.get_config()))


@router.put("/session-config", response_model=Envelope, tags=["sessions"])
async def update_session_config(
    body: SessionConfigUpdateRequest,
    principal: AuthContext = Depends(require_permission(Permission.CONFIGURE_SESSION_TIMEOUT)),
):
    runtime = get_runtime()
    config = runtime.sessions.update_config(
        body.model_dump(exclude_none=True), actor_id=principal.user_id
    )
    return _ok(_config_body(config))


@router.get("/login-history", response_model=Envelope, tags=["sessions"])
async def login_history(
    request: Request,
    email: Optional[str] = Query(None, max_length=254),
    user_id: Optional[str] = Query(None, alias="userId", max_length=64),
    success: Optional[bool] = Query(None),
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(require_permission(Permission.VIEW_LOGIN_HISTORY)),
):
    """Login attempts of visible accounts with aggregate statistics.

    Attempts against unknown emails are only listed for an effective
    Developer.
    """
    runtime = get_runtime()
    effective = _effective_rank(request, principal)
    entries = runtime.auth.login_history(
        runtime.resolver.visible_ranks(effective),
        email=email,
        user_id=user_id,
        success=success,
        days=days,
        include_unknown=effective is Rank.DEVELOPER,
    )
    return _ok(
        LoginHistoryResponse(
            entries=[_history_item(e) for e in entries[:limit]],
            statistics=LoginHistoryStatistics(**history_statistics(entries)),
        )
    )


# account administration
@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    request: Request,
    principal: AuthContext = Depends(require_permission(Permission.VIEW_USERS)),
):
    runtime = get_runtime()
    effective = _effective_rank(request, principal)
    accounts = runtime.accounts.list_visible(effective)
    return _ok(AccountListResponse(items=[_account_response(a) for a in accounts]))


@router.get("/users/ranks", response_model=Envelope, tags=["users"])
async def assignable_ranks(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    ranks = ordered(runtime.resolver.assignable_ranks(principal.rank))
    return _ok({"ranks": [r.value for r in ranks]})


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: CreateAccountRequest,
    authorization: Optional[str] = Header(None),
):
    """Create an account.

    The first account may be created without credentials and always
    becomes a Developer; afterwards ``ADD_USERS`` is required.
    """
    runtime = get_runtime()
    actor: Optional[Account] = None
    if not runtime.accounts.needs_bootstrap():
        principal = await runtime.auth.authenticate(authorization)
        if not runtime.resolver.has_permission(principal.rank, Permission.ADD_USERS):
            raise _http_error("forbidden", "insufficient permissions", status_code=403)
        actor = principal.account
    account = runtime.accounts.create(
        actor, name=body.name, email=body.email, password=body.password, rank=body.rank
    )
    return _ok(_account_response(account))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(Permission.VIEW_USERS)),
):
    runtime = get_runtime()
    account = runtime.accounts.get_visible(_effective_rank(request, principal), user_id)
    return _ok(_account_response(account))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UpdateAccountRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    if user_id != principal.user_id and not runtime.resolver.has_permission(
        principal.rank, Permission.EDIT_USERS
    ):
        raise _http_error("forbidden", "insufficient permissions", status_code=403)
    account = await runtime.accounts.update(
        principal.account,
        user_id,
        name=body.name,
        email=body.email,
        rank=body.rank,
        password=body.password,
    )
    return _ok(_account_response(account))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permission(Permission.DELETE_USERS)),
):
    runtime = get_runtime()
    await runtime.accounts.delete(principal.account, user_id)
    return _ok({"id": user_id, "deleted": True})


# force-logout delivery
@router.websocket("/sessions/events")
async def session_events(ws: WebSocket):
    """Push force-logout events for the authenticated account.

    The first client message must be ``{"access_token": ...}``. The socket
    closes with 4401 when authentication fails or when an event terminates
    the subscriber's own session.
    """
    runtime = get_runtime()
    await ws.accept()
    try:
        init = await ws.receive_json()
    except WebSocketDisconnect:
        return
    except ValueError:
        await ws.close(code=4400)
        return
    token = init.get("access_token") if isinstance(init, dict) else None
    ctx = await runtime.auth.resolve(token)
    if ctx is None:
        await ws.close(code=4401)
        return

    subscription = runtime.broadcaster.subscribe(ctx.user_id)
    # Read the socket while waiting for events so a client disconnect ends
    # the subscription instead of waiting for the next event
    receiver: Optional[asyncio.Task] = None
    pending: Optional[asyncio.Task] = None
    try:
        await ws.send_json(
            {"type": "subscribed", "sessionToken": ctx.session.session_token}
        )
        receiver = asyncio.create_task(ws.receive())
        while True:
            if pending is None:
                pending = asyncio.create_task(subscription.next_event())
            done, _ = await asyncio.wait(
                {receiver, pending}, return_when=asyncio.FIRST_COMPLETED
            )
            if receiver in done:
                message = receiver.result()
                if message.get("type") == "websocket.disconnect":
                    logger.info("session_events_disconnected", user_id=ctx.user_id)
                    return
                # Clients have nothing to say after the init message
                receiver = asyncio.create_task(ws.receive())
            if pending in done:
                event = pending.result()
                pending = None
                await ws.send_json(event.as_payload())
                if event.targets(ctx.user_id, ctx.session.session_token):
                    await ws.close(code=4401)
                    return
    except WebSocketDisconnect:
        logger.info("session_events_disconnected", user_id=ctx.user_id)
    finally:
        for task in (receiver, pending):
            if task is not None and not task.done():
                task.cancel()
        runtime.broadcaster.unsubscribe(subscription)
