from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse

from ledgerauthz.api.deps import require_platform_admin, require_platform_session
from ledgerauthz.api.routers.auth import claims_read
from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.models import (
    PlatformAdminCreate,
    PlatformAdminRead,
    PlatformAdminSession,
    PlatformLoginRequest,
    PlatformLoginResponse,
    PlatformSessionRead,
    RateLimitStatusRead,
)
from ledgerauthz.infra.audit import set_audit_context
from ledgerauthz.services.session_service import (
    AuthError,
    ConflictError,
    IpNotAllowedError,
    LoginLockedError,
    NotFoundError,
    RateLimitStatus,
    SessionExpiredError,
    SessionService,
)

router = APIRouter()


def get_session_service() -> SessionService:
    return SessionService()


Service = Annotated[SessionService, Depends(get_session_service)]
ActiveSession = Annotated[PlatformAdminSession, Depends(require_platform_session)]


def _status_read(rate_limit: RateLimitStatus) -> RateLimitStatusRead:
    return RateLimitStatusRead(
        allowed=rate_limit.allowed,
        locked=rate_limit.locked,
        locked_until=rate_limit.locked_until,
        email_attempts=rate_limit.email_attempts,
        ip_attempts=rate_limit.ip_attempts,
        max_attempts=rate_limit.max_attempts,
    )


def _handle_session_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, (AuthError, SessionExpiredError)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    if isinstance(exc, IpNotAllowedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    raise exc


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client is not None else None


@router.post("/login", response_model=PlatformLoginResponse)
def login(payload: PlatformLoginRequest, request: Request, service: Service) -> PlatformLoginResponse | JSONResponse:
    try:
        result = service.login(
            payload.email,
            payload.password,
            _client_ip(request),
            request.headers.get("user-agent"),
        )
    except LoginLockedError as exc:
        set_audit_context(
            request,
            action="platform.login",
            detail={"result": {"outcome": "denied", "reason": "rate_limited"}, "what": {"email": payload.email}},
        )
        body = _status_read(exc.status).model_dump(mode="json")
        return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content={"detail": str(exc), **body})
    except (AuthError, IpNotAllowedError, NotFoundError) as exc:
        set_audit_context(
            request,
            action="platform.login",
            detail={"result": {"outcome": "denied", "reason": str(exc)}, "what": {"email": payload.email}},
        )
        _handle_session_error(exc)
        raise
    request.state.claims = result.claims
    set_audit_context(request, action="platform.login")
    return PlatformLoginResponse(
        access_token=result.access_token,
        session_token=result.session.session_token,
        expires_at=result.session.expires_at,
        claims=claims_read(result.claims),
    )


@router.get("/rate-limit", response_model=RateLimitStatusRead)
def rate_limit_status(
    _claims: Annotated[Claims, Depends(require_platform_admin)],
    service: Service,
    email: Annotated[str, Query(min_length=3)],
    ip: str | None = None,
) -> RateLimitStatusRead:
    return _status_read(service.check_login_rate_limit(email, ip))


@router.post("/sessions/touch", response_model=PlatformSessionRead)
def touch_session(session: ActiveSession) -> PlatformSessionRead:
    return PlatformSessionRead.model_validate(session)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    _claims: Annotated[Claims, Depends(require_platform_admin)],
    service: Service,
    x_admin_session: Annotated[str | None, Header()] = None,
) -> Response:
    if not x_admin_session:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Admin-Session header")
    try:
        service.invalidate_session(x_admin_session)
    except NotFoundError as exc:
        _handle_session_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/admins", response_model=list[PlatformAdminRead])
def list_platform_admins(_session: ActiveSession, service: Service) -> list[PlatformAdminRead]:
    return [PlatformAdminRead.model_validate(item) for item in service.list_platform_admins()]


@router.post("/admins", response_model=PlatformAdminRead, status_code=status.HTTP_201_CREATED)
def add_platform_admin(
    payload: PlatformAdminCreate,
    _session: ActiveSession,
    service: Service,
) -> PlatformAdminRead:
    try:
        return PlatformAdminRead.model_validate(service.add_platform_admin(payload))
    except ConflictError as exc:
        _handle_session_error(exc)
        raise
