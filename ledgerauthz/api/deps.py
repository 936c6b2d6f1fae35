from __future__ import annotations

from typing import Annotated, Any

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.errors import AuthorizationError, TenantInvariantViolation
from ledgerauthz.domain.models import PlatformAdminSession
from ledgerauthz.infra.audit import set_audit_context
from ledgerauthz.infra.auth import decode_access_token
from ledgerauthz.services.claims_service import ClaimsService, StaleClaimsError
from ledgerauthz.services.session_service import SessionExpiredError, SessionService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

ADMIN_SESSION_HEADER = "X-Admin-Session"


def _decode(token: str) -> dict[str, Any]:
    try:
        return decode_access_token(token)
    except (jwt.PyJWTError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc


def _to_claims(request: Request, payload: dict[str, Any]) -> Claims:
    try:
        claims = Claims.from_payload(payload)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    return claims


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> Claims:
    payload = _decode(token)
    try:
        ClaimsService().ensure_fresh(payload)
    except StaleClaimsError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Claims are stale",
        ) from exc
    return _to_claims(request, payload)


def get_token_claims_allow_stale(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> Claims:
    return _to_claims(request, _decode(token))


def require_platform_admin(
    claims: Annotated[Claims, Depends(get_current_claims)],
) -> Claims:
    if not claims.is_platform_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Platform admin access required",
        )
    return claims


def require_privileged(
    claims: Annotated[Claims, Depends(get_current_claims)],
) -> Claims:
    if not (claims.is_platform_admin or claims.is_privileged()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Owner or admin access required",
        )
    return claims


def require_platform_session(
    claims: Annotated[Claims, Depends(require_platform_admin)],
    x_admin_session: Annotated[str | None, Header()] = None,
) -> PlatformAdminSession:
    if not x_admin_session:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {ADMIN_SESSION_HEADER} header",
        )
    try:
        return SessionService().touch_session(x_admin_session)
    except SessionExpiredError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc


def raise_for_denial(request: Request, exc: AuthorizationError) -> None:
    set_audit_context(
        request,
        action=f"authz.{exc.operation or 'operation'}",
        resource=exc.resource_type,
        detail={
            "result": {"outcome": "denied", "reason": exc.reason, "denial_kind": exc.kind.value},
            "what": {"resource_id": exc.resource_id},
        },
    )
    if isinstance(exc, TenantInvariantViolation):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.reason) from exc
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.reason) from exc
