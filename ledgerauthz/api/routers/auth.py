from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ledgerauthz.api.deps import get_current_claims, get_token_claims_allow_stale
from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.models import (
    ClaimsRead,
    LoginRequest,
    PrincipalCreate,
    PrincipalRead,
    RefreshRequest,
    SwitchTenantRequest,
    TokenResponse,
)
from ledgerauthz.infra.audit import set_audit_context
from ledgerauthz.services.claims_service import ClaimsService
from ledgerauthz.services.directory_service import (
    AuthError,
    ConflictError,
    DirectoryService,
    NotFoundError,
)

router = APIRouter()


def get_directory_service() -> DirectoryService:
    return DirectoryService()


def get_claims_service() -> ClaimsService:
    return ClaimsService()


CurrentClaims = Annotated[Claims, Depends(get_current_claims)]
Directory = Annotated[DirectoryService, Depends(get_directory_service)]
Service = Annotated[ClaimsService, Depends(get_claims_service)]


def _handle_auth_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    raise exc


def claims_read(claims: Claims) -> ClaimsRead:
    return ClaimsRead.model_validate(claims.to_payload())


def _token_response(service: ClaimsService, claims: Claims) -> TokenResponse:
    return TokenResponse(access_token=service.issue_token(claims), claims=claims_read(claims))


@router.post("/register", response_model=PrincipalRead, status_code=status.HTTP_201_CREATED)
def register(payload: PrincipalCreate, directory: Directory) -> PrincipalRead:
    try:
        principal = directory.register_principal(payload)
        return PrincipalRead.model_validate(principal)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_auth_error(exc)
        raise


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, request: Request, service: Service) -> TokenResponse:
    try:
        claims = service.login(payload.email, payload.password, payload.tenant_id)
    except (NotFoundError, ConflictError, AuthError) as exc:
        set_audit_context(
            request,
            action="auth.login",
            detail={"result": {"outcome": "denied", "reason": str(exc)}, "what": {"email": payload.email}},
        )
        _handle_auth_error(exc)
        raise
    request.state.claims = claims
    set_audit_context(request, action="auth.login")
    return _token_response(service, claims)


@router.post("/refresh", response_model=TokenResponse)
def refresh(
    payload: RefreshRequest,
    claims: Annotated[Claims, Depends(get_token_claims_allow_stale)],
    service: Service,
) -> TokenResponse:
    try:
        refreshed = service.mint(
            claims.principal_id,
            payload.tenant_id,
            platform_admin=claims.is_platform_admin,
        )
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_auth_error(exc)
        raise
    return _token_response(service, refreshed)


@router.post("/switch-tenant", response_model=TokenResponse)
def switch_tenant(
    payload: SwitchTenantRequest,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> TokenResponse:
    try:
        switched = service.switch_tenant(
            claims.principal_id,
            payload.tenant_id,
            platform_admin=claims.is_platform_admin,
        )
    except (NotFoundError, ConflictError, AuthError) as exc:
        set_audit_context(
            request,
            action="auth.switch_tenant",
            detail={"result": {"outcome": "denied", "reason": str(exc)}, "what": {"tenant_id": payload.tenant_id}},
        )
        _handle_auth_error(exc)
        raise
    return _token_response(service, switched)


@router.get("/me", response_model=ClaimsRead)
def me(claims: CurrentClaims) -> ClaimsRead:
    return claims_read(claims)


@router.post("/force-refresh/{principal_id}", status_code=status.HTTP_202_ACCEPTED)
def force_refresh(
    principal_id: str,
    claims: CurrentClaims,
    service: Service,
    directory: Directory,
) -> dict[str, object]:
    if not (claims.is_platform_admin or claims.is_privileged()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Owner or admin access required")
    if not claims.is_platform_admin:
        if claims.tenant_id is None or directory.resolve(principal_id, claims.tenant_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Principal not found")
    epoch = service.force_refresh(principal_id, requested_by=claims)
    return {"principal_id": principal_id, "claims_epoch": epoch}
