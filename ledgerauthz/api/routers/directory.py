from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ledgerauthz.api.deps import get_current_claims, raise_for_denial
from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.errors import AuthorizationError
from ledgerauthz.domain.models import (
    InvitationCreate,
    InvitationRead,
    MembershipRead,
    MembershipUpdate,
    OrganizationCreate,
    OrganizationRead,
    OrganizationUpdate,
    ResolvedRoleRead,
)
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
Service = Annotated[DirectoryService, Depends(get_directory_service)]
ClaimsCache = Annotated[ClaimsService, Depends(get_claims_service)]


def _handle_directory_error(request: Request, exc: Exception) -> None:
    if isinstance(exc, AuthorizationError):
        raise_for_denial(request, exc)
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    raise exc


@router.post("/organizations", response_model=OrganizationRead, status_code=status.HTTP_201_CREATED)
def create_organization(
    payload: OrganizationCreate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> OrganizationRead:
    try:
        organization = service.create_organization(claims.principal_id, payload)
        return OrganizationRead.model_validate(organization)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_directory_error(request, exc)
        raise


@router.get("/organizations", response_model=list[OrganizationRead])
def list_organizations(claims: CurrentClaims, service: Service) -> list[OrganizationRead]:
    return [OrganizationRead.model_validate(item) for item in service.list_organizations(claims)]


@router.get("/organizations/{organization_id}", response_model=OrganizationRead)
def get_organization(
    organization_id: str,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> OrganizationRead:
    try:
        return OrganizationRead.model_validate(service.get_organization(claims, organization_id))
    except (NotFoundError, AuthorizationError) as exc:
        _handle_directory_error(request, exc)
        raise


@router.patch("/organizations/{organization_id}", response_model=OrganizationRead)
def update_organization(
    organization_id: str,
    payload: OrganizationUpdate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> OrganizationRead:
    try:
        organization = service.update_organization(claims, organization_id, payload)
        return OrganizationRead.model_validate(organization)
    except (NotFoundError, ConflictError, AuthorizationError) as exc:
        _handle_directory_error(request, exc)
        raise


@router.post("/invitations", response_model=InvitationRead, status_code=status.HTTP_201_CREATED)
def invite_member(
    payload: InvitationCreate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> InvitationRead:
    try:
        return InvitationRead.model_validate(service.invite_member(claims, payload))
    except (NotFoundError, ConflictError, AuthorizationError) as exc:
        _handle_directory_error(request, exc)
        raise


@router.post("/invitations/{token}/accept", response_model=MembershipRead)
def accept_invitation(
    token: str,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> MembershipRead:
    try:
        return MembershipRead.model_validate(service.accept_invitation(claims.principal_id, token))
    except (NotFoundError, ConflictError) as exc:
        _handle_directory_error(request, exc)
        raise


@router.get("/members", response_model=list[MembershipRead])
def list_members(claims: CurrentClaims, service: Service) -> list[MembershipRead]:
    return [MembershipRead.model_validate(item) for item in service.list_members(claims)]


@router.patch("/members/{membership_id}", response_model=MembershipRead)
def change_member_role(
    membership_id: str,
    payload: MembershipUpdate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
    claims_cache: ClaimsCache,
) -> MembershipRead:
    try:
        membership = service.change_member_role(claims, membership_id, payload)
    except (NotFoundError, ConflictError, AuthorizationError) as exc:
        _handle_directory_error(request, exc)
        raise
    if payload.force_refresh:
        claims_cache.force_refresh(membership.principal_id, requested_by=claims)
    return MembershipRead.model_validate(membership)


@router.delete("/members/{membership_id}", response_model=MembershipRead)
def revoke_member(
    membership_id: str,
    request: Request,
    claims: CurrentClaims,
    service: Service,
    claims_cache: ClaimsCache,
    force_refresh: Annotated[bool, Query()] = False,
) -> MembershipRead:
    try:
        membership = service.revoke_member(claims, membership_id)
    except (NotFoundError, ConflictError, AuthorizationError) as exc:
        _handle_directory_error(request, exc)
        raise
    if force_refresh:
        claims_cache.force_refresh(membership.principal_id, requested_by=claims)
    return MembershipRead.model_validate(membership)


@router.get("/resolve/{principal_id}", response_model=ResolvedRoleRead)
def resolve_role(
    principal_id: str,
    claims: CurrentClaims,
    service: Service,
    tenant_id: Annotated[str | None, Query()] = None,
) -> ResolvedRoleRead:
    target_tenant_id = tenant_id or claims.tenant_id
    if target_tenant_id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Membership not found")
    if not claims.is_platform_admin:
        # principals resolve themselves; privileged members resolve their own tenant
        own_lookup = principal_id == claims.principal_id
        same_tenant_admin = claims.is_privileged() and target_tenant_id == claims.tenant_id
        if not (own_lookup or same_tenant_admin):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Membership not found")
    resolved = service.resolve(principal_id, target_tenant_id)
    if resolved is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Membership not found")
    return ResolvedRoleRead(
        principal_id=principal_id,
        tenant_id=target_tenant_id,
        org_role=resolved.org_role,
        workflow_role=resolved.workflow_role,
        is_platform_admin=service.is_platform_admin(principal_id),
    )
