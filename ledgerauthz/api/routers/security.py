from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ledgerauthz.api.deps import get_current_claims, require_platform_admin
from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.models import (
    CrossTenantAttemptSummaryRead,
    InvariantViolationCountRead,
    SecurityAlertRead,
    SecurityCleanupRead,
    SecurityEventRead,
    SecurityEventType,
    SecurityHealthCheckRead,
    SecurityReportRead,
    SecuritySeverity,
)
from ledgerauthz.services.security_service import PermissionDeniedError, SecurityService

router = APIRouter()


def get_security_service() -> SecurityService:
    return SecurityService()


CurrentClaims = Annotated[Claims, Depends(get_current_claims)]
PlatformAdminClaims = Annotated[Claims, Depends(require_platform_admin)]
Service = Annotated[SecurityService, Depends(get_security_service)]


def _handle_security_error(exc: Exception) -> None:
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    raise exc


@router.get("/events", response_model=list[SecurityEventRead])
def list_events(
    claims: CurrentClaims,
    service: Service,
    hours: Annotated[int, Query(ge=1, le=24 * 90)] = 24,
    severity: SecuritySeverity | None = None,
    event_type: SecurityEventType | None = None,
) -> list[SecurityEventRead]:
    try:
        rows = service.recent_events(claims, hours=hours, severity=severity, event_type=event_type)
    except PermissionDeniedError as exc:
        _handle_security_error(exc)
        raise
    return [SecurityEventRead.model_validate(item) for item in rows]


@router.get("/events/counts", response_model=dict[str, int])
def severity_counts(
    claims: CurrentClaims,
    service: Service,
    hours: Annotated[int, Query(ge=1, le=24 * 90)] = 24,
) -> dict[str, int]:
    try:
        return service.severity_counts(claims, hours=hours)
    except PermissionDeniedError as exc:
        _handle_security_error(exc)
        raise


@router.get("/cross-tenant-attempts", response_model=list[CrossTenantAttemptSummaryRead])
def cross_tenant_attempts(
    claims: PlatformAdminClaims,
    service: Service,
    hours: Annotated[int, Query(ge=1, le=24 * 90)] = 24 * 7,
) -> list[CrossTenantAttemptSummaryRead]:
    return service.cross_tenant_attempts_by_principal(claims, hours=hours)


@router.get("/invariant-violations", response_model=list[InvariantViolationCountRead])
def invariant_violations(
    claims: PlatformAdminClaims,
    service: Service,
    days: Annotated[int, Query(ge=1, le=365)] = 30,
) -> list[InvariantViolationCountRead]:
    return service.invariant_violation_counts(claims, days=days)


@router.get("/rate-limit-violations", response_model=list[SecurityEventRead])
def rate_limit_violations(
    claims: PlatformAdminClaims,
    service: Service,
    hours: Annotated[int, Query(ge=1, le=24 * 90)] = 24,
) -> list[SecurityEventRead]:
    return [SecurityEventRead.model_validate(item) for item in service.rate_limit_violations(claims, hours=hours)]


@router.get("/health", response_model=list[SecurityHealthCheckRead])
def health(_claims: PlatformAdminClaims, service: Service) -> list[SecurityHealthCheckRead]:
    return service.health_status()


@router.get("/alerts", response_model=list[SecurityAlertRead])
def alerts(_claims: PlatformAdminClaims, service: Service) -> list[SecurityAlertRead]:
    return service.check_alerts()


@router.get("/report", response_model=SecurityReportRead)
def report(
    claims: PlatformAdminClaims,
    service: Service,
    days: Annotated[int, Query(ge=1, le=365)] = 7,
) -> SecurityReportRead:
    return service.report(claims, days=days)


@router.post("/cleanup", response_model=SecurityCleanupRead)
def cleanup(_claims: PlatformAdminClaims, service: Service) -> SecurityCleanupRead:
    return SecurityCleanupRead(deleted=service.cleanup())
