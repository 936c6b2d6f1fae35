from __future__ import annotations

from enum import StrEnum


class DenialKind(StrEnum):
    READ = "access_denied_read"
    WRITE = "access_denied_write"
    CROSS_TENANT = "cross_tenant_attempt"
    INVARIANT = "tenant_invariant_violation"


class AuthorizationError(Exception):
    kind: DenialKind = DenialKind.WRITE

    def __init__(
        self,
        reason: str,
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.operation = operation


class AccessDeniedWrite(AuthorizationError):
    kind = DenialKind.WRITE


class CrossTenantAttempt(AccessDeniedWrite):
    kind = DenialKind.CROSS_TENANT

    def __init__(
        self,
        reason: str,
        *,
        claimed_tenant_id: str | None,
        target_tenant_id: str | None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(
            reason,
            resource_type=resource_type,
            resource_id=resource_id,
            operation=operation,
        )
        self.claimed_tenant_id = claimed_tenant_id
        self.target_tenant_id = target_tenant_id


class TenantInvariantViolation(AuthorizationError):
    kind = DenialKind.INVARIANT
