from __future__ import annotations

from dataclasses import dataclass

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.errors import (
    AuthorizationError,
    CrossTenantAttempt,
    DenialKind,
    TenantInvariantViolation,
)


@dataclass(frozen=True)
class GuardResult:
    ok: bool
    tenant_id: str | None = None
    kind: DenialKind | None = None
    reason: str | None = None
    declared_tenant_id: str | None = None

    def to_error(
        self,
        *,
        claimed_tenant_id: str | None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        operation: str | None = None,
    ) -> AuthorizationError:
        if self.ok:
            raise ValueError("accepted guard result has no error")
        reason = self.reason or "tenant invariant violated"
        if self.kind == DenialKind.CROSS_TENANT:
            return CrossTenantAttempt(
                reason,
                claimed_tenant_id=claimed_tenant_id,
                target_tenant_id=self.declared_tenant_id,
                resource_type=resource_type,
                resource_id=resource_id,
                operation=operation,
            )
        return TenantInvariantViolation(
            reason,
            resource_type=resource_type,
            resource_id=resource_id,
            operation=operation,
        )


def check_create(claims: Claims | None, declared_tenant_id: str | None) -> GuardResult:
    """Decide the tenant a new record is stamped with.

    A declared tenant must match the claims; an undeclared one takes the
    claims tenant. Without a claims tenant nothing may be created.
    """
    claimed = None if claims is None else claims.tenant_id
    if claimed is None:
        return GuardResult(
            ok=False,
            kind=DenialKind.INVARIANT,
            reason="no tenant could be determined for the new record",
            declared_tenant_id=declared_tenant_id,
        )
    if declared_tenant_id is not None and declared_tenant_id != claimed:
        return GuardResult(
            ok=False,
            kind=DenialKind.CROSS_TENANT,
            reason="record declares a tenant other than the active tenant",
            declared_tenant_id=declared_tenant_id,
        )
    return GuardResult(ok=True, tenant_id=claimed, declared_tenant_id=declared_tenant_id)


def check_tenant_unchanged(committed_tenant_id: str | None, current_tenant_id: str | None) -> GuardResult:
    if current_tenant_id is None:
        return GuardResult(
            ok=False,
            kind=DenialKind.INVARIANT,
            reason="tenant_id cannot be cleared",
            declared_tenant_id=committed_tenant_id,
        )
    if committed_tenant_id is not None and committed_tenant_id != current_tenant_id:
        return GuardResult(
            ok=False,
            kind=DenialKind.INVARIANT,
            reason="tenant_id is immutable once committed",
            declared_tenant_id=current_tenant_id,
        )
    return GuardResult(ok=True, tenant_id=current_tenant_id)
