from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ledgerauthz.domain.roles import (
    OrgRole,
    WorkflowRole,
    is_privileged,
    parse_org_role,
    parse_workflow_role,
)


@dataclass(frozen=True)
class Claims:
    principal_id: str
    tenant_id: str | None = None
    org_role: OrgRole | None = None
    workflow_role: WorkflowRole | None = None
    is_platform_admin: bool = False

    def has_tenant(self) -> bool:
        return self.tenant_id is not None

    def is_privileged(self) -> bool:
        return self.tenant_id is not None and is_privileged(self.org_role)

    def is_super_admin(self) -> bool:
        return self.tenant_id is not None and self.workflow_role == WorkflowRole.SUPER_ADMIN

    def to_payload(self) -> dict[str, Any]:
        return {
            "sub": self.principal_id,
            "tenant_id": self.tenant_id,
            "org_role": None if self.org_role is None else self.org_role.value,
            "workflow_role": None if self.workflow_role is None else self.workflow_role.value,
            "is_platform_admin": self.is_platform_admin,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Claims:
        principal_id = payload.get("sub")
        if not isinstance(principal_id, str) or not principal_id:
            raise ValueError("Claims payload has no subject")
        tenant_id = payload.get("tenant_id")
        if not isinstance(tenant_id, str) or not tenant_id:
            tenant_id = None
        # roles without a tenant carry no privilege
        org_role = parse_org_role(payload.get("org_role")) if tenant_id else None
        workflow_role = parse_workflow_role(payload.get("workflow_role")) if tenant_id else None
        return cls(
            principal_id=principal_id,
            tenant_id=tenant_id,
            org_role=org_role,
            workflow_role=workflow_role,
            is_platform_admin=payload.get("is_platform_admin") is True,
        )
