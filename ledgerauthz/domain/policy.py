from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy import and_, false, or_, true
from sqlalchemy.sql.elements import ColumnElement

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.errors import (
    AccessDeniedWrite,
    AuthorizationError,
    CrossTenantAttempt,
    DenialKind,
    TenantInvariantViolation,
)
from ledgerauthz.domain.rules import RULES, Access, Operation, ResourceType, Rule, RuleKey

RowT = TypeVar("RowT")


@dataclass(frozen=True)
class Subject:
    claims: Claims
    assigned_project_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def principal_id(self) -> str:
        return self.claims.principal_id

    @property
    def tenant_id(self) -> str | None:
        return self.claims.tenant_id


@dataclass(frozen=True)
class Decision:
    allowed: bool
    kind: DenialKind | None = None
    reason: str | None = None
    claimed_tenant_id: str | None = None
    target_tenant_id: str | None = None

    @classmethod
    def allow(cls) -> Decision:
        return cls(allowed=True)

    @classmethod
    def deny(
        cls,
        kind: DenialKind,
        reason: str,
        *,
        claimed_tenant_id: str | None = None,
        target_tenant_id: str | None = None,
    ) -> Decision:
        return cls(
            allowed=False,
            kind=kind,
            reason=reason,
            claimed_tenant_id=claimed_tenant_id,
            target_tenant_id=target_tenant_id,
        )

    def to_error(
        self,
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        operation: str | None = None,
    ) -> AuthorizationError:
        if self.allowed:
            raise ValueError("allowed decision has no error")
        reason = self.reason or "write denied"
        if self.kind == DenialKind.CROSS_TENANT:
            return CrossTenantAttempt(
                reason,
                claimed_tenant_id=self.claimed_tenant_id,
                target_tenant_id=self.target_tenant_id,
                resource_type=resource_type,
                resource_id=resource_id,
                operation=operation,
            )
        if self.kind == DenialKind.INVARIANT:
            return TenantInvariantViolation(
                reason,
                resource_type=resource_type,
                resource_id=resource_id,
                operation=operation,
            )
        return AccessDeniedWrite(
            reason,
            resource_type=resource_type,
            resource_id=resource_id,
            operation=operation,
        )


def row_value(row: object, name: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


def _state_value(value: object) -> object:
    return getattr(value, "value", value)


class PolicyEvaluator:
    def __init__(self, rules: Mapping[RuleKey, Rule] | None = None) -> None:
        self._rules = dict(RULES if rules is None else rules)

    def rule_for(self, resource_type: ResourceType, operation: Operation) -> Rule:
        return self._rules.get((resource_type, operation), Rule(Access.NOBODY))

    def authorize(
        self,
        subject: Subject,
        resource_type: ResourceType,
        operation: Operation,
        row: object | None = None,
    ) -> Decision:
        rule = self.rule_for(resource_type, operation)
        if operation == Operation.READ:
            return self._authorize_read(subject, rule, row)
        return self._authorize_write(subject, rule, operation, row)

    def is_visible(self, subject: Subject, resource_type: ResourceType, row: object) -> bool:
        return self.authorize(subject, resource_type, Operation.READ, row).allowed

    def filter_visible(
        self,
        subject: Subject,
        resource_type: ResourceType,
        rows: Iterable[RowT],
    ) -> list[RowT]:
        return [row for row in rows if self.is_visible(subject, resource_type, row)]

    def read_criteria(
        self,
        subject: Subject,
        resource_type: ResourceType,
        entity: type[Any],
    ) -> ColumnElement[bool]:
        claims = subject.claims
        if claims.is_platform_admin:
            return true()
        rule = self.rule_for(resource_type, Operation.READ)
        if claims.tenant_id is None or claims.org_role is None or rule.access == Access.NOBODY:
            return false()

        tenant_clause = getattr(entity, rule.tenant_field) == claims.tenant_id
        if rule.access == Access.TENANT_MEMBER:
            return tenant_clause
        if rule.access == Access.PRIVILEGED:
            return tenant_clause if claims.is_privileged() else false()
        if rule.access == Access.RELATED:
            if claims.is_privileged() or claims.is_super_admin():
                return tenant_clause
            related: list[ColumnElement[bool]] = []
            if rule.owner_field is not None:
                related.append(getattr(entity, rule.owner_field) == claims.principal_id)
            if rule.project_field is not None and subject.assigned_project_ids:
                project_column = getattr(entity, rule.project_field)
                related.append(project_column.in_(sorted(subject.assigned_project_ids)))
            if not related:
                return false()
            return and_(tenant_clause, or_(*related))
        if rule.access == Access.CREATOR and rule.owner_field is not None:
            return and_(tenant_clause, getattr(entity, rule.owner_field) == claims.principal_id)
        return false()

    def _authorize_read(self, subject: Subject, rule: Rule, row: object | None) -> Decision:
        claims = subject.claims
        if claims.is_platform_admin:
            return Decision.allow()
        if claims.tenant_id is None or claims.org_role is None:
            return Decision.deny(DenialKind.READ, "no active tenant in claims")
        if row is None:
            # listing; rows are filtered individually
            if rule.access == Access.NOBODY:
                return Decision.deny(DenialKind.READ, "resource is not readable")
            return Decision.allow()
        row_tenant = row_value(row, rule.tenant_field)
        if row_tenant != claims.tenant_id:
            return Decision.deny(
                DenialKind.READ,
                "row belongs to another tenant",
                claimed_tenant_id=claims.tenant_id,
                target_tenant_id=row_tenant,
            )
        if self._access_granted(subject, rule, Operation.READ, row):
            return Decision.allow()
        return Decision.deny(DenialKind.READ, "row is not visible to this principal")

    def _authorize_write(
        self,
        subject: Subject,
        rule: Rule,
        operation: Operation,
        row: object | None,
    ) -> Decision:
        claims = subject.claims
        row_tenant = None if row is None else row_value(row, rule.tenant_field)

        if claims.is_platform_admin and rule.admin_operation and operation == Operation.UPDATE:
            return Decision.allow()
        if rule.access == Access.NOBODY:
            return Decision.deny(DenialKind.WRITE, f"{operation.value} is not permitted on this resource")
        if claims.tenant_id is None:
            if operation == Operation.CREATE:
                return Decision.deny(
                    DenialKind.INVARIANT,
                    "no tenant could be determined for the new record",
                    target_tenant_id=row_tenant,
                )
            return Decision.deny(DenialKind.WRITE, "no active tenant in claims")
        if row is None and operation != Operation.CREATE:
            return Decision.deny(DenialKind.WRITE, f"{operation.value} requires a target record")
        if row_tenant is not None and row_tenant != claims.tenant_id:
            return Decision.deny(
                DenialKind.CROSS_TENANT,
                "record belongs to another tenant",
                claimed_tenant_id=claims.tenant_id,
                target_tenant_id=row_tenant,
            )
        if claims.org_role is None:
            return Decision.deny(DenialKind.WRITE, "no role in the active tenant")
        if self._access_granted(subject, rule, operation, row):
            return Decision.allow()
        return Decision.deny(DenialKind.WRITE, self._denial_reason(rule, operation))

    def _access_granted(
        self,
        subject: Subject,
        rule: Rule,
        operation: Operation,
        row: object | None,
    ) -> bool:
        claims = subject.claims
        access = rule.access
        if access == Access.TENANT_MEMBER:
            return True
        if access == Access.PRIVILEGED:
            return claims.is_privileged()
        if access == Access.NOBODY or row is None:
            return False

        is_owner = rule.owner_field is not None and row_value(row, rule.owner_field) == claims.principal_id
        if access == Access.CREATOR:
            return is_owner
        if access == Access.RELATED:
            if claims.is_privileged() or claims.is_super_admin() or is_owner:
                return True
            if rule.project_field is None:
                return False
            return row_value(row, rule.project_field) in subject.assigned_project_ids
        if access == Access.OWNER_EDITABLE:
            if claims.is_privileged() or claims.is_super_admin():
                return True
            if not is_owner:
                return False
            if not rule.editable_states or rule.state_field is None:
                return True
            return _state_value(row_value(row, rule.state_field)) in rule.editable_states
        return False

    def _denial_reason(self, rule: Rule, operation: Operation) -> str:
        if rule.access == Access.PRIVILEGED:
            return f"{operation.value} requires the owner or admin role"
        if rule.access == Access.CREATOR:
            return f"{operation.value} is only allowed for records owned by the acting principal"
        if rule.access == Access.OWNER_EDITABLE and rule.editable_states:
            states = ", ".join(sorted(rule.editable_states))
            return f"{operation.value} is only allowed for the creator while the record is in state: {states}"
        if rule.access == Access.OWNER_EDITABLE:
            return f"{operation.value} is only allowed for the creator or an owner/admin"
        return f"{operation.value} is not permitted"
