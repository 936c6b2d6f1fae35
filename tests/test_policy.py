from __future__ import annotations

from typing import Any

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.errors import (
    AccessDeniedWrite,
    CrossTenantAttempt,
    DenialKind,
    TenantInvariantViolation,
)
from ledgerauthz.domain.models import Membership, Organization, Principal, Requisition, resource_type_of
from ledgerauthz.domain.policy import Decision, PolicyEvaluator, Subject
from ledgerauthz.domain.roles import OrgRole, WorkflowRole
from ledgerauthz.domain.rules import Access, Operation, ResourceType, Rule

evaluator = PolicyEvaluator()


def _subject(
    principal_id: str = "u1",
    tenant_id: str | None = "org-a",
    org_role: OrgRole | None = OrgRole.MEMBER,
    workflow_role: WorkflowRole | None = WorkflowRole.SUBMITTER,
    *,
    projects: tuple[str, ...] = (),
    platform_admin: bool = False,
) -> Subject:
    claims = Claims(
        principal_id=principal_id,
        tenant_id=tenant_id,
        org_role=org_role if tenant_id else None,
        workflow_role=workflow_role if tenant_id else None,
        is_platform_admin=platform_admin,
    )
    return Subject(claims=claims, assigned_project_ids=frozenset(projects))


def _requisition(
    tenant_id: str = "org-a",
    created_by: str = "u1",
    status: str = "draft",
    project_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": f"req-{tenant_id}-{created_by}-{status}",
        "tenant_id": tenant_id,
        "created_by": created_by,
        "status": status,
        "project_id": project_id,
    }


def test_member_sees_own_and_assigned_project_requisitions() -> None:
    subject = _subject(projects=("p1",))
    rows = [
        _requisition(created_by="u1"),
        _requisition(created_by="u2", project_id="p1"),
        _requisition(created_by="u2", project_id="p2"),
        _requisition(created_by="u2"),
    ]
    visible = evaluator.filter_visible(subject, ResourceType.REQUISITION, rows)
    assert visible == rows[:2]


def test_privileged_and_super_admin_see_every_requisition_in_tenant() -> None:
    rows = [_requisition(created_by="u2"), _requisition(created_by="u3", project_id="p9")]
    admin = _subject(org_role=OrgRole.ADMIN)
    super_admin = _subject(workflow_role=WorkflowRole.SUPER_ADMIN)
    assert evaluator.filter_visible(admin, ResourceType.REQUISITION, rows) == rows
    assert evaluator.filter_visible(super_admin, ResourceType.REQUISITION, rows) == rows


def test_rows_from_another_tenant_are_silently_filtered() -> None:
    subject = _subject(principal_id="u2", tenant_id="org-b", org_role=OrgRole.OWNER)
    rows = [_requisition(tenant_id="org-a", created_by="u2"), _requisition(tenant_id="org-a")]
    assert evaluator.filter_visible(subject, ResourceType.REQUISITION, rows) == []

    decision = evaluator.authorize(subject, ResourceType.REQUISITION, Operation.READ, rows[0])
    assert decision.allowed is False
    assert decision.kind == DenialKind.READ
    assert decision.target_tenant_id == "org-a"


def test_member_cannot_update_project_created_by_someone_else() -> None:
    project = {"id": "p1", "tenant_id": "org-b", "created_by": "u9"}
    member = _subject(principal_id="u2", tenant_id="org-b")
    decision = evaluator.authorize(member, ResourceType.PROJECT, Operation.UPDATE, project)
    assert decision.allowed is False
    assert decision.kind == DenialKind.WRITE
    assert decision.reason == "update requires the owner or admin role"

    admin = _subject(principal_id="u2", tenant_id="org-b", org_role=OrgRole.ADMIN)
    assert evaluator.authorize(admin, ResourceType.PROJECT, Operation.UPDATE, project).allowed


def test_requisition_edits_are_limited_to_drafts_for_the_creator() -> None:
    creator = _subject()
    assert evaluator.authorize(creator, ResourceType.REQUISITION, Operation.UPDATE, _requisition()).allowed

    submitted = _requisition(status="submitted")
    decision = evaluator.authorize(creator, ResourceType.REQUISITION, Operation.UPDATE, submitted)
    assert decision.allowed is False
    assert "draft" in (decision.reason or "")

    other = _subject(principal_id="u2")
    assert not evaluator.authorize(other, ResourceType.REQUISITION, Operation.DELETE, _requisition()).allowed

    owner = _subject(principal_id="u3", org_role=OrgRole.OWNER)
    assert evaluator.authorize(owner, ResourceType.REQUISITION, Operation.UPDATE, submitted).allowed


def test_requisition_create_must_name_the_acting_principal() -> None:
    subject = _subject()
    assert evaluator.authorize(subject, ResourceType.REQUISITION, Operation.CREATE, _requisition()).allowed
    forged = _requisition(created_by="u2")
    assert not evaluator.authorize(subject, ResourceType.REQUISITION, Operation.CREATE, forged).allowed


def test_platform_admin_reads_across_tenants_but_cannot_write_into_another_tenant() -> None:
    admin = _subject(principal_id="root", tenant_id="org-b", org_role=OrgRole.OWNER, platform_admin=True)
    rows = [_requisition(tenant_id="org-a"), _requisition(tenant_id="org-b")]
    assert evaluator.filter_visible(admin, ResourceType.REQUISITION, rows) == rows

    decision = evaluator.authorize(admin, ResourceType.REQUISITION, Operation.UPDATE, rows[0])
    assert decision.allowed is False
    assert decision.kind == DenialKind.CROSS_TENANT
    assert decision.claimed_tenant_id == "org-b"
    assert decision.target_tenant_id == "org-a"


def test_platform_admin_may_run_administrative_organization_updates() -> None:
    admin = _subject(principal_id="root", tenant_id=None, platform_admin=True)
    organization = {"id": "org-a", "name": "A"}
    assert evaluator.authorize(admin, ResourceType.ORGANIZATION, Operation.UPDATE, organization).allowed
    assert not evaluator.authorize(admin, ResourceType.ORGANIZATION, Operation.DELETE, organization).allowed


def test_tenantless_claims_have_zero_access() -> None:
    subject = _subject(tenant_id=None)
    assert not evaluator.authorize(subject, ResourceType.PROJECT, Operation.READ).allowed
    assert evaluator.filter_visible(subject, ResourceType.REQUISITION, [_requisition()]) == []

    create = evaluator.authorize(subject, ResourceType.REQUISITION, Operation.CREATE, _requisition())
    assert create.kind == DenialKind.INVARIANT
    update = evaluator.authorize(subject, ResourceType.REQUISITION, Operation.UPDATE, _requisition())
    assert update.kind == DenialKind.WRITE


def test_security_events_are_never_writable_through_the_evaluator() -> None:
    owner = _subject(org_role=OrgRole.OWNER)
    row = {"id": "e1", "claimed_tenant_id": "org-a"}
    for operation in (Operation.CREATE, Operation.UPDATE, Operation.DELETE):
        assert not evaluator.authorize(owner, ResourceType.SECURITY_EVENT, operation, row).allowed
    assert evaluator.authorize(owner, ResourceType.SECURITY_EVENT, Operation.READ, row).allowed
    assert not evaluator.authorize(_subject(), ResourceType.SECURITY_EVENT, Operation.READ, row).allowed


def test_missing_rule_denies() -> None:
    restricted = PolicyEvaluator({(ResourceType.PROJECT, Operation.READ): Rule(Access.TENANT_MEMBER)})
    subject = _subject(org_role=OrgRole.OWNER)
    row = {"id": "p1", "tenant_id": "org-a"}
    assert restricted.authorize(subject, ResourceType.PROJECT, Operation.READ, row).allowed
    assert not restricted.authorize(subject, ResourceType.PROJECT, Operation.UPDATE, row).allowed


def test_read_criteria_for_member_restricts_to_owned_or_assigned() -> None:
    criteria = evaluator.read_criteria(_subject(projects=("p1",)), ResourceType.REQUISITION, Requisition)
    sql = str(criteria.compile(compile_kwargs={"literal_binds": True}))
    assert "requisitions.tenant_id = 'org-a'" in sql
    assert "requisitions.created_by = 'u1'" in sql
    assert "requisitions.project_id IN ('p1')" in sql


def test_read_criteria_extremes() -> None:
    admin = _subject(platform_admin=True)
    assert str(evaluator.read_criteria(admin, ResourceType.REQUISITION, Requisition)) == "true"
    tenantless = _subject(tenant_id=None)
    assert str(evaluator.read_criteria(tenantless, ResourceType.REQUISITION, Requisition)) == "false"


def test_decision_maps_to_error_types() -> None:
    cross = Decision.deny(DenialKind.CROSS_TENANT, "x", claimed_tenant_id="a", target_tenant_id="b").to_error()
    assert isinstance(cross, CrossTenantAttempt)
    assert cross.target_tenant_id == "b"
    assert isinstance(Decision.deny(DenialKind.INVARIANT, "x").to_error(), TenantInvariantViolation)
    plain = Decision.deny(DenialKind.WRITE, "x").to_error(operation="update")
    assert type(plain) is AccessDeniedWrite
    assert plain.operation == "update"


def test_resource_type_resolves_for_classes_and_rows() -> None:
    assert resource_type_of(Requisition) is ResourceType.REQUISITION
    assert resource_type_of(Organization) is ResourceType.ORGANIZATION
    assert resource_type_of(Membership) is ResourceType.MEMBERSHIP
    assert resource_type_of(Requisition(title="Paper", created_by="u1")) is ResourceType.REQUISITION
    assert resource_type_of(Principal) is None
