from __future__ import annotations

import pytest

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.roles import (
    OrgRole,
    WorkflowRole,
    can_grant_workflow_role,
    dominates,
    parse_org_role,
    parse_workflow_role,
)


@pytest.mark.parametrize(
    ("granter", "target", "expected"),
    [
        (OrgRole.OWNER, OrgRole.OWNER, True),
        (OrgRole.OWNER, OrgRole.MEMBER, True),
        (OrgRole.ADMIN, OrgRole.ADMIN, True),
        (OrgRole.ADMIN, OrgRole.OWNER, False),
        (OrgRole.MEMBER, OrgRole.MEMBER, False),
        (None, OrgRole.MEMBER, False),
    ],
)
def test_dominates(granter: OrgRole | None, target: OrgRole, expected: bool) -> None:
    assert dominates(granter, target) is expected


def test_super_admin_workflow_role_requires_owner() -> None:
    assert can_grant_workflow_role(OrgRole.OWNER, WorkflowRole.SUPER_ADMIN)
    assert not can_grant_workflow_role(OrgRole.ADMIN, WorkflowRole.SUPER_ADMIN)
    assert can_grant_workflow_role(OrgRole.ADMIN, WorkflowRole.APPROVER)
    assert not can_grant_workflow_role(OrgRole.MEMBER, WorkflowRole.SUBMITTER)


def test_parse_roles_rejects_unknown_values() -> None:
    assert parse_org_role("admin") == OrgRole.ADMIN
    assert parse_org_role("root") is None
    assert parse_org_role(3) is None
    assert parse_workflow_role("store_manager") == WorkflowRole.STORE_MANAGER
    assert parse_workflow_role(None) is None


def test_claims_payload_round_trip_keeps_roles() -> None:
    claims = Claims(
        principal_id="u1",
        tenant_id="org-a",
        org_role=OrgRole.ADMIN,
        workflow_role=WorkflowRole.APPROVER,
    )
    assert Claims.from_payload(claims.to_payload()) == claims


def test_claims_without_tenant_carry_no_roles() -> None:
    claims = Claims.from_payload(
        {"sub": "u1", "tenant_id": None, "org_role": "owner", "workflow_role": "super_admin"}
    )
    assert claims.tenant_id is None
    assert claims.org_role is None
    assert claims.workflow_role is None
    assert not claims.is_privileged()


def test_platform_admin_flag_must_be_literal_true() -> None:
    assert Claims.from_payload({"sub": "u1", "is_platform_admin": "true"}).is_platform_admin is False
    assert Claims.from_payload({"sub": "u1", "is_platform_admin": True}).is_platform_admin is True


def test_claims_payload_requires_subject() -> None:
    with pytest.raises(ValueError):
        Claims.from_payload({"tenant_id": "org-a"})
