from __future__ import annotations

from enum import StrEnum


class OrgRole(StrEnum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class WorkflowRole(StrEnum):
    SUBMITTER = "submitter"
    REVIEWER = "reviewer"
    APPROVER = "approver"
    STORE_MANAGER = "store_manager"
    SUPER_ADMIN = "super_admin"


ORG_ROLE_RANK: dict[OrgRole, int] = {
    OrgRole.OWNER: 3,
    OrgRole.ADMIN: 2,
    OrgRole.MEMBER: 1,
}

PRIVILEGED_ORG_ROLES: frozenset[OrgRole] = frozenset({OrgRole.OWNER, OrgRole.ADMIN})


def parse_org_role(value: object) -> OrgRole | None:
    if isinstance(value, OrgRole):
        return value
    if not isinstance(value, str):
        return None
    try:
        return OrgRole(value)
    except ValueError:
        return None


def parse_workflow_role(value: object) -> WorkflowRole | None:
    if isinstance(value, WorkflowRole):
        return value
    if not isinstance(value, str):
        return None
    try:
        return WorkflowRole(value)
    except ValueError:
        return None


def org_role_rank(role: OrgRole | None) -> int:
    if role is None:
        return 0
    return ORG_ROLE_RANK[role]


def is_privileged(role: OrgRole | None) -> bool:
    return role in PRIVILEGED_ORG_ROLES


def dominates(granter: OrgRole | None, target: OrgRole) -> bool:
    """Only a privileged role at or above ``target`` may hand it out or manage a holder of it."""
    return is_privileged(granter) and org_role_rank(granter) >= org_role_rank(target)


def can_grant_workflow_role(granter: OrgRole | None, target: WorkflowRole) -> bool:
    if target == WorkflowRole.SUPER_ADMIN:
        return granter == OrgRole.OWNER
    return is_privileged(granter)
