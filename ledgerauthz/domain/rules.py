from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ResourceType(StrEnum):
    ORGANIZATION = "organization"
    MEMBERSHIP = "membership"
    PROJECT = "project"
    PROJECT_ASSIGNMENT = "project_assignment"
    EXPENSE_ACCOUNT = "expense_account"
    CATEGORY = "category"
    APPROVAL_WORKFLOW = "approval_workflow"
    REQUISITION = "requisition"
    REQUISITION_TEMPLATE = "requisition_template"
    SECURITY_EVENT = "security_event"


class Operation(StrEnum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def is_write(self) -> bool:
        return self != Operation.READ


class Access(StrEnum):
    # any principal holding a role in the row's tenant
    TENANT_MEMBER = "tenant_member"
    # org owner/admin of the row's tenant
    PRIVILEGED = "privileged"
    # creator, assignee of the parent project, privileged or super_admin
    RELATED = "related"
    # the row's owner field must name the acting principal
    CREATOR = "creator"
    # creator while the row is in an editable state, privileged or super_admin
    OWNER_EDITABLE = "owner_editable"
    NOBODY = "nobody"


@dataclass(frozen=True)
class Rule:
    access: Access
    tenant_field: str = "tenant_id"
    owner_field: str | None = None
    project_field: str | None = None
    state_field: str | None = None
    editable_states: frozenset[str] = frozenset()
    # platform admins may perform this write across tenants
    admin_operation: bool = False


RuleKey = tuple[ResourceType, Operation]

DRAFT_ONLY = frozenset({"draft"})


def _catalog(resource_type: ResourceType) -> dict[RuleKey, Rule]:
    return {
        (resource_type, Operation.READ): Rule(Access.TENANT_MEMBER),
        (resource_type, Operation.CREATE): Rule(Access.PRIVILEGED),
        (resource_type, Operation.UPDATE): Rule(Access.PRIVILEGED),
        (resource_type, Operation.DELETE): Rule(Access.PRIVILEGED),
    }


RULES: dict[RuleKey, Rule] = {
    (ResourceType.ORGANIZATION, Operation.READ): Rule(Access.TENANT_MEMBER, tenant_field="id"),
    (ResourceType.ORGANIZATION, Operation.CREATE): Rule(Access.NOBODY, tenant_field="id"),
    (ResourceType.ORGANIZATION, Operation.UPDATE): Rule(
        Access.PRIVILEGED,
        tenant_field="id",
        admin_operation=True,
    ),
    (ResourceType.ORGANIZATION, Operation.DELETE): Rule(Access.NOBODY, tenant_field="id"),
    (ResourceType.MEMBERSHIP, Operation.READ): Rule(
        Access.TENANT_MEMBER,
        tenant_field="organization_id",
    ),
    (ResourceType.MEMBERSHIP, Operation.CREATE): Rule(
        Access.PRIVILEGED,
        tenant_field="organization_id",
    ),
    (ResourceType.MEMBERSHIP, Operation.UPDATE): Rule(
        Access.PRIVILEGED,
        tenant_field="organization_id",
    ),
    (ResourceType.MEMBERSHIP, Operation.DELETE): Rule(
        Access.PRIVILEGED,
        tenant_field="organization_id",
    ),
    **_catalog(ResourceType.PROJECT),
    **_catalog(ResourceType.EXPENSE_ACCOUNT),
    **_catalog(ResourceType.CATEGORY),
    **_catalog(ResourceType.APPROVAL_WORKFLOW),
    (ResourceType.PROJECT_ASSIGNMENT, Operation.READ): Rule(
        Access.RELATED,
        owner_field="user_id",
        project_field="project_id",
    ),
    (ResourceType.PROJECT_ASSIGNMENT, Operation.CREATE): Rule(Access.PRIVILEGED),
    (ResourceType.PROJECT_ASSIGNMENT, Operation.UPDATE): Rule(Access.PRIVILEGED),
    (ResourceType.PROJECT_ASSIGNMENT, Operation.DELETE): Rule(Access.PRIVILEGED),
    (ResourceType.REQUISITION, Operation.READ): Rule(
        Access.RELATED,
        owner_field="created_by",
        project_field="project_id",
    ),
    (ResourceType.REQUISITION, Operation.CREATE): Rule(Access.CREATOR, owner_field="created_by"),
    (ResourceType.REQUISITION, Operation.UPDATE): Rule(
        Access.OWNER_EDITABLE,
        owner_field="created_by",
        state_field="status",
        editable_states=DRAFT_ONLY,
    ),
    (ResourceType.REQUISITION, Operation.DELETE): Rule(
        Access.OWNER_EDITABLE,
        owner_field="created_by",
        state_field="status",
        editable_states=DRAFT_ONLY,
    ),
    (ResourceType.REQUISITION_TEMPLATE, Operation.READ): Rule(Access.TENANT_MEMBER),
    (ResourceType.REQUISITION_TEMPLATE, Operation.CREATE): Rule(
        Access.CREATOR,
        owner_field="created_by",
    ),
    (ResourceType.REQUISITION_TEMPLATE, Operation.UPDATE): Rule(
        Access.OWNER_EDITABLE,
        owner_field="created_by",
    ),
    (ResourceType.REQUISITION_TEMPLATE, Operation.DELETE): Rule(
        Access.OWNER_EDITABLE,
        owner_field="created_by",
    ),
    (ResourceType.SECURITY_EVENT, Operation.READ): Rule(
        Access.PRIVILEGED,
        tenant_field="claimed_tenant_id",
    ),
    (ResourceType.SECURITY_EVENT, Operation.CREATE): Rule(Access.NOBODY),
    (ResourceType.SECURITY_EVENT, Operation.UPDATE): Rule(Access.NOBODY),
    (ResourceType.SECURITY_EVENT, Operation.DELETE): Rule(Access.NOBODY),
}
