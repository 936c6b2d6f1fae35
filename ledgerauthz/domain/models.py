from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, ClassVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from ledgerauthz.domain.roles import OrgRole, WorkflowRole
from ledgerauthz.domain.rules import Operation, ResourceType


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class OrganizationPlan(StrEnum):
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class OrganizationStatus(StrEnum):
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


PLAN_USER_LIMITS: dict[OrganizationPlan, int] = {
    OrganizationPlan.FREE: 3,
    OrganizationPlan.STARTER: 5,
    OrganizationPlan.PROFESSIONAL: 10,
    OrganizationPlan.ENTERPRISE: 999,
}


class RequisitionStatus(StrEnum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class SecuritySeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class SecurityEventType(StrEnum):
    CROSS_TENANT_ACCESS_ATTEMPT = "cross_tenant_access_attempt"
    TENANT_INVARIANT_VIOLATION = "tenant_invariant_violation"
    ACCESS_DENIED = "access_denied"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    LOGIN_FAILED = "login_failed"
    IP_NOT_ALLOWED = "ip_not_allowed"
    STALE_CLAIMS = "stale_claims"
    CLAIMS_FORCE_REFRESH = "claims_force_refresh"
    ROLE_CHANGED = "role_changed"
    MEMBERSHIP_REVOKED = "membership_revoked"
    SESSION_EXPIRED = "session_expired"


class AlertLevel(StrEnum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Organization(SQLModel, table=True):
    __tablename__ = "organizations"
    __resource_type__: ClassVar[ResourceType] = ResourceType.ORGANIZATION

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    slug: str = Field(index=True, unique=True)
    plan: OrganizationPlan = Field(default=OrganizationPlan.FREE)
    status: OrganizationStatus = Field(default=OrganizationStatus.TRIAL, index=True)
    max_users: int = Field(default=PLAN_USER_LIMITS[OrganizationPlan.FREE])
    max_projects: int = Field(default=10)
    max_requisitions_per_month: int = Field(default=100)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Principal(SQLModel, table=True):
    __tablename__ = "principals"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    display_name: str | None = None
    password_hash: str
    is_active: bool = Field(default=True)
    active_tenant_id: str | None = Field(default=None, foreign_key="organizations.id", index=True)
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Membership(SQLModel, table=True):
    __tablename__ = "memberships"
    __resource_type__: ClassVar[ResourceType] = ResourceType.MEMBERSHIP
    __table_args__ = (
        UniqueConstraint("organization_id", "principal_id", name="uq_memberships_org_principal"),
        Index("ix_memberships_principal_active", "principal_id", "is_active"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    principal_id: str = Field(foreign_key="principals.id", index=True)
    org_role: OrgRole = Field(default=OrgRole.MEMBER)
    workflow_role: WorkflowRole = Field(default=WorkflowRole.SUBMITTER)
    is_active: bool = Field(default=True)
    invited_by: str | None = Field(default=None, foreign_key="principals.id")
    invited_at: datetime | None = None
    accepted_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Invitation(SQLModel, table=True):
    __tablename__ = "invitations"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: str = Field(foreign_key="organizations.id", index=True)
    email: str = Field(index=True)
    org_role: OrgRole = Field(default=OrgRole.MEMBER)
    workflow_role: WorkflowRole = Field(default=WorkflowRole.SUBMITTER)
    token: str = Field(index=True, unique=True)
    invited_by: str = Field(foreign_key="principals.id")
    created_at: datetime = Field(default_factory=now_utc, index=True)
    expires_at: datetime
    accepted_at: datetime | None = None


class PlatformAdmin(SQLModel, table=True):
    __tablename__ = "platform_admins"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    is_active: bool = Field(default=True)
    allowed_ips: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    require_ip_check: bool = Field(default=False)
    session_timeout_minutes: int = Field(default=60)
    failed_login_count: int = Field(default=0)
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class PlatformAdminSession(SQLModel, table=True):
    __tablename__ = "platform_admin_sessions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    admin_id: str = Field(foreign_key="platform_admins.id", index=True)
    session_token: str = Field(index=True, unique=True)
    ip: str | None = None
    user_agent: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    last_activity_at: datetime = Field(default_factory=now_utc)
    expires_at: datetime = Field(index=True)
    is_active: bool = Field(default=True, index=True)


class LoginAttempt(SQLModel, table=True):
    __tablename__ = "login_attempts"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email: str = Field(index=True)
    ip: str | None = Field(default=None, index=True)
    success: bool = Field(default=False)
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class SecurityEvent(SQLModel, table=True):
    __tablename__ = "security_events"
    __resource_type__: ClassVar[ResourceType] = ResourceType.SECURITY_EVENT
    __table_args__ = (
        Index("ix_security_events_type_created", "event_type", "created_at"),
        Index("ix_security_events_severity_created", "severity", "created_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: SecurityEventType = Field(index=True)
    severity: SecuritySeverity = Field(index=True)
    principal_id: str | None = Field(default=None, index=True)
    principal_email: str | None = None
    ip: str | None = None
    claimed_tenant_id: str | None = Field(default=None, index=True)
    target_tenant_id: str | None = Field(default=None, index=True)
    resource_type: str | None = None
    resource_id: str | None = None
    action_attempted: str | None = None
    message: str
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    was_blocked: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class TenantScoped(SQLModel):
    tenant_id: str | None = Field(
        default=None,
        foreign_key="organizations.id",
        index=True,
        nullable=False,
    )


class Project(TenantScoped, table=True):
    __tablename__ = "projects"
    __resource_type__: ClassVar[ResourceType] = ResourceType.PROJECT
    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_projects_tenant_code"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    code: str | None = None
    description: str | None = None
    is_active: bool = Field(default=True)
    created_by: str = Field(foreign_key="principals.id", index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class ProjectAssignment(TenantScoped, table=True):
    __tablename__ = "project_assignments"
    __resource_type__: ClassVar[ResourceType] = ResourceType.PROJECT_ASSIGNMENT
    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_assignments_project_user"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    user_id: str = Field(foreign_key="principals.id", index=True)
    assigned_by: str | None = Field(default=None, foreign_key="principals.id")
    created_at: datetime = Field(default_factory=now_utc, index=True)


class ExpenseAccount(TenantScoped, table=True):
    __tablename__ = "expense_accounts"
    __resource_type__: ClassVar[ResourceType] = ResourceType.EXPENSE_ACCOUNT
    __table_args__ = (UniqueConstraint("tenant_id", "code", name="uq_expense_accounts_tenant_code"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    code: str = Field(index=True)
    name: str
    created_by: str = Field(foreign_key="principals.id")
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Category(TenantScoped, table=True):
    __tablename__ = "categories"
    __resource_type__: ClassVar[ResourceType] = ResourceType.CATEGORY
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_categories_tenant_name"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    description: str | None = None
    created_by: str = Field(foreign_key="principals.id")
    created_at: datetime = Field(default_factory=now_utc, index=True)


class ApprovalWorkflow(TenantScoped, table=True):
    __tablename__ = "approval_workflows"
    __resource_type__: ClassVar[ResourceType] = ResourceType.APPROVAL_WORKFLOW

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    min_amount: float = Field(default=0.0)
    max_amount: float | None = None
    approver_role: WorkflowRole = Field(default=WorkflowRole.APPROVER)
    is_active: bool = Field(default=True)
    created_by: str = Field(foreign_key="principals.id")
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Requisition(TenantScoped, table=True):
    __tablename__ = "requisitions"
    __resource_type__: ClassVar[ResourceType] = ResourceType.REQUISITION
    __table_args__ = (Index("ix_requisitions_tenant_status", "tenant_id", "status"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    title: str
    description: str | None = None
    amount: float = Field(default=0.0)
    project_id: str | None = Field(default=None, foreign_key="projects.id", index=True)
    status: RequisitionStatus = Field(default=RequisitionStatus.DRAFT)
    created_by: str = Field(foreign_key="principals.id", index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class RequisitionTemplate(TenantScoped, table=True):
    __tablename__ = "requisition_templates"
    __resource_type__: ClassVar[ResourceType] = ResourceType.REQUISITION_TEMPLATE

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_by: str = Field(foreign_key="principals.id", index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


TENANT_SCOPED_MODELS: tuple[type[TenantScoped], ...] = (
    Project,
    ProjectAssignment,
    ExpenseAccount,
    Category,
    ApprovalWorkflow,
    Requisition,
    RequisitionTemplate,
)

SCOPED_READ_MODELS: tuple[type[SQLModel], ...] = (
    Organization,
    Membership,
    *TENANT_SCOPED_MODELS,
)


def resource_type_of(obj: object) -> ResourceType | None:
    cls = obj if isinstance(obj, type) else type(obj)
    return getattr(cls, "__resource_type__", None)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class PrincipalCreate(BaseModel):
    email: str = PydanticField(min_length=3)
    password: str = PydanticField(min_length=6)
    display_name: str | None = None


class PrincipalRead(ORMReadModel):
    id: str
    email: str
    display_name: str | None
    is_active: bool
    active_tenant_id: str | None
    created_at: datetime


class ClaimsRead(BaseModel):
    sub: str
    tenant_id: str | None = None
    org_role: OrgRole | None = None
    workflow_role: WorkflowRole | None = None
    is_platform_admin: bool = False


class LoginRequest(BaseModel):
    email: str
    password: str
    tenant_id: str | None = None


class RefreshRequest(BaseModel):
    tenant_id: str | None = None


class SwitchTenantRequest(BaseModel):
    tenant_id: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    claims: ClaimsRead


class OrganizationCreate(BaseModel):
    name: str = PydanticField(min_length=1)
    slug: str | None = None
    plan: OrganizationPlan = OrganizationPlan.FREE


class OrganizationUpdate(BaseModel):
    name: str | None = None
    plan: OrganizationPlan | None = None
    status: OrganizationStatus | None = None


class OrganizationRead(ORMReadModel):
    id: str
    name: str
    slug: str
    plan: OrganizationPlan
    status: OrganizationStatus
    max_users: int
    max_projects: int
    max_requisitions_per_month: int
    created_at: datetime
    updated_at: datetime


class InvitationCreate(BaseModel):
    email: str
    org_role: OrgRole = OrgRole.MEMBER
    workflow_role: WorkflowRole = WorkflowRole.SUBMITTER


class InvitationRead(ORMReadModel):
    id: str
    organization_id: str
    email: str
    org_role: OrgRole
    workflow_role: WorkflowRole
    token: str
    invited_by: str
    created_at: datetime
    expires_at: datetime
    accepted_at: datetime | None


class MembershipUpdate(BaseModel):
    org_role: OrgRole | None = None
    workflow_role: WorkflowRole | None = None
    force_refresh: bool = False


class MembershipRead(ORMReadModel):
    id: str
    organization_id: str
    principal_id: str
    org_role: OrgRole
    workflow_role: WorkflowRole
    is_active: bool
    invited_by: str | None
    invited_at: datetime | None
    accepted_at: datetime | None
    created_at: datetime


class ResolvedRoleRead(BaseModel):
    principal_id: str
    tenant_id: str
    org_role: OrgRole
    workflow_role: WorkflowRole
    is_platform_admin: bool = False


class ProjectCreate(BaseModel):
    name: str = PydanticField(min_length=1)
    code: str | None = None
    description: str | None = None
    tenant_id: str | None = None


class ProjectUpdate(BaseModel):
    name: str | None = None
    code: str | None = None
    description: str | None = None
    is_active: bool | None = None


class ProjectRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    code: str | None
    description: str | None
    is_active: bool
    created_by: str
    created_at: datetime
    updated_at: datetime


class ProjectAssignmentCreate(BaseModel):
    project_id: str
    user_id: str
    tenant_id: str | None = None


class ProjectAssignmentRead(ORMReadModel):
    id: str
    tenant_id: str
    project_id: str
    user_id: str
    assigned_by: str | None
    created_at: datetime


class ExpenseAccountCreate(BaseModel):
    code: str = PydanticField(min_length=1)
    name: str = PydanticField(min_length=1)
    tenant_id: str | None = None


class ExpenseAccountUpdate(BaseModel):
    code: str | None = None
    name: str | None = None


class ExpenseAccountRead(ORMReadModel):
    id: str
    tenant_id: str
    code: str
    name: str
    created_by: str
    created_at: datetime


class CategoryCreate(BaseModel):
    name: str = PydanticField(min_length=1)
    description: str | None = None
    tenant_id: str | None = None


class CategoryUpdate(BaseModel):
    name: str | None = None
    description: str | None = None


class CategoryRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    description: str | None
    created_by: str
    created_at: datetime


class ApprovalWorkflowCreate(BaseModel):
    name: str = PydanticField(min_length=1)
    min_amount: float = PydanticField(default=0.0, ge=0)
    max_amount: float | None = PydanticField(default=None, ge=0)
    approver_role: WorkflowRole = WorkflowRole.APPROVER
    is_active: bool = True
    tenant_id: str | None = None


class ApprovalWorkflowUpdate(BaseModel):
    name: str | None = None
    min_amount: float | None = PydanticField(default=None, ge=0)
    max_amount: float | None = PydanticField(default=None, ge=0)
    approver_role: WorkflowRole | None = None
    is_active: bool | None = None


class ApprovalWorkflowRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    min_amount: float
    max_amount: float | None
    approver_role: WorkflowRole
    is_active: bool
    created_by: str
    created_at: datetime


class RequisitionCreate(BaseModel):
    title: str = PydanticField(min_length=1)
    description: str | None = None
    amount: float = PydanticField(default=0.0, ge=0)
    project_id: str | None = None
    tenant_id: str | None = None


class RequisitionUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    amount: float | None = PydanticField(default=None, ge=0)
    project_id: str | None = None
    status: RequisitionStatus | None = None
    tenant_id: str | None = None


class RequisitionRead(ORMReadModel):
    id: str
    tenant_id: str
    title: str
    description: str | None
    amount: float
    project_id: str | None
    status: RequisitionStatus
    created_by: str
    created_at: datetime
    updated_at: datetime


class RequisitionTemplateCreate(BaseModel):
    name: str = PydanticField(min_length=1)
    payload: dict[str, Any] = PydanticField(default_factory=dict)
    tenant_id: str | None = None


class RequisitionTemplateUpdate(BaseModel):
    name: str | None = None
    payload: dict[str, Any] | None = None


class RequisitionTemplateRead(ORMReadModel):
    id: str
    tenant_id: str
    name: str
    payload: dict[str, Any]
    created_by: str
    created_at: datetime


class AuthorizeRequest(BaseModel):
    resource_type: ResourceType
    operation: Operation
    row_id: str | None = None


class AuthorizeDecisionRead(BaseModel):
    allowed: bool
    kind: str | None = None
    reason: str | None = None


class SecurityEventRead(ORMReadModel):
    id: str
    event_type: SecurityEventType
    severity: SecuritySeverity
    principal_id: str | None
    principal_email: str | None
    ip: str | None
    claimed_tenant_id: str | None
    target_tenant_id: str | None
    resource_type: str | None
    resource_id: str | None
    action_attempted: str | None
    message: str
    detail: dict[str, Any]
    was_blocked: bool
    created_at: datetime


class CrossTenantAttemptSummaryRead(BaseModel):
    principal_id: str | None
    principal_email: str | None
    attempt_count: int
    first_attempt_at: datetime
    last_attempt_at: datetime
    target_tenant_ids: list[str] = PydanticField(default_factory=list)


class InvariantViolationCountRead(BaseModel):
    day: str
    count: int


class SecurityHealthCheckRead(BaseModel):
    metric: str
    value: int
    status: str
    threshold: int


class SecurityAlertRead(BaseModel):
    level: AlertLevel
    message: str
    action: str


class SecurityReportRead(BaseModel):
    period_days: int
    generated_at: datetime
    total_events: int
    by_severity: dict[str, int] = PydanticField(default_factory=dict)
    by_event_type: dict[str, int] = PydanticField(default_factory=dict)
    blocked_events: int = 0
    cross_tenant_attempts: list[CrossTenantAttemptSummaryRead] = PydanticField(default_factory=list)
    invariant_violations: list[InvariantViolationCountRead] = PydanticField(default_factory=list)
    health: list[SecurityHealthCheckRead] = PydanticField(default_factory=list)


class SecurityCleanupRead(BaseModel):
    deleted: int


class PlatformLoginRequest(BaseModel):
    email: str
    password: str


class PlatformLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    session_token: str
    expires_at: datetime
    claims: ClaimsRead


class PlatformAdminCreate(BaseModel):
    email: str
    allowed_ips: list[str] = PydanticField(default_factory=list)
    require_ip_check: bool = False
    session_timeout_minutes: int = PydanticField(default=60, ge=1, le=24 * 60)
    notes: str | None = None


class PlatformAdminRead(ORMReadModel):
    id: str
    email: str
    is_active: bool
    allowed_ips: list[str]
    require_ip_check: bool
    session_timeout_minutes: int
    failed_login_count: int
    locked_until: datetime | None
    last_login_at: datetime | None
    last_login_ip: str | None
    created_at: datetime


class PlatformSessionRead(ORMReadModel):
    id: str
    admin_id: str
    ip: str | None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    is_active: bool


class RateLimitStatusRead(BaseModel):
    allowed: bool
    locked: bool
    locked_until: datetime | None = None
    email_attempts: int = 0
    ip_attempts: int = 0
    max_attempts: int = 5
