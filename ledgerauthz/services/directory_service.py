from __future__ import annotations

import hashlib
import logging
import os
import re
import secrets
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import func
from sqlmodel import Session, col, select

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.errors import AccessDeniedWrite
from ledgerauthz.domain.models import (
    PLAN_USER_LIMITS,
    Invitation,
    InvitationCreate,
    Membership,
    MembershipUpdate,
    Organization,
    OrganizationCreate,
    OrganizationUpdate,
    PlatformAdmin,
    Principal,
    PrincipalCreate,
    SecurityEventType,
    SecuritySeverity,
    as_utc,
    now_utc,
)
from ledgerauthz.domain.policy import PolicyEvaluator
from ledgerauthz.domain.roles import (
    OrgRole,
    WorkflowRole,
    can_grant_workflow_role,
    dominates,
)
from ledgerauthz.domain.rules import Operation, ResourceType
from ledgerauthz.infra.db import get_engine
from ledgerauthz.infra.tenant import get_subject, tenant_session
from ledgerauthz.services.security_service import SecurityService

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    pass


class NotFoundError(DirectoryError):
    pass


class ConflictError(DirectoryError):
    pass


class AuthError(DirectoryError):
    pass


@dataclass(frozen=True)
class ResolvedRole:
    org_role: OrgRole
    workflow_role: WorkflowRole


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _role_label(role: OrgRole | None) -> str:
    return "no role" if role is None else role.value


ADMINISTRATIVE_FIELDS = frozenset({"plan", "status"})


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")
    return slug or "org"


class DirectoryService:
    INVITATION_TTL = timedelta(days=7)

    def __init__(self, security: SecurityService | None = None) -> None:
        self._security = security or SecurityService()
        self._evaluator = PolicyEvaluator()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _scoped(self, claims: Claims) -> AbstractContextManager[Session]:
        return tenant_session(claims, on_denied=self._security.record_authorization_failure)

    def _hash_password(self, raw_password: str) -> str:
        salt = os.getenv("PASSWORD_SALT", "ledgerauthz-dev-salt")
        return hashlib.sha256(f"{salt}:{raw_password}".encode()).hexdigest()

    def _authorize_write(
        self,
        session: Session,
        resource_type: ResourceType,
        operation: Operation,
        row: object,
        row_id: str | None = None,
    ) -> None:
        subject = get_subject(session)
        if subject is None:
            raise AccessDeniedWrite("no claims bound to session", operation=operation.value)
        decision = self._evaluator.authorize(subject, resource_type, operation, row)
        if not decision.allowed:
            raise decision.to_error(
                resource_type=resource_type.value,
                resource_id=row_id,
                operation=operation.value,
            )

    def _unique_slug(self, session: Session, base: str) -> str:
        candidate = base
        suffix = 2
        while session.exec(select(Organization).where(Organization.slug == candidate)).first() is not None:
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def _active_member_count(self, session: Session, organization_id: str) -> int:
        return int(
            session.exec(
                select(func.count())
                .select_from(Membership)
                .where(col(Membership.organization_id) == organization_id)
                .where(col(Membership.is_active).is_(True))
            ).one()
        )

    def _active_owner_count(self, session: Session, organization_id: str) -> int:
        return int(
            session.exec(
                select(func.count())
                .select_from(Membership)
                .where(col(Membership.organization_id) == organization_id)
                .where(col(Membership.org_role) == OrgRole.OWNER)
                .where(col(Membership.is_active).is_(True))
            ).one()
        )

    def register_principal(self, payload: PrincipalCreate) -> Principal:
        email = normalize_email(payload.email)
        with self._session() as session:
            existing = session.exec(select(Principal).where(Principal.email == email)).first()
            if existing is not None:
                raise ConflictError("Principal already exists")
            principal = Principal(
                email=email,
                display_name=payload.display_name,
                password_hash=self._hash_password(payload.password),
            )
            session.add(principal)
            session.commit()
            session.refresh(principal)
            return principal

    def authenticate(self, email: str, password: str) -> Principal:
        with self._session() as session:
            principal = session.exec(select(Principal).where(Principal.email == normalize_email(email))).first()
            if principal is None or not principal.is_active:
                raise AuthError("Invalid credentials")
            if principal.password_hash != self._hash_password(password):
                raise AuthError("Invalid credentials")
            return principal

    def get_principal(self, principal_id: str) -> Principal:
        with self._session() as session:
            principal = session.get(Principal, principal_id)
            if principal is None:
                raise NotFoundError("Principal not found")
            return principal

    def resolve(self, principal_id: str, tenant_id: str) -> ResolvedRole | None:
        with self._session() as session:
            membership = session.exec(
                select(Membership)
                .where(Membership.principal_id == principal_id)
                .where(Membership.organization_id == tenant_id)
                .where(col(Membership.is_active).is_(True))
            ).first()
        if membership is None:
            return None
        return ResolvedRole(org_role=membership.org_role, workflow_role=membership.workflow_role)

    def is_platform_admin(self, principal_id: str) -> bool:
        with self._session() as session:
            principal = session.get(Principal, principal_id)
            if principal is None or not principal.is_active:
                return False
            admin = session.exec(
                select(PlatformAdmin)
                .where(PlatformAdmin.email == principal.email)
                .where(col(PlatformAdmin.is_active).is_(True))
            ).first()
            return admin is not None

    def earliest_membership(self, principal_id: str) -> Membership | None:
        with self._session() as session:
            memberships = session.exec(
                select(Membership)
                .where(Membership.principal_id == principal_id)
                .where(col(Membership.is_active).is_(True))
            ).all()
        if not memberships:
            return None
        return min(memberships, key=lambda item: as_utc(item.accepted_at or item.created_at))

    def mark_logged_in(self, principal_id: str) -> None:
        with self._session() as session:
            principal = session.get(Principal, principal_id)
            if principal is None:
                raise NotFoundError("Principal not found")
            principal.last_login_at = now_utc()
            session.add(principal)
            session.commit()

    def set_active_tenant(self, principal_id: str, tenant_id: str | None) -> Principal:
        with self._session() as session:
            principal = session.get(Principal, principal_id)
            if principal is None:
                raise NotFoundError("Principal not found")
            principal.active_tenant_id = tenant_id
            session.add(principal)
            session.commit()
            session.refresh(principal)
            return principal

    def create_organization(self, principal_id: str, payload: OrganizationCreate) -> Organization:
        with self._session() as session:
            principal = session.get(Principal, principal_id)
            if principal is None or not principal.is_active:
                raise NotFoundError("Principal not found")
            if payload.slug:
                slug = slugify(payload.slug)
                if session.exec(select(Organization).where(Organization.slug == slug)).first() is not None:
                    raise ConflictError("Organization slug already exists")
            else:
                slug = self._unique_slug(session, slugify(payload.name))
            organization = Organization(
                name=payload.name,
                slug=slug,
                plan=payload.plan,
                max_users=PLAN_USER_LIMITS[payload.plan],
            )
            session.add(organization)
            session.flush()
            now = now_utc()
            session.add(
                Membership(
                    organization_id=organization.id,
                    principal_id=principal_id,
                    org_role=OrgRole.OWNER,
                    workflow_role=WorkflowRole.SUPER_ADMIN,
                    accepted_at=now,
                )
            )
            if principal.active_tenant_id is None:
                principal.active_tenant_id = organization.id
                session.add(principal)
            session.commit()
            session.refresh(organization)
            logger.info("organization %s created by %s", organization.id, principal_id)
            return organization

    def list_organizations(self, claims: Claims) -> list[Organization]:
        with self._session() as session:
            statement = select(Organization)
            if not claims.is_platform_admin:
                statement = (
                    statement.join(Membership, col(Membership.organization_id) == col(Organization.id))
                    .where(Membership.principal_id == claims.principal_id)
                    .where(col(Membership.is_active).is_(True))
                )
            return list(session.exec(statement.order_by(col(Organization.created_at))).all())

    def get_organization(self, claims: Claims, organization_id: str) -> Organization:
        with self._scoped(claims) as session:
            organization = session.get(Organization, organization_id)
            if organization is None:
                raise NotFoundError("Organization not found")
            return organization

    def update_organization(
        self,
        claims: Claims,
        organization_id: str,
        payload: OrganizationUpdate,
    ) -> Organization:
        with self._scoped(claims) as session:
            organization = session.get(Organization, organization_id)
            if organization is None:
                raise NotFoundError("Organization not found")
            self._authorize_write(session, ResourceType.ORGANIZATION, Operation.UPDATE, organization, organization.id)
            updates = payload.model_dump(exclude_unset=True)
            administrative = ADMINISTRATIVE_FIELDS & set(updates)
            from_outside = claims.is_platform_admin and claims.tenant_id != organization.id
            if from_outside and set(updates) - ADMINISTRATIVE_FIELDS:
                raise AccessDeniedWrite(
                    "platform admins may only change plan and status of another organization",
                    resource_type=ResourceType.ORGANIZATION.value,
                    resource_id=organization.id,
                    operation=Operation.UPDATE.value,
                )
            if administrative and not claims.is_platform_admin:
                raise AccessDeniedWrite(
                    "plan and status changes require a platform admin",
                    resource_type=ResourceType.ORGANIZATION.value,
                    resource_id=organization.id,
                    operation=Operation.UPDATE.value,
                )
            for key, value in updates.items():
                setattr(organization, key, value)
            if "plan" in updates and payload.plan is not None:
                organization.max_users = PLAN_USER_LIMITS[payload.plan]
            organization.updated_at = now_utc()
            session.add(organization)
            session.commit()
            session.refresh(organization)
            return organization

    def invite_member(self, claims: Claims, payload: InvitationCreate) -> Invitation:
        with self._scoped(claims) as session:
            if claims.tenant_id is None:
                raise AccessDeniedWrite("no active tenant in claims", operation=Operation.CREATE.value)
            organization = session.get(Organization, claims.tenant_id)
            if organization is None:
                raise NotFoundError("Organization not found")
            self._authorize_write(
                session,
                ResourceType.MEMBERSHIP,
                Operation.CREATE,
                {"organization_id": organization.id},
            )
            if not dominates(claims.org_role, payload.org_role):
                raise AccessDeniedWrite(
                    f"{_role_label(claims.org_role)} cannot grant the {payload.org_role.value} role",
                    resource_type=ResourceType.MEMBERSHIP.value,
                    operation=Operation.CREATE.value,
                )
            if not can_grant_workflow_role(claims.org_role, payload.workflow_role):
                raise AccessDeniedWrite(
                    f"{_role_label(claims.org_role)} cannot grant the {payload.workflow_role.value} workflow role",
                    resource_type=ResourceType.MEMBERSHIP.value,
                    operation=Operation.CREATE.value,
                )
            email = normalize_email(payload.email)
            existing_member = session.exec(
                select(Membership)
                .join(Principal, col(Principal.id) == col(Membership.principal_id))
                .where(Principal.email == email)
                .where(Membership.organization_id == organization.id)
                .where(col(Membership.is_active).is_(True))
            ).first()
            if existing_member is not None:
                raise ConflictError("Principal is already a member")
            if self._active_member_count(session, organization.id) >= organization.max_users:
                raise ConflictError(f"Organization user limit reached ({organization.max_users})")
            now = now_utc()
            invitation = Invitation(
                organization_id=organization.id,
                email=email,
                org_role=payload.org_role,
                workflow_role=payload.workflow_role,
                token=secrets.token_urlsafe(24),
                invited_by=claims.principal_id,
                created_at=now,
                expires_at=now + self.INVITATION_TTL,
            )
            session.add(invitation)
            session.commit()
            session.refresh(invitation)
            return invitation

    def accept_invitation(self, principal_id: str, token: str) -> Membership:
        with self._session() as session:
            invitation = session.exec(select(Invitation).where(Invitation.token == token)).first()
            if invitation is None:
                raise NotFoundError("Invitation not found")
            if invitation.accepted_at is not None:
                raise ConflictError("Invitation already accepted")
            if as_utc(invitation.expires_at) < now_utc():
                raise ConflictError("Invitation expired")
            principal = session.get(Principal, principal_id)
            if principal is None or principal.email != invitation.email:
                raise NotFoundError("Invitation not found")
            organization = session.get(Organization, invitation.organization_id)
            if organization is None:
                raise NotFoundError("Organization not found")

            membership = session.exec(
                select(Membership)
                .where(Membership.organization_id == invitation.organization_id)
                .where(Membership.principal_id == principal_id)
            ).first()
            if membership is not None and membership.is_active:
                raise ConflictError("Principal is already a member")
            if self._active_member_count(session, organization.id) >= organization.max_users:
                raise ConflictError(f"Organization user limit reached ({organization.max_users})")

            now = now_utc()
            if membership is None:
                membership = Membership(
                    organization_id=invitation.organization_id,
                    principal_id=principal_id,
                )
            membership.org_role = invitation.org_role
            membership.workflow_role = invitation.workflow_role
            membership.is_active = True
            membership.invited_by = invitation.invited_by
            membership.invited_at = invitation.created_at
            membership.accepted_at = now
            membership.updated_at = now
            invitation.accepted_at = now
            if principal.active_tenant_id is None:
                principal.active_tenant_id = invitation.organization_id
                session.add(principal)
            session.add(membership)
            session.add(invitation)
            session.commit()
            session.refresh(membership)
            return membership

    def list_members(self, claims: Claims, organization_id: str | None = None) -> list[Membership]:
        target = organization_id or claims.tenant_id
        if target is None:
            return []
        with self._scoped(claims) as session:
            return list(
                session.exec(
                    select(Membership)
                    .where(Membership.organization_id == target)
                    .order_by(col(Membership.created_at))
                ).all()
            )

    def _load_membership(self, session: Session, membership_id: str) -> Membership:
        membership = session.get(Membership, membership_id)
        if membership is None:
            raise NotFoundError("Membership not found")
        return membership

    def change_member_role(
        self,
        claims: Claims,
        membership_id: str,
        payload: MembershipUpdate,
    ) -> Membership:
        with self._scoped(claims) as session:
            membership = self._load_membership(session, membership_id)
            self._authorize_write(session, ResourceType.MEMBERSHIP, Operation.UPDATE, membership, membership.id)
            denial = self._role_change_denial(claims, membership, payload)
            if denial is not None:
                raise AccessDeniedWrite(
                    denial,
                    resource_type=ResourceType.MEMBERSHIP.value,
                    resource_id=membership.id,
                    operation=Operation.UPDATE.value,
                )
            demotes_owner = (
                membership.org_role == OrgRole.OWNER
                and payload.org_role is not None
                and payload.org_role != OrgRole.OWNER
            )
            if demotes_owner and self._active_owner_count(session, membership.organization_id) <= 1:
                raise ConflictError("Cannot demote the last owner")

            previous = {"org_role": membership.org_role.value, "workflow_role": membership.workflow_role.value}
            if payload.org_role is not None:
                membership.org_role = payload.org_role
            if payload.workflow_role is not None:
                membership.workflow_role = payload.workflow_role
            membership.updated_at = now_utc()
            session.add(membership)
            session.commit()
            session.refresh(membership)

        self._security.record(
            SecurityEventType.ROLE_CHANGED,
            SecuritySeverity.INFO,
            "membership roles changed",
            principal_id=claims.principal_id,
            claimed_tenant_id=claims.tenant_id,
            target_tenant_id=membership.organization_id,
            resource_type=ResourceType.MEMBERSHIP.value,
            resource_id=membership.id,
            action_attempted=Operation.UPDATE.value,
            blocked=False,
            detail={
                "before": previous,
                "after": {"org_role": membership.org_role.value, "workflow_role": membership.workflow_role.value},
                "member_principal_id": membership.principal_id,
            },
        )
        return membership

    def _role_change_denial(
        self,
        claims: Claims,
        membership: Membership,
        payload: MembershipUpdate,
    ) -> str | None:
        if not dominates(claims.org_role, membership.org_role):
            return f"{_role_label(claims.org_role)} cannot modify a member holding the {membership.org_role.value} role"
        if payload.org_role is not None and not dominates(claims.org_role, payload.org_role):
            return f"{_role_label(claims.org_role)} cannot grant the {payload.org_role.value} role"
        if payload.workflow_role is not None and not can_grant_workflow_role(claims.org_role, payload.workflow_role):
            return f"{_role_label(claims.org_role)} cannot grant the {payload.workflow_role.value} workflow role"
        return None

    def revoke_member(self, claims: Claims, membership_id: str) -> Membership:
        with self._scoped(claims) as session:
            membership = self._load_membership(session, membership_id)
            self._authorize_write(session, ResourceType.MEMBERSHIP, Operation.DELETE, membership, membership.id)
            if not dominates(claims.org_role, membership.org_role):
                raise AccessDeniedWrite(
                    f"{_role_label(claims.org_role)} cannot remove a member holding the {membership.org_role.value} role",
                    resource_type=ResourceType.MEMBERSHIP.value,
                    resource_id=membership.id,
                    operation=Operation.DELETE.value,
                )
            if (
                membership.is_active
                and membership.org_role == OrgRole.OWNER
                and self._active_owner_count(session, membership.organization_id) <= 1
            ):
                raise ConflictError("Cannot remove the last owner")
            membership.is_active = False
            membership.updated_at = now_utc()
            session.add(membership)
            session.commit()
            session.refresh(membership)

        self._security.record(
            SecurityEventType.MEMBERSHIP_REVOKED,
            SecuritySeverity.INFO,
            "membership revoked",
            principal_id=claims.principal_id,
            claimed_tenant_id=claims.tenant_id,
            target_tenant_id=membership.organization_id,
            resource_type=ResourceType.MEMBERSHIP.value,
            resource_id=membership.id,
            action_attempted=Operation.DELETE.value,
            blocked=False,
            detail={"member_principal_id": membership.principal_id},
        )
        return membership
