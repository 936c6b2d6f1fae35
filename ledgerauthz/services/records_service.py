from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from typing import Any

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, col, select

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.errors import DenialKind
from ledgerauthz.domain.models import (
    ApprovalWorkflow,
    Category,
    ExpenseAccount,
    Membership,
    Organization,
    Project,
    ProjectAssignment,
    Requisition,
    RequisitionTemplate,
    TenantScoped,
    now_utc,
)
from ledgerauthz.domain.policy import Decision, PolicyEvaluator
from ledgerauthz.domain.rules import Operation, ResourceType
from ledgerauthz.infra.tenant import get_subject, tenant_session
from ledgerauthz.services.security_service import SecurityService

logger = logging.getLogger(__name__)

RESOURCE_MODELS: dict[ResourceType, type[TenantScoped]] = {
    ResourceType.PROJECT: Project,
    ResourceType.PROJECT_ASSIGNMENT: ProjectAssignment,
    ResourceType.EXPENSE_ACCOUNT: ExpenseAccount,
    ResourceType.CATEGORY: Category,
    ResourceType.APPROVAL_WORKFLOW: ApprovalWorkflow,
    ResourceType.REQUISITION: Requisition,
    ResourceType.REQUISITION_TEMPLATE: RequisitionTemplate,
}

AUTHORIZABLE_MODELS: dict[ResourceType, type[SQLModel]] = {
    ResourceType.ORGANIZATION: Organization,
    ResourceType.MEMBERSHIP: Membership,
    **RESOURCE_MODELS,
}

OWNER_STAMP_FIELDS = ("created_by", "assigned_by")


class RecordsError(Exception):
    pass


class NotFoundError(RecordsError):
    pass


class ConflictError(RecordsError):
    pass


class RecordsService:
    def __init__(self, security: SecurityService | None = None) -> None:
        self._security = security or SecurityService()
        self._evaluator = PolicyEvaluator()

    def _scoped(self, claims: Claims) -> AbstractContextManager[Session]:
        return tenant_session(claims, on_denied=self._security.record_authorization_failure)

    def _model(self, resource_type: ResourceType) -> type[TenantScoped]:
        model = RESOURCE_MODELS.get(resource_type)
        if model is None:
            raise NotFoundError(f"Unknown resource type: {resource_type}")
        return model

    def _label(self, resource_type: ResourceType) -> str:
        return resource_type.value.replace("_", " ").capitalize()

    def _load(
        self,
        session: Session,
        claims: Claims,
        resource_type: ResourceType,
        row_id: str,
        operation: Operation,
    ) -> Any:
        model = self._model(resource_type)
        row = session.get(model, row_id)
        if row is None:
            self._security.report_cross_tenant(claims, model, row_id, operation=operation.value)
            raise NotFoundError(f"{self._label(resource_type)} not found")
        return row

    def _check_references(self, session: Session, claims: Claims, values: dict[str, Any]) -> None:
        project_id = values.get("project_id")
        if project_id is not None and session.get(Project, project_id) is None:
            self._security.report_cross_tenant(claims, Project, project_id, operation="reference")
            raise NotFoundError("Project not found")
        user_id = values.get("user_id")
        if user_id is not None:
            member = session.exec(
                select(Membership)
                .where(Membership.principal_id == user_id)
                .where(Membership.organization_id == claims.tenant_id)
                .where(col(Membership.is_active).is_(True))
            ).first()
            if member is None:
                raise NotFoundError("Member not found")

    def create(self, claims: Claims, resource_type: ResourceType, payload: BaseModel) -> Any:
        model = self._model(resource_type)
        values = payload.model_dump()
        declared_tenant_id = values.pop("tenant_id", None)
        with self._scoped(claims) as session:
            self._check_references(session, claims, values)
            row = model(**values)
            row.tenant_id = declared_tenant_id
            for field_name in OWNER_STAMP_FIELDS:
                if field_name in model.model_fields:
                    setattr(row, field_name, claims.principal_id)
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"{self._label(resource_type)} already exists") from exc
            session.refresh(row)
            logger.info("%s %s created in tenant %s", resource_type.value, row.id, row.tenant_id)
            return row

    def list(self, claims: Claims, resource_type: ResourceType) -> list[Any]:
        model = self._model(resource_type)
        with self._scoped(claims) as session:
            rows = session.exec(select(model).order_by(col(model.created_at).desc())).all()  # type: ignore[attr-defined]
            return list(rows)

    def get(self, claims: Claims, resource_type: ResourceType, row_id: str) -> Any:
        with self._scoped(claims) as session:
            return self._load(session, claims, resource_type, row_id, Operation.READ)

    def update(
        self,
        claims: Claims,
        resource_type: ResourceType,
        row_id: str,
        payload: BaseModel,
    ) -> Any:
        updates = payload.model_dump(exclude_unset=True)
        with self._scoped(claims) as session:
            row = self._load(session, claims, resource_type, row_id, Operation.UPDATE)
            self._check_references(session, claims, updates)
            for key, value in updates.items():
                setattr(row, key, value)
            if "updated_at" in type(row).model_fields:
                row.updated_at = now_utc()
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"{self._label(resource_type)} conflicts with an existing record") from exc
            session.refresh(row)
            return row

    def delete(self, claims: Claims, resource_type: ResourceType, row_id: str) -> None:
        with self._scoped(claims) as session:
            row = self._load(session, claims, resource_type, row_id, Operation.DELETE)
            session.delete(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"{self._label(resource_type)} is still referenced") from exc

    def authorize(
        self,
        claims: Claims,
        resource_type: ResourceType,
        operation: Operation,
        row_id: str | None = None,
    ) -> Decision:
        with self._scoped(claims) as session:
            subject = get_subject(session)
            if subject is None:
                return Decision.deny(DenialKind.READ, "no claims bound to session")
            if row_id is None:
                return self._evaluator.authorize(subject, resource_type, operation)
            model = AUTHORIZABLE_MODELS.get(resource_type)
            if model is None:
                raise NotFoundError(f"Unknown resource type: {resource_type}")
            row = session.get(model, row_id)
            if row is None:
                return Decision.deny(DenialKind.READ, "record not found")
            return self._evaluator.authorize(subject, resource_type, operation, row)
