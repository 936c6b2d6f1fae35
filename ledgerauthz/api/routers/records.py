from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from ledgerauthz.api.deps import get_current_claims, raise_for_denial
from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.errors import AuthorizationError
from ledgerauthz.domain.models import (
    ApprovalWorkflowCreate,
    ApprovalWorkflowRead,
    ApprovalWorkflowUpdate,
    AuthorizeDecisionRead,
    AuthorizeRequest,
    CategoryCreate,
    CategoryRead,
    CategoryUpdate,
    ExpenseAccountCreate,
    ExpenseAccountRead,
    ExpenseAccountUpdate,
    ProjectAssignmentCreate,
    ProjectAssignmentRead,
    ProjectCreate,
    ProjectRead,
    ProjectUpdate,
    RequisitionCreate,
    RequisitionRead,
    RequisitionTemplateCreate,
    RequisitionTemplateRead,
    RequisitionTemplateUpdate,
    RequisitionUpdate,
)
from ledgerauthz.domain.rules import ResourceType
from ledgerauthz.services.records_service import ConflictError, NotFoundError, RecordsService

router = APIRouter()

T = TypeVar("T")


def get_records_service() -> RecordsService:
    return RecordsService()


CurrentClaims = Annotated[Claims, Depends(get_current_claims)]
Service = Annotated[RecordsService, Depends(get_records_service)]


def _handle_records_error(request: Request, exc: Exception) -> None:
    if isinstance(exc, AuthorizationError):
        raise_for_denial(request, exc)
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


def _guarded(request: Request, call: Callable[[], T]) -> T:
    try:
        return call()
    except (NotFoundError, ConflictError, AuthorizationError) as exc:
        _handle_records_error(request, exc)
        raise


def _deleted(request: Request, call: Callable[[], Any]) -> Response:
    _guarded(request, call)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# projects


@router.post("/projects", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(payload: ProjectCreate, request: Request, claims: CurrentClaims, service: Service) -> ProjectRead:
    row = _guarded(request, lambda: service.create(claims, ResourceType.PROJECT, payload))
    return ProjectRead.model_validate(row)


@router.get("/projects", response_model=list[ProjectRead])
def list_projects(request: Request, claims: CurrentClaims, service: Service) -> list[ProjectRead]:
    rows = _guarded(request, lambda: service.list(claims, ResourceType.PROJECT))
    return [ProjectRead.model_validate(item) for item in rows]


@router.get("/projects/{row_id}", response_model=ProjectRead)
def get_project(row_id: str, request: Request, claims: CurrentClaims, service: Service) -> ProjectRead:
    row = _guarded(request, lambda: service.get(claims, ResourceType.PROJECT, row_id))
    return ProjectRead.model_validate(row)


@router.patch("/projects/{row_id}", response_model=ProjectRead)
def update_project(
    row_id: str,
    payload: ProjectUpdate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> ProjectRead:
    row = _guarded(request, lambda: service.update(claims, ResourceType.PROJECT, row_id, payload))
    return ProjectRead.model_validate(row)


@router.delete("/projects/{row_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_project(row_id: str, request: Request, claims: CurrentClaims, service: Service) -> Response:
    return _deleted(request, lambda: service.delete(claims, ResourceType.PROJECT, row_id))


# project assignments


@router.post(
    "/project-assignments",
    response_model=ProjectAssignmentRead,
    status_code=status.HTTP_201_CREATED,
)
def create_project_assignment(
    payload: ProjectAssignmentCreate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> ProjectAssignmentRead:
    row = _guarded(request, lambda: service.create(claims, ResourceType.PROJECT_ASSIGNMENT, payload))
    return ProjectAssignmentRead.model_validate(row)


@router.get("/project-assignments", response_model=list[ProjectAssignmentRead])
def list_project_assignments(
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> list[ProjectAssignmentRead]:
    rows = _guarded(request, lambda: service.list(claims, ResourceType.PROJECT_ASSIGNMENT))
    return [ProjectAssignmentRead.model_validate(item) for item in rows]


@router.delete("/project-assignments/{row_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_project_assignment(row_id: str, request: Request, claims: CurrentClaims, service: Service) -> Response:
    return _deleted(request, lambda: service.delete(claims, ResourceType.PROJECT_ASSIGNMENT, row_id))


# expense accounts


@router.post("/expense-accounts", response_model=ExpenseAccountRead, status_code=status.HTTP_201_CREATED)
def create_expense_account(
    payload: ExpenseAccountCreate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> ExpenseAccountRead:
    row = _guarded(request, lambda: service.create(claims, ResourceType.EXPENSE_ACCOUNT, payload))
    return ExpenseAccountRead.model_validate(row)


@router.get("/expense-accounts", response_model=list[ExpenseAccountRead])
def list_expense_accounts(request: Request, claims: CurrentClaims, service: Service) -> list[ExpenseAccountRead]:
    rows = _guarded(request, lambda: service.list(claims, ResourceType.EXPENSE_ACCOUNT))
    return [ExpenseAccountRead.model_validate(item) for item in rows]


@router.patch("/expense-accounts/{row_id}", response_model=ExpenseAccountRead)
def update_expense_account(
    row_id: str,
    payload: ExpenseAccountUpdate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> ExpenseAccountRead:
    row = _guarded(request, lambda: service.update(claims, ResourceType.EXPENSE_ACCOUNT, row_id, payload))
    return ExpenseAccountRead.model_validate(row)


@router.delete("/expense-accounts/{row_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_expense_account(row_id: str, request: Request, claims: CurrentClaims, service: Service) -> Response:
    return _deleted(request, lambda: service.delete(claims, ResourceType.EXPENSE_ACCOUNT, row_id))


# categories


@router.post("/categories", response_model=CategoryRead, status_code=status.HTTP_201_CREATED)
def create_category(payload: CategoryCreate, request: Request, claims: CurrentClaims, service: Service) -> CategoryRead:
    row = _guarded(request, lambda: service.create(claims, ResourceType.CATEGORY, payload))
    return CategoryRead.model_validate(row)


@router.get("/categories", response_model=list[CategoryRead])
def list_categories(request: Request, claims: CurrentClaims, service: Service) -> list[CategoryRead]:
    rows = _guarded(request, lambda: service.list(claims, ResourceType.CATEGORY))
    return [CategoryRead.model_validate(item) for item in rows]


@router.patch("/categories/{row_id}", response_model=CategoryRead)
def update_category(
    row_id: str,
    payload: CategoryUpdate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> CategoryRead:
    row = _guarded(request, lambda: service.update(claims, ResourceType.CATEGORY, row_id, payload))
    return CategoryRead.model_validate(row)


@router.delete("/categories/{row_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_category(row_id: str, request: Request, claims: CurrentClaims, service: Service) -> Response:
    return _deleted(request, lambda: service.delete(claims, ResourceType.CATEGORY, row_id))


# approval workflows


@router.post("/approval-workflows", response_model=ApprovalWorkflowRead, status_code=status.HTTP_201_CREATED)
def create_approval_workflow(
    payload: ApprovalWorkflowCreate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> ApprovalWorkflowRead:
    row = _guarded(request, lambda: service.create(claims, ResourceType.APPROVAL_WORKFLOW, payload))
    return ApprovalWorkflowRead.model_validate(row)


@router.get("/approval-workflows", response_model=list[ApprovalWorkflowRead])
def list_approval_workflows(request: Request, claims: CurrentClaims, service: Service) -> list[ApprovalWorkflowRead]:
    rows = _guarded(request, lambda: service.list(claims, ResourceType.APPROVAL_WORKFLOW))
    return [ApprovalWorkflowRead.model_validate(item) for item in rows]


@router.patch("/approval-workflows/{row_id}", response_model=ApprovalWorkflowRead)
def update_approval_workflow(
    row_id: str,
    payload: ApprovalWorkflowUpdate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> ApprovalWorkflowRead:
    row = _guarded(request, lambda: service.update(claims, ResourceType.APPROVAL_WORKFLOW, row_id, payload))
    return ApprovalWorkflowRead.model_validate(row)


@router.delete("/approval-workflows/{row_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_approval_workflow(row_id: str, request: Request, claims: CurrentClaims, service: Service) -> Response:
    return _deleted(request, lambda: service.delete(claims, ResourceType.APPROVAL_WORKFLOW, row_id))


# requisitions


@router.post("/requisitions", response_model=RequisitionRead, status_code=status.HTTP_201_CREATED)
def create_requisition(
    payload: RequisitionCreate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> RequisitionRead:
    row = _guarded(request, lambda: service.create(claims, ResourceType.REQUISITION, payload))
    return RequisitionRead.model_validate(row)


@router.get("/requisitions", response_model=list[RequisitionRead])
def list_requisitions(request: Request, claims: CurrentClaims, service: Service) -> list[RequisitionRead]:
    rows = _guarded(request, lambda: service.list(claims, ResourceType.REQUISITION))
    return [RequisitionRead.model_validate(item) for item in rows]


@router.get("/requisitions/{row_id}", response_model=RequisitionRead)
def get_requisition(row_id: str, request: Request, claims: CurrentClaims, service: Service) -> RequisitionRead:
    row = _guarded(request, lambda: service.get(claims, ResourceType.REQUISITION, row_id))
    return RequisitionRead.model_validate(row)


@router.patch("/requisitions/{row_id}", response_model=RequisitionRead)
def update_requisition(
    row_id: str,
    payload: RequisitionUpdate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> RequisitionRead:
    row = _guarded(request, lambda: service.update(claims, ResourceType.REQUISITION, row_id, payload))
    return RequisitionRead.model_validate(row)


@router.delete("/requisitions/{row_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_requisition(row_id: str, request: Request, claims: CurrentClaims, service: Service) -> Response:
    return _deleted(request, lambda: service.delete(claims, ResourceType.REQUISITION, row_id))


# requisition templates


@router.post(
    "/requisition-templates",
    response_model=RequisitionTemplateRead,
    status_code=status.HTTP_201_CREATED,
)
def create_requisition_template(
    payload: RequisitionTemplateCreate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> RequisitionTemplateRead:
    row = _guarded(request, lambda: service.create(claims, ResourceType.REQUISITION_TEMPLATE, payload))
    return RequisitionTemplateRead.model_validate(row)


@router.get("/requisition-templates", response_model=list[RequisitionTemplateRead])
def list_requisition_templates(
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> list[RequisitionTemplateRead]:
    rows = _guarded(request, lambda: service.list(claims, ResourceType.REQUISITION_TEMPLATE))
    return [RequisitionTemplateRead.model_validate(item) for item in rows]


@router.patch("/requisition-templates/{row_id}", response_model=RequisitionTemplateRead)
def update_requisition_template(
    row_id: str,
    payload: RequisitionTemplateUpdate,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> RequisitionTemplateRead:
    row = _guarded(request, lambda: service.update(claims, ResourceType.REQUISITION_TEMPLATE, row_id, payload))
    return RequisitionTemplateRead.model_validate(row)


@router.delete("/requisition-templates/{row_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_requisition_template(row_id: str, request: Request, claims: CurrentClaims, service: Service) -> Response:
    return _deleted(request, lambda: service.delete(claims, ResourceType.REQUISITION_TEMPLATE, row_id))


@router.post("/authorize", response_model=AuthorizeDecisionRead)
def authorize(
    payload: AuthorizeRequest,
    request: Request,
    claims: CurrentClaims,
    service: Service,
) -> AuthorizeDecisionRead:
    decision = _guarded(
        request,
        lambda: service.authorize(claims, payload.resource_type, payload.operation, payload.row_id),
    )
    return AuthorizeDecisionRead(
        allowed=decision.allowed,
        kind=None if decision.kind is None else decision.kind.value,
        reason=decision.reason,
    )
