from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.orm import ORMExecuteState, with_loader_criteria
from sqlalchemy.orm import Session as OrmSession
from sqlmodel import Session, col, select

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.errors import AccessDeniedWrite, AuthorizationError, TenantInvariantViolation
from ledgerauthz.domain.guard import check_create, check_tenant_unchanged
from ledgerauthz.domain.models import (
    SCOPED_READ_MODELS,
    ProjectAssignment,
    TenantScoped,
    resource_type_of,
)
from ledgerauthz.domain.policy import Decision, PolicyEvaluator, Subject
from ledgerauthz.domain.rules import Operation
from ledgerauthz.infra.db import get_engine

logger = logging.getLogger(__name__)

SUBJECT_INFO_KEY = "ledgerauthz.subject"

DenialHandler = Callable[[Claims, AuthorizationError], None]

evaluator = PolicyEvaluator()


def get_subject(session: OrmSession) -> Subject | None:
    subject = session.info.get(SUBJECT_INFO_KEY)
    return subject if isinstance(subject, Subject) else None


def load_subject(session: Session, claims: Claims) -> Subject:
    if claims.tenant_id is None or claims.is_privileged() or claims.is_super_admin():
        return Subject(claims=claims)
    project_ids = session.exec(
        select(ProjectAssignment.project_id)
        .where(col(ProjectAssignment.tenant_id) == claims.tenant_id)
        .where(col(ProjectAssignment.user_id) == claims.principal_id)
    ).all()
    return Subject(claims=claims, assigned_project_ids=frozenset(project_ids))


def bind_subject(session: Session, claims: Claims) -> Subject:
    subject = load_subject(session, claims)
    session.info[SUBJECT_INFO_KEY] = subject
    return subject


def _bulk_assigned_columns(execute_state: ORMExecuteState) -> set[str]:
    assigned = set(execute_state.statement.compile().params)
    parameters = execute_state.parameters
    rows = parameters if isinstance(parameters, list) else [parameters or {}]
    for row in rows:
        assigned.update(row)
    return assigned


def _refuse_bulk_write(execute_state: ORMExecuteState) -> None:
    mapper = execute_state.bind_mapper
    entity = None if mapper is None else mapper.class_
    if entity not in SCOPED_READ_MODELS:
        return
    resource_type = resource_type_of(entity)
    resource = None if resource_type is None else resource_type.value
    operation = Operation.UPDATE if execute_state.is_update else Operation.DELETE
    if execute_state.is_update and "tenant_id" in _bulk_assigned_columns(execute_state):
        raise TenantInvariantViolation(
            "tenant_id is immutable once committed",
            resource_type=resource,
            operation=operation.value,
        )
    raise AccessDeniedWrite(
        f"bulk {operation.value} is not allowed in a tenant session",
        resource_type=resource,
        operation=operation.value,
    )


@event.listens_for(OrmSession, "do_orm_execute")
def _scope_orm_statement(execute_state: ORMExecuteState) -> None:
    subject = get_subject(execute_state.session)
    if subject is None:
        return
    if execute_state.is_update or execute_state.is_delete:
        _refuse_bulk_write(execute_state)
        return
    if not execute_state.is_select or execute_state.is_column_load or execute_state.is_relationship_load:
        return
    options = []
    for entity in SCOPED_READ_MODELS:
        resource_type = resource_type_of(entity)
        if resource_type is None:
            continue
        options.append(
            with_loader_criteria(
                entity,
                evaluator.read_criteria(subject, resource_type, entity),
                include_aliases=True,
            )
        )
    execute_state.statement = execute_state.statement.options(*options)


def _committed_snapshot(obj: TenantScoped) -> dict[str, Any]:
    state = inspect(obj)
    snapshot: dict[str, Any] = {}
    for attr in state.mapper.column_attrs:
        history = state.attrs[attr.key].history
        if history.deleted:
            snapshot[attr.key] = history.deleted[0]
        else:
            snapshot[attr.key] = getattr(obj, attr.key)
    return snapshot


def _raise_for(decision: Decision, obj: TenantScoped, operation: Operation) -> None:
    if decision.allowed:
        return
    resource_type = resource_type_of(obj)
    raise decision.to_error(
        resource_type=None if resource_type is None else resource_type.value,
        resource_id=getattr(obj, "id", None),
        operation=operation.value,
    )


@event.listens_for(OrmSession, "before_flush")
def _guard_tenant_writes(session: OrmSession, _flush_context: object, _instances: object) -> None:
    subject = get_subject(session)
    claims = None if subject is None else subject.claims

    for obj in list(session.new):
        if not isinstance(obj, TenantScoped):
            continue
        resource_type = resource_type_of(obj)
        resource = None if resource_type is None else resource_type.value
        result = check_create(claims, obj.tenant_id)
        if not result.ok:
            raise result.to_error(
                claimed_tenant_id=None if claims is None else claims.tenant_id,
                resource_type=resource,
                resource_id=getattr(obj, "id", None),
                operation=Operation.CREATE.value,
            )
        obj.tenant_id = result.tenant_id
        if subject is not None and resource_type is not None:
            _raise_for(evaluator.authorize(subject, resource_type, Operation.CREATE, obj), obj, Operation.CREATE)

    for obj in list(session.dirty):
        if not isinstance(obj, TenantScoped) or not session.is_modified(obj):
            continue
        snapshot = _committed_snapshot(obj)
        result = check_tenant_unchanged(snapshot.get("tenant_id"), obj.tenant_id)
        resource_type = resource_type_of(obj)
        if not result.ok:
            raise result.to_error(
                claimed_tenant_id=None if claims is None else claims.tenant_id,
                resource_type=None if resource_type is None else resource_type.value,
                resource_id=getattr(obj, "id", None),
                operation=Operation.UPDATE.value,
            )
        if subject is not None and resource_type is not None:
            decision = evaluator.authorize(subject, resource_type, Operation.UPDATE, snapshot)
            _raise_for(decision, obj, Operation.UPDATE)

    for obj in list(session.deleted):
        if not isinstance(obj, TenantScoped) or subject is None:
            continue
        resource_type = resource_type_of(obj)
        if resource_type is None:
            continue
        decision = evaluator.authorize(subject, resource_type, Operation.DELETE, _committed_snapshot(obj))
        _raise_for(decision, obj, Operation.DELETE)


@contextmanager
def tenant_session(
    claims: Claims,
    *,
    on_denied: DenialHandler | None = None,
) -> Iterator[Session]:
    """Session whose reads and writes are evaluated against ``claims``.

    Authorization failures roll the transaction back before ``on_denied`` is
    told about them, then propagate.
    """
    session = Session(get_engine(), expire_on_commit=False)
    try:
        bind_subject(session, claims)
        yield session
    except AuthorizationError as exc:
        session.rollback()
        logger.warning(
            "%s denied for principal=%s tenant=%s: %s",
            exc.operation or "operation",
            claims.principal_id,
            claims.tenant_id,
            exc.reason,
        )
        if on_denied is not None:
            on_denied(claims, exc)
        raise
    finally:
        session.close()
