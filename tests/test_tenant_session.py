from __future__ import annotations

import pytest
from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.errors import (
    AccessDeniedWrite,
    AuthorizationError,
    CrossTenantAttempt,
    TenantInvariantViolation,
)
from ledgerauthz.domain.models import (
    Category,
    Membership,
    Organization,
    OrganizationCreate,
    PrincipalCreate,
    Requisition,
    RequisitionStatus,
    SecurityEvent,
    SecurityEventType,
)
from ledgerauthz.domain.roles import OrgRole, WorkflowRole
from ledgerauthz.infra.tenant import get_subject, tenant_session
from ledgerauthz.services.directory_service import DirectoryService
from ledgerauthz.services.security_service import SecurityService

PASSWORD = "pass-1234"


def _tenant(directory: DirectoryService, email: str, name: str) -> Claims:
    owner = directory.register_principal(PrincipalCreate(email=email, password=PASSWORD))
    organization = directory.create_organization(owner.id, OrganizationCreate(name=name))
    return Claims(
        principal_id=owner.id,
        tenant_id=organization.id,
        org_role=OrgRole.OWNER,
        workflow_role=WorkflowRole.SUPER_ADMIN,
    )


def _add_requisition(claims: Claims, title: str) -> Requisition:
    with tenant_session(claims) as session:
        row = Requisition(title=title, created_by=claims.principal_id)
        session.add(row)
        session.commit()
        session.refresh(row)
        return row


def test_scoped_session_binds_subject(test_engine: Engine) -> None:
    claims = _tenant(DirectoryService(), "a@example.com", "Org A")
    with tenant_session(claims) as session:
        subject = get_subject(session)
        assert subject is not None
        assert subject.claims == claims
    with Session(test_engine) as session:
        assert get_subject(session) is None


def test_insert_is_stamped_and_reads_are_scoped(test_engine: Engine) -> None:
    directory = DirectoryService()
    tenant_a = _tenant(directory, "a@example.com", "Org A")
    tenant_b = _tenant(directory, "b@example.com", "Org B")
    row_a = _add_requisition(tenant_a, "A")
    row_b = _add_requisition(tenant_b, "B")
    assert row_a.tenant_id == tenant_a.tenant_id
    assert row_b.tenant_id == tenant_b.tenant_id

    with tenant_session(tenant_a) as session:
        titles = [item.title for item in session.exec(select(Requisition)).all()]
        assert titles == ["A"]
        assert session.get(Requisition, row_b.id) is None

    with Session(test_engine) as session:
        assert len(session.exec(select(Requisition)).all()) == 2


def test_denied_insert_rolls_back_and_reports(test_engine: Engine) -> None:
    directory = DirectoryService()
    tenant_a = _tenant(directory, "a@example.com", "Org A")
    tenant_b = _tenant(directory, "b@example.com", "Org B")
    reported: list[AuthorizationError] = []

    with pytest.raises(CrossTenantAttempt):
        with tenant_session(tenant_a, on_denied=lambda _claims, exc: reported.append(exc)) as session:
            session.add(Category(name="Ours", created_by=tenant_a.principal_id))
            session.add(Category(name="Theirs", tenant_id=tenant_b.tenant_id, created_by=tenant_a.principal_id))
            session.commit()

    assert len(reported) == 1
    assert reported[0].operation == "create"
    with Session(test_engine) as session:
        assert session.exec(select(Category)).all() == []


def test_security_event_survives_rollback(test_engine: Engine) -> None:
    directory = DirectoryService()
    _tenant(directory, "a@example.com", "Org A")
    orphan = directory.register_principal(PrincipalCreate(email="orphan@example.com", password=PASSWORD))
    security = SecurityService()

    with pytest.raises(TenantInvariantViolation):
        with tenant_session(Claims(principal_id=orphan.id), on_denied=security.record_authorization_failure) as session:
            session.add(Requisition(title="Orphaned", created_by=orphan.id))
            session.commit()

    with Session(test_engine) as session:
        assert session.exec(select(Requisition)).all() == []
        events = session.exec(select(SecurityEvent)).all()
    assert [item.event_type for item in events] == [SecurityEventType.TENANT_INVARIANT_VIOLATION]
    assert events[0].principal_id == orphan.id


def test_requisition_is_hidden_from_unrelated_member(test_engine: Engine) -> None:
    directory = DirectoryService()
    owner = _tenant(directory, "a@example.com", "Org A")
    row = _add_requisition(owner, "Owner's")
    stranger = directory.register_principal(PrincipalCreate(email="m@example.com", password=PASSWORD))
    member = Claims(
        principal_id=stranger.id,
        tenant_id=owner.tenant_id,
        org_role=OrgRole.MEMBER,
        workflow_role=WorkflowRole.SUBMITTER,
    )

    with tenant_session(member) as session:
        assert session.get(Requisition, row.id) is None
        assert session.exec(select(Requisition)).all() == []


def test_creator_loses_edit_after_submission(test_engine: Engine) -> None:
    owner = _tenant(DirectoryService(), "a@example.com", "Org A")
    row = _add_requisition(owner, "Draft")
    creator = Claims(
        principal_id=owner.principal_id,
        tenant_id=owner.tenant_id,
        org_role=OrgRole.MEMBER,
        workflow_role=WorkflowRole.SUBMITTER,
    )

    with pytest.raises(AccessDeniedWrite):
        with tenant_session(creator) as session:
            loaded = session.get(Requisition, row.id)
            assert loaded is not None
            loaded.status = RequisitionStatus.SUBMITTED
            session.add(loaded)
            session.commit()
            loaded.title = "Edited after submit"
            session.add(loaded)
            session.commit()

    with Session(test_engine) as session:
        stored = session.get(Requisition, row.id)
        assert stored is not None
        assert stored.title == "Draft"
        assert stored.status == RequisitionStatus.SUBMITTED


def test_tenant_cannot_be_cleared(test_engine: Engine) -> None:
    claims = _tenant(DirectoryService(), "a@example.com", "Org A")
    row = _add_requisition(claims, "Keep")

    with pytest.raises(TenantInvariantViolation, match="cannot be cleared"):
        with tenant_session(claims) as session:
            loaded = session.get(Requisition, row.id)
            assert loaded is not None
            loaded.tenant_id = None
            session.add(loaded)
            session.commit()


def test_other_tenant_directory_rows_are_hidden(test_engine: Engine) -> None:
    directory = DirectoryService()
    tenant_a = _tenant(directory, "a@example.com", "Org A")
    tenant_b = _tenant(directory, "b@example.com", "Org B")

    with tenant_session(tenant_b) as session:
        assert session.get(Organization, tenant_a.tenant_id) is None
        organizations = session.exec(select(Organization)).all()
        assert [item.id for item in organizations] == [tenant_b.tenant_id]
        memberships = session.exec(select(Membership)).all()
        assert {item.organization_id for item in memberships} == {tenant_b.tenant_id}


def test_bulk_update_cannot_move_rows_between_tenants(test_engine: Engine) -> None:
    directory = DirectoryService()
    tenant_a = _tenant(directory, "a@example.com", "Org A")
    tenant_b = _tenant(directory, "b@example.com", "Org B")
    row = _add_requisition(tenant_a, "Secret")
    reported: list[AuthorizationError] = []

    with pytest.raises(TenantInvariantViolation, match="immutable"):
        with tenant_session(tenant_b, on_denied=lambda _claims, exc: reported.append(exc)) as session:
            session.exec(update(Requisition).values(tenant_id=tenant_b.tenant_id, title="Hijacked"))
            session.commit()

    assert [exc.operation for exc in reported] == ["update"]
    with Session(test_engine) as session:
        stored = session.get(Requisition, row.id)
        assert stored is not None
        assert stored.title == "Secret"
        assert stored.tenant_id == tenant_a.tenant_id


def test_bulk_writes_are_refused_in_tenant_sessions(test_engine: Engine) -> None:
    directory = DirectoryService()
    tenant_a = _tenant(directory, "a@example.com", "Org A")
    tenant_b = _tenant(directory, "b@example.com", "Org B")
    row = _add_requisition(tenant_a, "Secret")

    with pytest.raises(AccessDeniedWrite, match="bulk update"):
        with tenant_session(tenant_b) as session:
            session.exec(update(Requisition).where(Requisition.id == row.id).values(title="Renamed"))
            session.commit()

    with pytest.raises(AccessDeniedWrite, match="bulk delete"):
        with tenant_session(tenant_a) as session:
            session.exec(delete(Requisition).where(Requisition.id == row.id))
            session.commit()

    with Session(test_engine) as session:
        stored = session.get(Requisition, row.id)
        assert stored is not None
        assert stored.title == "Secret"
