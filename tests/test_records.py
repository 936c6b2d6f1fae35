from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ledgerauthz import main as app_main
from ledgerauthz.domain.models import (
    PlatformAdminCreate,
    Requisition,
    SecurityEvent,
    SecurityEventType,
    SecuritySeverity,
)
from ledgerauthz.infra import db
from ledgerauthz.services.session_service import SessionService

from conftest import FakeRedis

PASSWORD = "pass-1234"


@pytest.fixture()
def records_client(test_engine: Engine, fake_redis: FakeRedis) -> Generator[TestClient, None, None]:
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _register(client: TestClient, email: str) -> str:
    response = client.post("/api/auth/register", json={"email": email, "password": PASSWORD})
    assert response.status_code == 201
    return response.json()["id"]


def _login(client: TestClient, email: str) -> str:
    response = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200
    return response.json()["access_token"]


def _switch(client: TestClient, token: str, tenant_id: str) -> str:
    response = client.post(
        "/api/auth/switch-tenant",
        json={"tenant_id": tenant_id},
        headers=_auth_header(token),
    )
    assert response.status_code == 200
    return response.json()["access_token"]


def _owner(client: TestClient, email: str, org_name: str) -> tuple[str, str]:
    _register(client, email)
    token = _login(client, email)
    response = client.post(
        "/api/directory/organizations",
        json={"name": org_name},
        headers=_auth_header(token),
    )
    assert response.status_code == 201
    org_id = response.json()["id"]
    return org_id, _switch(client, token, org_id)


def _member(
    client: TestClient,
    owner_token: str,
    org_id: str,
    email: str,
    *,
    org_role: str = "member",
) -> tuple[str, str]:
    principal_id = _register(client, email)
    token = _login(client, email)
    invite = client.post(
        "/api/directory/invitations",
        json={"email": email, "org_role": org_role, "workflow_role": "submitter"},
        headers=_auth_header(owner_token),
    )
    assert invite.status_code == 201
    accept = client.post(
        f"/api/directory/invitations/{invite.json()['token']}/accept",
        headers=_auth_header(token),
    )
    assert accept.status_code == 200
    return principal_id, _switch(client, token, org_id)


def _create(client: TestClient, token: str, path: str, payload: dict[str, object]) -> dict[str, object]:
    response = client.post(f"/api/records/{path}", json=payload, headers=_auth_header(token))
    assert response.status_code == 201, response.text
    return response.json()


def _events(event_type: SecurityEventType) -> list[SecurityEvent]:
    with Session(db.get_engine()) as session:
        return list(session.exec(select(SecurityEvent).where(SecurityEvent.event_type == event_type)).all())


def _requisition_count() -> int:
    with Session(db.get_engine()) as session:
        return len(session.exec(select(Requisition)).all())


def test_create_without_tenant_is_stamped_from_claims(records_client: TestClient) -> None:
    org_a, owner_token = _owner(records_client, "owner-a@example.com", "Org A")
    member_id, member_token = _member(records_client, owner_token, org_a, "member-a@example.com")

    row = _create(records_client, member_token, "requisitions", {"title": "Paper", "amount": 12.5})
    assert row["tenant_id"] == org_a
    assert row["created_by"] == member_id
    assert row["status"] == "draft"


def test_create_declaring_foreign_tenant_is_rejected_and_logged(records_client: TestClient) -> None:
    org_a, owner_a = _owner(records_client, "owner-a@example.com", "Org A")
    org_b, _ = _owner(records_client, "owner-b@example.com", "Org B")

    response = records_client.post(
        "/api/records/requisitions",
        json={"title": "Sneaky", "tenant_id": org_b},
        headers=_auth_header(owner_a),
    )
    assert response.status_code == 403
    assert _requisition_count() == 0

    events = _events(SecurityEventType.CROSS_TENANT_ACCESS_ATTEMPT)
    assert len(events) == 1
    assert events[0].severity == SecuritySeverity.CRITICAL
    assert events[0].claimed_tenant_id == org_a
    assert events[0].target_tenant_id == org_b


def test_tenantless_claims_cannot_create(records_client: TestClient) -> None:
    _register(records_client, "orphan@example.com")
    token = _login(records_client, "orphan@example.com")

    response = records_client.post(
        "/api/records/requisitions",
        json={"title": "Orphaned"},
        headers=_auth_header(token),
    )
    assert response.status_code == 422
    assert response.json()["detail"] == "no tenant could be determined for the new record"
    assert _requisition_count() == 0
    assert len(_events(SecurityEventType.TENANT_INVARIANT_VIOLATION)) == 1

    listing = records_client.get("/api/records/requisitions", headers=_auth_header(token))
    assert listing.status_code == 200
    assert listing.json() == []


def test_foreign_rows_are_invisible_and_attempt_is_logged(records_client: TestClient) -> None:
    org_a, owner_a = _owner(records_client, "owner-a@example.com", "Org A")
    org_b, owner_b = _owner(records_client, "owner-b@example.com", "Org B")
    row = _create(records_client, owner_a, "requisitions", {"title": "Chairs"})

    listing = records_client.get("/api/records/requisitions", headers=_auth_header(owner_b))
    assert listing.status_code == 200
    assert listing.json() == []

    direct = records_client.get(f"/api/records/requisitions/{row['id']}", headers=_auth_header(owner_b))
    assert direct.status_code == 404

    events = _events(SecurityEventType.CROSS_TENANT_ACCESS_ATTEMPT)
    assert len(events) == 1
    assert events[0].claimed_tenant_id == org_b
    assert events[0].target_tenant_id == org_a
    assert events[0].resource_id == row["id"]


def test_member_cannot_update_project_but_admin_can(records_client: TestClient) -> None:
    org_a, owner_token = _owner(records_client, "owner-a@example.com", "Org A")
    _, member_token = _member(records_client, owner_token, org_a, "member-a@example.com")
    _, admin_token = _member(records_client, owner_token, org_a, "admin-a@example.com", org_role="admin")
    project = _create(records_client, owner_token, "projects", {"name": "Warehouse"})

    denied = records_client.patch(
        f"/api/records/projects/{project['id']}",
        json={"name": "Renamed"},
        headers=_auth_header(member_token),
    )
    assert denied.status_code == 403
    assert denied.json()["detail"] == "update requires the owner or admin role"
    assert len(_events(SecurityEventType.ACCESS_DENIED)) == 1

    allowed = records_client.patch(
        f"/api/records/projects/{project['id']}",
        json={"name": "Renamed"},
        headers=_auth_header(admin_token),
    )
    assert allowed.status_code == 200
    assert allowed.json()["name"] == "Renamed"

    create_denied = records_client.post(
        "/api/records/projects",
        json={"name": "Member project"},
        headers=_auth_header(member_token),
    )
    assert create_denied.status_code == 403


def test_requisition_edits_close_after_submission(records_client: TestClient) -> None:
    org_a, owner_token = _owner(records_client, "owner-a@example.com", "Org A")
    _, member_token = _member(records_client, owner_token, org_a, "member-a@example.com")
    row = _create(records_client, member_token, "requisitions", {"title": "Toner"})

    draft_edit = records_client.patch(
        f"/api/records/requisitions/{row['id']}",
        json={"title": "Toner x2", "status": "submitted"},
        headers=_auth_header(member_token),
    )
    assert draft_edit.status_code == 200
    assert draft_edit.json()["status"] == "submitted"

    late_edit = records_client.patch(
        f"/api/records/requisitions/{row['id']}",
        json={"title": "Toner x3"},
        headers=_auth_header(member_token),
    )
    assert late_edit.status_code == 403

    owner_edit = records_client.patch(
        f"/api/records/requisitions/{row['id']}",
        json={"status": "approved"},
        headers=_auth_header(owner_token),
    )
    assert owner_edit.status_code == 200


def test_tenant_of_committed_row_is_immutable(records_client: TestClient) -> None:
    org_a, owner_a = _owner(records_client, "owner-a@example.com", "Org A")
    org_b, _ = _owner(records_client, "owner-b@example.com", "Org B")
    row = _create(records_client, owner_a, "requisitions", {"title": "Desks"})

    response = records_client.patch(
        f"/api/records/requisitions/{row['id']}",
        json={"tenant_id": org_b},
        headers=_auth_header(owner_a),
    )
    assert response.status_code == 422
    assert response.json()["detail"] == "tenant_id is immutable once committed"

    fetched = records_client.get(f"/api/records/requisitions/{row['id']}", headers=_auth_header(owner_a))
    assert fetched.json()["tenant_id"] == org_a


def test_assigned_project_requisitions_are_visible_to_member(records_client: TestClient) -> None:
    org_a, owner_token = _owner(records_client, "owner-a@example.com", "Org A")
    member_id, member_token = _member(records_client, owner_token, org_a, "member-a@example.com")
    project = _create(records_client, owner_token, "projects", {"name": "Site 1"})
    _create(
        records_client,
        owner_token,
        "project-assignments",
        {"project_id": project["id"], "user_id": member_id},
    )
    in_project = _create(records_client, owner_token, "requisitions", {"title": "Cement", "project_id": project["id"]})
    _create(records_client, owner_token, "requisitions", {"title": "Owner only"})

    listing = records_client.get("/api/records/requisitions", headers=_auth_header(member_token))
    assert listing.status_code == 200
    assert [item["id"] for item in listing.json()] == [in_project["id"]]

    owner_listing = records_client.get("/api/records/requisitions", headers=_auth_header(owner_token))
    assert len(owner_listing.json()) == 2


def test_assignment_requires_active_member_of_tenant(records_client: TestClient) -> None:
    _, owner_a = _owner(records_client, "owner-a@example.com", "Org A")
    _, owner_b = _owner(records_client, "owner-b@example.com", "Org B")
    outsider = records_client.get("/api/auth/me", headers=_auth_header(owner_b)).json()["sub"]
    project = _create(records_client, owner_a, "projects", {"name": "Site 1"})

    response = records_client.post(
        "/api/records/project-assignments",
        json={"project_id": project["id"], "user_id": outsider},
        headers=_auth_header(owner_a),
    )
    assert response.status_code == 404


def test_platform_admin_reads_across_tenants_but_writes_stay_scoped(records_client: TestClient) -> None:
    org_a, owner_a = _owner(records_client, "owner-a@example.com", "Org A")
    _, owner_b = _owner(records_client, "owner-b@example.com", "Org B")
    row_a = _create(records_client, owner_a, "requisitions", {"title": "A stuff"})
    _create(records_client, owner_b, "requisitions", {"title": "B stuff"})

    _owner(records_client, "root@example.com", "Root Org")
    SessionService().add_platform_admin(PlatformAdminCreate(email="root@example.com"))
    login = records_client.post(
        "/api/platform/login",
        json={"email": "root@example.com", "password": PASSWORD},
    )
    assert login.status_code == 200
    admin_token = login.json()["access_token"]
    assert login.json()["claims"]["is_platform_admin"] is True

    listing = records_client.get("/api/records/requisitions", headers=_auth_header(admin_token))
    assert {item["title"] for item in listing.json()} == {"A stuff", "B stuff"}

    write = records_client.patch(
        f"/api/records/requisitions/{row_a['id']}",
        json={"title": "Hijacked"},
        headers=_auth_header(admin_token),
    )
    assert write.status_code == 403
    events = _events(SecurityEventType.CROSS_TENANT_ACCESS_ATTEMPT)
    assert events[-1].target_tenant_id == org_a

    plan = records_client.patch(
        f"/api/directory/organizations/{org_a}",
        json={"plan": "professional"},
        headers=_auth_header(admin_token),
    )
    assert plan.status_code == 200
    assert plan.json()["max_users"] == 10
    assert plan.json()["name"] == "Org A"

    rename = records_client.patch(
        f"/api/directory/organizations/{org_a}",
        json={"name": "Renamed", "plan": "enterprise"},
        headers=_auth_header(admin_token),
    )
    assert rename.status_code == 403
    own = records_client.get(f"/api/directory/organizations/{org_a}", headers=_auth_header(owner_a))
    assert own.json()["name"] == "Org A"
    assert own.json()["plan"] == "professional"


def test_authorize_reports_decisions(records_client: TestClient) -> None:
    org_a, owner_a = _owner(records_client, "owner-a@example.com", "Org A")
    _, member_token = _member(records_client, owner_a, org_a, "member-a@example.com")
    _, owner_b = _owner(records_client, "owner-b@example.com", "Org B")
    own = _create(records_client, member_token, "requisitions", {"title": "Mine"})
    foreign = _create(records_client, owner_b, "requisitions", {"title": "Theirs"})

    allowed = records_client.post(
        "/api/records/authorize",
        json={"resource_type": "requisition", "operation": "update", "row_id": own["id"]},
        headers=_auth_header(member_token),
    )
    assert allowed.json() == {"allowed": True, "kind": None, "reason": None}

    project_create = records_client.post(
        "/api/records/authorize",
        json={"resource_type": "project", "operation": "create"},
        headers=_auth_header(member_token),
    )
    assert project_create.json()["allowed"] is False
    assert project_create.json()["kind"] == "access_denied_write"

    hidden = records_client.post(
        "/api/records/authorize",
        json={"resource_type": "requisition", "operation": "read", "row_id": foreign["id"]},
        headers=_auth_header(member_token),
    )
    assert hidden.json() == {"allowed": False, "kind": "access_denied_read", "reason": "record not found"}
