from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ledgerauthz import main as app_main
from ledgerauthz.domain.models import (
    LoginAttempt,
    PlatformAdmin,
    PlatformAdminCreate,
    PlatformAdminSession,
    SecurityEvent,
    SecurityEventType,
    now_utc,
)
from ledgerauthz.services.session_service import SessionService

from conftest import FakeRedis

PASSWORD = "pass-1234"
ADMIN_EMAIL = "root@example.com"


@pytest.fixture()
def platform_client(test_engine: Engine, fake_redis: FakeRedis) -> Generator[TestClient, None, None]:
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _admin(client: TestClient, **options: object) -> None:
    response = client.post("/api/auth/register", json={"email": ADMIN_EMAIL, "password": PASSWORD})
    assert response.status_code == 201
    SessionService().add_platform_admin(PlatformAdminCreate(email=ADMIN_EMAIL, **options))


def _platform_login(client: TestClient, password: str = PASSWORD) -> tuple[int, dict[str, object]]:
    response = client.post("/api/platform/login", json={"email": ADMIN_EMAIL, "password": password})
    return response.status_code, response.json()


def _events(engine: Engine, event_type: SecurityEventType) -> list[SecurityEvent]:
    with Session(engine) as session:
        return list(session.exec(select(SecurityEvent).where(SecurityEvent.event_type == event_type)).all())


def _admin_row(engine: Engine) -> PlatformAdmin:
    with Session(engine) as session:
        return session.exec(select(PlatformAdmin).where(PlatformAdmin.email == ADMIN_EMAIL)).one()


def test_five_failures_lock_the_account(platform_client: TestClient, test_engine: Engine) -> None:
    _admin(platform_client)
    for _ in range(SessionService.MAX_EMAIL_ATTEMPTS):
        status_code, body = _platform_login(platform_client, password="wrong-pass")
        assert status_code == 401
        assert body["detail"] == "Invalid credentials"

    status_code, body = _platform_login(platform_client)
    assert status_code == 429
    assert body["allowed"] is False
    assert body["locked"] is True
    assert body["locked_until"] is not None
    assert body["email_attempts"] == 5
    assert body["max_attempts"] == 5

    admin = _admin_row(test_engine)
    assert admin.failed_login_count == 5
    assert admin.locked_until is not None
    assert len(_events(test_engine, SecurityEventType.RATE_LIMIT_EXCEEDED)) == 1
    assert len(_events(test_engine, SecurityEventType.LOGIN_FAILED)) == 5

    status_code, _ = _platform_login(platform_client)
    assert status_code == 429
    assert len(_events(test_engine, SecurityEventType.RATE_LIMIT_EXCEEDED)) == 1


def test_success_resets_failure_counter(
    platform_client: TestClient,
    test_engine: Engine,
    fake_redis: FakeRedis,
) -> None:
    _admin(platform_client)
    for _ in range(SessionService.MAX_EMAIL_ATTEMPTS - 1):
        status_code, _ = _platform_login(platform_client, password="wrong-pass")
        assert status_code == 401
    assert fake_redis.get(f"login:fail:email:{ADMIN_EMAIL}") == "4"
    assert fake_redis.ttls[f"login:fail:email:{ADMIN_EMAIL}"] == 15 * 60

    status_code, body = _platform_login(platform_client)
    assert status_code == 200
    assert body["claims"]["is_platform_admin"] is True
    assert fake_redis.get(f"login:fail:email:{ADMIN_EMAIL}") is None

    status_code, _ = _platform_login(platform_client, password="wrong-pass")
    assert status_code == 401
    status_code, _ = _platform_login(platform_client)
    assert status_code == 200

    admin = _admin_row(test_engine)
    assert admin.failed_login_count == 0
    assert admin.last_login_ip == "testclient"
    with Session(test_engine) as session:
        attempts = session.exec(select(LoginAttempt)).all()
    assert [item.success for item in attempts].count(False) == 5


def test_address_limit_blocks_without_locking(test_engine: Engine, fake_redis: FakeRedis) -> None:
    service = SessionService()
    for index in range(SessionService.MAX_IP_ATTEMPTS):
        service.record_login_attempt(f"user{index}@example.com", False, "10.0.0.9")

    status = service.check_login_rate_limit("someone@example.com", "10.0.0.9")
    assert status.allowed is False
    assert status.locked is False
    assert status.ip_attempts == 10

    assert service.check_login_rate_limit("someone@example.com", "10.0.0.10").allowed is True


def test_ip_allow_list_is_enforced(platform_client: TestClient, test_engine: Engine) -> None:
    _admin(platform_client, allowed_ips=["10.0.0.1"], require_ip_check=True)

    status_code, body = _platform_login(platform_client)
    assert status_code == 403
    assert body["detail"] == "Login not allowed from this address"
    assert len(_events(test_engine, SecurityEventType.IP_NOT_ALLOWED)) == 1


def test_allow_list_ignored_without_ip_check(platform_client: TestClient) -> None:
    _admin(platform_client, allowed_ips=["10.0.0.1"], require_ip_check=False)

    status_code, _ = _platform_login(platform_client)
    assert status_code == 200


def test_non_admin_cannot_use_platform_login(platform_client: TestClient) -> None:
    platform_client.post("/api/auth/register", json={"email": ADMIN_EMAIL, "password": PASSWORD})

    status_code, body = _platform_login(platform_client)
    assert status_code == 401
    assert body["detail"] == "Invalid credentials"


def test_tenant_login_never_carries_platform_flag(platform_client: TestClient) -> None:
    _admin(platform_client)
    response = platform_client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": PASSWORD})
    assert response.status_code == 200
    assert response.json()["claims"]["is_platform_admin"] is False

    alerts = platform_client.get("/api/security/alerts", headers=_auth_header(response.json()["access_token"]))
    assert alerts.status_code == 403


def test_refresh_keeps_platform_flag(platform_client: TestClient) -> None:
    _admin(platform_client)
    _, body = _platform_login(platform_client)
    token = str(body["access_token"])

    refreshed = platform_client.post("/api/auth/refresh", json={}, headers=_auth_header(token))
    assert refreshed.status_code == 200
    assert refreshed.json()["claims"]["is_platform_admin"] is True


def test_session_lifecycle(platform_client: TestClient) -> None:
    _admin(platform_client, session_timeout_minutes=30)
    _, body = _platform_login(platform_client)
    headers = {**_auth_header(str(body["access_token"])), "X-Admin-Session": str(body["session_token"])}

    touched = platform_client.post("/api/platform/sessions/touch", headers=headers)
    assert touched.status_code == 200
    assert touched.json()["is_active"] is True

    admins = platform_client.get("/api/platform/admins", headers=headers)
    assert admins.status_code == 200
    assert [item["email"] for item in admins.json()] == [ADMIN_EMAIL]

    created = platform_client.post("/api/platform/admins", json={"email": "ops@example.com"}, headers=headers)
    assert created.status_code == 201
    duplicate = platform_client.post("/api/platform/admins", json={"email": "ops@example.com"}, headers=headers)
    assert duplicate.status_code == 409

    missing_header = platform_client.get("/api/platform/admins", headers=_auth_header(str(body["access_token"])))
    assert missing_header.status_code == 401

    logout = platform_client.post("/api/platform/logout", headers=headers)
    assert logout.status_code == 204
    after_logout = platform_client.post("/api/platform/sessions/touch", headers=headers)
    assert after_logout.status_code == 401


def test_expired_session_is_closed(platform_client: TestClient, test_engine: Engine) -> None:
    _admin(platform_client)
    _, body = _platform_login(platform_client)
    headers = {**_auth_header(str(body["access_token"])), "X-Admin-Session": str(body["session_token"])}

    with Session(test_engine) as session:
        row = session.exec(
            select(PlatformAdminSession).where(PlatformAdminSession.session_token == body["session_token"])
        ).one()
        row.expires_at = now_utc() - timedelta(minutes=1)
        session.add(row)
        session.commit()

    response = platform_client.post("/api/platform/sessions/touch", headers=headers)
    assert response.status_code == 401
    assert response.json()["detail"] == "Session expired"
    assert len(_events(test_engine, SecurityEventType.SESSION_EXPIRED)) == 1

    with Session(test_engine) as session:
        row = session.exec(
            select(PlatformAdminSession).where(PlatformAdminSession.session_token == body["session_token"])
        ).one()
    assert row.is_active is False


def test_rate_limit_status_endpoint(platform_client: TestClient) -> None:
    _admin(platform_client)
    _platform_login(platform_client, password="wrong-pass")
    _, body = _platform_login(platform_client)

    response = platform_client.get(
        "/api/platform/rate-limit",
        params={"email": "someone@example.com"},
        headers=_auth_header(str(body["access_token"])),
    )
    assert response.status_code == 200
    assert response.json()["allowed"] is True
    assert response.json()["email_attempts"] == 0
