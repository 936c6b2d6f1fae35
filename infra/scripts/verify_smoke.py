from __future__ import annotations

import asyncio
import os
import time
from uuid import uuid4

import httpx


def _assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


def _auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def _wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    last_status = "n/a"
    last_body = ""
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
            last_status = str(response.status_code)
            last_body = response.text
        except httpx.HTTPError as exc:
            last_status = "http_error"
            last_body = str(exc)
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}, last_status={last_status}, detail={last_body}")


async def _owner_token(client: httpx.AsyncClient, run_id: str, label: str) -> tuple[str, str]:
    email = f"{label}-{run_id}@smoke.test"
    password = f"pass-{run_id}"
    register_resp = await client.post("/api/auth/register", json={"email": email, "password": password})
    _assert_status(register_resp, 201)

    login_resp = await client.post("/api/auth/login", json={"email": email, "password": password})
    _assert_status(login_resp, 200)
    token = login_resp.json()["access_token"]

    org_resp = await client.post(
        "/api/directory/organizations",
        json={"name": f"{label} {run_id}"},
        headers=_auth_headers(token),
    )
    _assert_status(org_resp, 201)
    org_id = org_resp.json()["id"]

    switch_resp = await client.post(
        "/api/auth/switch-tenant",
        json={"tenant_id": org_id},
        headers=_auth_headers(token),
    )
    _assert_status(switch_resp, 200)
    return org_id, switch_resp.json()["access_token"]


async def _run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000").rstrip("/")
    run_id = uuid4().hex[:8]

    timeout = httpx.Timeout(20.0)
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        await _wait_ok(client, "/healthz")
        await _wait_ok(client, "/readyz")

        _, token_a = await _owner_token(client, run_id, "smoke-a")
        _, token_b = await _owner_token(client, run_id, "smoke-b")

        project_resp = await client.post(
            "/api/records/projects",
            json={"name": "smoke project"},
            headers=_auth_headers(token_a),
        )
        _assert_status(project_resp, 201)
        project_id = project_resp.json()["id"]

        foreign_read = await client.get(f"/api/records/projects/{project_id}", headers=_auth_headers(token_b))
        _assert_status(foreign_read, 404)

        foreign_list = await client.get("/api/records/projects", headers=_auth_headers(token_b))
        _assert_status(foreign_list, 200)
        if any(item["id"] == project_id for item in foreign_list.json()):
            raise RuntimeError("project leaked across tenants")

    print("smoke verification passed")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
