from __future__ import annotations

import asyncio
import os
import time
from uuid import uuid4

import httpx

from sitework.infra.auth import create_access_token


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


async def _run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000").rstrip("/")
    run_id = uuid4().hex[:8]
    organization_id = f"smoke-org-{run_id}"
    reviewer_token = create_access_token(
        user_id=f"smoke-supervisor-{run_id}",
        organization_id=organization_id,
        roles=["Supervisor"],
    )
    worker_token = create_access_token(
        user_id=f"smoke-worker-{run_id}",
        organization_id=organization_id,
        roles=["FieldWorker"],
    )

    timeout = httpx.Timeout(20.0)
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        await _wait_ok(client, "/healthz")
        await _wait_ok(client, "/readyz")

        anonymous_resp = await client.get("/api/tasks/updates/pending")
        _assert_status(anonymous_resp, 401)

        pending_resp = await client.get("/api/tasks/updates/pending", headers=_auth_headers(reviewer_token))
        _assert_status(pending_resp, 200)
        if pending_resp.json()["total_count"] != 0:
            raise RuntimeError("fresh organization unexpectedly has pending reviews")

        missing_task_resp = await client.post(
            f"/api/tasks/missing-{run_id}/updates",
            json={"description": "smoke", "progress_percentage": 10},
            headers=_auth_headers(worker_token),
        )
        _assert_status(missing_task_resp, 404)
        if missing_task_resp.json()["detail"]["kind"] != "not_found":
            raise RuntimeError(f"unexpected error body: {missing_task_resp.text}")

        missing_update_resp = await client.post(
            f"/api/tasks/updates/missing-{run_id}/approve-supervisor",
            json={"approved": True},
            headers=_auth_headers(reviewer_token),
        )
        _assert_status(missing_update_resp, 404)

        inbox_resp = await client.get("/api/notifications", headers=_auth_headers(reviewer_token))
        _assert_status(inbox_resp, 200)

    print("verify_smoke: healthz/readyz + auth + pending reviews + error mapping + notifications ok")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
