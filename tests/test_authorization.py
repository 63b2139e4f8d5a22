"""
Tests for authorization boundaries — cross-user isolation and role enforcement.

These tests verify three security properties:

1. **Cross-user isolation**: A logged-in MEMBER cannot read, heartbeat,
   cancel or otherwise steer another member's operation. Every attempt
   returns 403 and changes nothing.

2. **Role enforcement**: MEMBER users cannot reach any /admin/* endpoint,
   and ADMIN users cannot start or drive operations through the member
   endpoints.

3. **Machine callers**: the worker and cron endpoints accept only their
   own shared secret; a user JWT is not enough.
"""

import uuid

import pytest


async def start_operation(client, amount_cents=0):
    response = await client.post("/operations", json={"type": "renew", "amount_cents": amount_cents})
    assert response.status_code == 201
    return response.json()["id"]


class TestCrossUserOperationAccess:
    """A member cannot see or act on another member's operations."""

    async def test_cannot_view_other_users_operation(
        self, authenticated_client, second_authenticated_client
    ):
        operation_id = await start_operation(authenticated_client)

        resp = await second_authenticated_client.get(f"/operations/{operation_id}")
        assert resp.status_code == 403

    async def test_cannot_cancel_other_users_operation(
        self, authenticated_client, second_authenticated_client
    ):
        operation_id = await start_operation(authenticated_client)

        resp = await second_authenticated_client.post(f"/operations/{operation_id}/cancel")
        assert resp.status_code == 403

        # Still cancellable by its owner
        own = await authenticated_client.get(f"/operations/{operation_id}")
        assert own.json()["status"] == "PENDING"

    @pytest.mark.parametrize("method,suffix,body", [
        ("post", "/heartbeat", None),
        ("get", "/heartbeat", None),
        ("post", "/select-package", {"package_id": "basic"}),
        ("post", "/confirm", None),
        ("get", "/captcha", None),
        ("post", "/captcha", {"solution": "abc"}),
    ])
    async def test_cannot_steer_other_users_operation(
        self, authenticated_client, second_authenticated_client, method, suffix, body
    ):
        operation_id = await start_operation(authenticated_client)

        request = getattr(second_authenticated_client, method)
        kwargs = {"json": body} if body is not None else {}
        resp = await request(f"/operations/{operation_id}{suffix}", **kwargs)

        assert resp.status_code == 403

    async def test_operation_lists_are_disjoint(
        self, authenticated_client, second_authenticated_client
    ):
        await start_operation(authenticated_client)
        await start_operation(second_authenticated_client)

        a_ids = {op["id"] for op in (await authenticated_client.get("/operations")).json()}
        b_ids = {op["id"] for op in (await second_authenticated_client.get("/operations")).json()}

        assert len(a_ids) == len(b_ids) == 1
        assert a_ids.isdisjoint(b_ids)

    async def test_own_account_only(self, authenticated_client, second_authenticated_client):
        a = (await authenticated_client.get("/accounts/me")).json()
        b = (await second_authenticated_client.get("/accounts/me")).json()
        assert a["id"] != b["id"]

    async def test_unknown_operation_is_not_found(self, authenticated_client):
        resp = await authenticated_client.get(f"/operations/{uuid.uuid4()}")
        assert resp.status_code == 404


class TestNonAdminBlockedFromAdminEndpoints:
    """
    Every /admin/* endpoint must return 403 for MEMBER users,
    even when the member targets their own account.
    """

    @pytest.mark.parametrize("path", [
        "/admin/accounts",
        "/admin/accounts/{account_id}",
        "/admin/accounts/{account_id}/balance",
        "/admin/accounts/{account_id}/transactions",
        "/admin/accounts/{account_id}/anomalies",
        "/admin/accounts/{account_id}/activity",
        "/admin/operations",
    ])
    async def test_member_cannot_read_admin_views(self, authenticated_client, path):
        account_id = (await authenticated_client.get("/accounts/me")).json()["id"]

        resp = await authenticated_client.get(path.format(account_id=account_id))
        assert resp.status_code == 403

    async def test_member_cannot_deposit_to_own_account(self, authenticated_client):
        account_id = (await authenticated_client.get("/accounts/me")).json()["id"]

        resp = await authenticated_client.post(
            f"/admin/accounts/{account_id}/deposits", json={"amount_cents": 100000},
        )
        assert resp.status_code == 403
        assert (await authenticated_client.get("/accounts/me")).json()["balance_cents"] == 0

    async def test_unauthenticated_is_rejected(self, client):
        resp = await client.get("/admin/accounts")
        assert resp.status_code == 401


class TestAdminBlockedFromMemberEndpoints:
    """Admins oversee the ledger but never start or drive operations."""

    async def test_admin_cannot_start_operation(self, admin_client):
        resp = await admin_client.post("/operations", json={"type": "renew"})
        assert resp.status_code == 403

    async def test_admin_cannot_cancel_member_operation(self, admin_client, authenticated_client):
        operation_id = await start_operation(authenticated_client)

        resp = await admin_client.post(f"/operations/{operation_id}/cancel")
        assert resp.status_code == 403

    async def test_admin_sees_every_operation(
        self, admin_client, authenticated_client, second_authenticated_client
    ):
        await start_operation(authenticated_client)
        await start_operation(second_authenticated_client)

        resp = await admin_client.get("/admin/operations")
        assert resp.status_code == 200
        assert len(resp.json()) == 2

    async def test_admin_deposit_records_admin_as_creator(
        self, admin_client, authenticated_client
    ):
        account_id = (await authenticated_client.get("/accounts/me")).json()["id"]

        resp = await admin_client.post(
            f"/admin/accounts/{account_id}/deposits",
            json={"amount_cents": 2500, "notes": "Card payment"},
        )

        assert resp.status_code == 201
        assert resp.json()["created_by"] != "system"
        assert (await authenticated_client.get("/accounts/me")).json()["balance_cents"] == 2500


class TestMachineCallers:

    async def test_user_token_cannot_report_progress(self, authenticated_client):
        operation_id = await start_operation(authenticated_client)

        resp = await authenticated_client.post(
            f"/worker/operations/{operation_id}/progress", json={"status": "PROCESSING"},
        )
        assert resp.status_code == 401

    async def test_cron_secret_is_not_a_worker_secret(self, authenticated_client, client, cron_headers):
        operation_id = await start_operation(authenticated_client)

        resp = await client.post(
            f"/worker/operations/{operation_id}/progress",
            json={"status": "PROCESSING"},
            headers=cron_headers,
        )
        assert resp.status_code == 401

    async def test_worker_secret_is_not_a_cron_secret(self, client, worker_headers):
        resp = await client.post("/cron/timeout-operations", headers=worker_headers)
        assert resp.status_code == 401
