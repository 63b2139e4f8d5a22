#!/usr/bin/env python3
"""
Demo seed script — walks a few operations through their lifecycle.

!! NOT FOR PRODUCTION !!
Creates users with known passwords, funds them, and drives operations with
the worker and cron secrets, leaving the database in a state that shows
every interesting case: a completed purchase, a member cancellation, an
operation waiting on a package choice and one left without heartbeats for
the cleanup sweep to expire.

Usage:
    # With the API server running on localhost:8000 and CRON_SECRET /
    # WORKER_SECRET exported in this shell:
    python -m demo.seed

    # Custom server URL:
    python -m demo.seed --base-url http://localhost:9000

Login credentials after seeding:
    admin@opsdemo.com       AdminDemo123!   ADMIN
    alice@example.com       AliceDemo123!   MEMBER
    bob@example.com         BobDemo123!     MEMBER
"""

import argparse
import asyncio
import os
import sys

import httpx

from demo.promote_admin import promote

BASE_URL = "http://localhost:8000"

ADMIN = {"email": "admin@opsdemo.com", "password": "AdminDemo123!"}
MEMBERS = [
    {"email": "alice@example.com", "password": "AliceDemo123!", "deposit": 150_00},
    {"email": "bob@example.com", "password": "BobDemo123!", "deposit": 40_00},
]
PACKAGES = [
    {"id": "monthly", "name": "Monthly", "price_cents": 25_00},
    {"id": "yearly", "name": "Yearly", "price_cents": 199_00},
]


def log(msg: str) -> None:
    print(f"  {msg}")


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


async def signup(client: httpx.AsyncClient, user: dict) -> dict:
    resp = await client.post(f"{BASE_URL}/auth/signup", json={
        "email": user["email"],
        "password": user["password"],
    })
    resp.raise_for_status()
    return resp.json()


async def login(client: httpx.AsyncClient, user: dict) -> str:
    resp = await client.post(f"{BASE_URL}/auth/login", json={
        "email": user["email"],
        "password": user["password"],
    })
    resp.raise_for_status()
    return resp.json()["token"]


async def progress(client: httpx.AsyncClient, operation_id: str, body: dict) -> dict:
    resp = await client.post(
        f"{BASE_URL}/worker/operations/{operation_id}/progress",
        json=body,
        headers=bearer(os.environ["WORKER_SECRET"]),
    )
    resp.raise_for_status()
    return resp.json()


async def start_operation(client: httpx.AsyncClient, token: str, **body) -> str:
    resp = await client.post(f"{BASE_URL}/operations", json=body, headers=bearer(token))
    resp.raise_for_status()
    return resp.json()["id"]


async def seed(base_url: str) -> None:
    global BASE_URL
    BASE_URL = base_url

    for name in ("WORKER_SECRET", "CRON_SECRET"):
        if not os.environ.get(name):
            print(f"  ERROR: export {name} (same value as the server's)")
            sys.exit(1)

    print("\n========================================")
    print("  DEMO SEED — NOT FOR PRODUCTION")
    print("========================================\n")

    async with httpx.AsyncClient(timeout=30.0) as client:
        try:
            (await client.get(f"{BASE_URL}/health")).raise_for_status()
        except (httpx.ConnectError, httpx.HTTPStatusError):
            print(f"  ERROR: Cannot connect to {BASE_URL}")
            print("  Start the server first: uvicorn app.main:app --reload\n")
            sys.exit(1)

        print("Creating admin user...")
        await signup(client, ADMIN)
        await promote(ADMIN["email"])
        admin_token = await login(client, ADMIN)
        log(f"Admin: {ADMIN['email']} / {ADMIN['password']}")

        tokens: dict[str, str] = {}
        for member in MEMBERS:
            print(f"\nCreating {member['email']}...")
            created = await signup(client, member)
            tokens[member["email"]] = created["token"]
            resp = await client.post(
                f"{BASE_URL}/admin/accounts/{created['account_id']}/deposits",
                json={"amount_cents": member["deposit"], "notes": "Demo top-up"},
                headers=bearer(admin_token),
            )
            resp.raise_for_status()
            log(f"Deposited ${member['deposit'] / 100:,.2f}")

        alice = tokens["alice@example.com"]
        bob = tokens["bob@example.com"]

        print("\nAlice: package purchase, completed")
        op = await start_operation(client, alice, type="renew", provider_account_id="demo-provider-1")
        await progress(client, op, {"status": "AWAITING_PACKAGE", "packages": PACKAGES})
        resp = await client.post(
            f"{BASE_URL}/operations/{op}/select-package",
            json={"package_id": "monthly"},
            headers=bearer(alice),
        )
        resp.raise_for_status()
        await progress(client, op, {"status": "COMPLETED", "message": "Renewed for one month"})
        log(f"Operation {op} COMPLETED")

        print("\nAlice: prepaid operation, cancelled while waiting for a captcha")
        op = await start_operation(client, alice, type="activate", amount_cents=10_00)
        await progress(client, op, {"status": "PROCESSING"})
        await progress(client, op, {"status": "AWAITING_CAPTCHA", "captcha_image": "data:image/png;base64,"})
        resp = await client.post(f"{BASE_URL}/operations/{op}/cancel", headers=bearer(alice))
        resp.raise_for_status()
        log(f"Operation {op} CANCELLED, refunded {resp.json()['refunded_cents']} cents")

        print("\nBob: waiting on a package choice")
        op = await start_operation(client, bob, type="renew", provider_account_id="demo-provider-2")
        await progress(client, op, {"status": "AWAITING_PACKAGE", "packages": PACKAGES})
        log(f"Operation {op} AWAITING_PACKAGE; stop sending heartbeats and the sweep expires it")

        resp = await client.post(
            f"{BASE_URL}/cron/cleanup-stuck-operations",
            headers=bearer(os.environ["CRON_SECRET"]),
        )
        resp.raise_for_status()
        log(f"Sweep: {resp.json()}")

    print("\nDone.\n")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo data")
    parser.add_argument("--base-url", default=BASE_URL)
    args = parser.parse_args()
    asyncio.run(seed(args.base_url))


if __name__ == "__main__":
    main()
