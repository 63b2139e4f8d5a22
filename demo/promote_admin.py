#!/usr/bin/env python3
"""
Promote an existing user to ADMIN. Run on the server.

There is no promotion endpoint: admin provisioning is an operator action.

Usage:
    python -m demo.promote_admin admin@opsdemo.com
"""

import argparse
import asyncio

from sqlalchemy import update

from app.database import AsyncSessionLocal, engine
from app.models.user import User, UserType


async def promote(email: str) -> int:
    async with AsyncSessionLocal() as session:
        result = await session.execute(
            update(User)
            .where(User.email == email)
            .values(user_type=UserType.ADMIN)
        )
        await session.commit()
    await engine.dispose()
    return result.rowcount


def main() -> None:
    parser = argparse.ArgumentParser(description="Promote a user to ADMIN")
    parser.add_argument("email")
    args = parser.parse_args()
    rows = asyncio.run(promote(args.email))
    print(f"Rows updated: {rows}")


if __name__ == "__main__":
    main()
