"""
Authentication service — member registration and token issuance.

Both entry points end in an AuthSession: the user, the account billed
for their operations (None for admins, who never own one) and a signed
access token. Routers turn that into a SessionResponse.

Emails are compared case-insensitively; they are stored lower-cased.
Every login failure raises the same InvalidCredentialsError so the
response never reveals whether an address is registered.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.clock import utcnow
from app.config import settings
from app.exceptions import DuplicateEmailError, InvalidCredentialsError
from app.models.account import Account
from app.models.user import User, UserType
from app.security import hash_password, verify_password, create_access_token

logger = logging.getLogger(__name__)


@dataclass
class AuthSession:
    user: User
    account: Account | None
    token: str
    expires_in: int


def _issue(user: User, account: Account | None) -> AuthSession:
    return AuthSession(
        user=user,
        account=account,
        token=create_access_token(data={"sub": str(user.id)}),
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


async def signup(
    db: AsyncSession,
    email: str,
    password: str,
    currency: str = "USD",
) -> AuthSession:
    """
    Register a MEMBER and open the account their operations are billed to.

    The account starts at zero with an empty ledger; money only arrives
    through deposits. User and account are written in the caller's unit
    of work, so a failure persists neither.

    Raises:
        DuplicateEmailError: If the email is already registered.
    """
    email = email.lower()
    existing = await db.execute(select(User.id).where(User.email == email))
    if existing.scalar_one_or_none() is not None:
        raise DuplicateEmailError(email)

    user = User(
        email=email,
        hashed_password=hash_password(password),
        user_type=UserType.MEMBER,
    )
    db.add(user)
    await db.flush()

    account = Account(user_id=user.id, currency=currency.upper())
    db.add(account)
    await db.flush()

    logger.info("Registered member %s with account %s", user.id, account.id)
    return _issue(user, account)


async def login(db: AsyncSession, email: str, password: str) -> AuthSession:
    """
    Raises:
        InvalidCredentialsError: Unknown email, wrong password or a
            deactivated user; all three look identical to the caller.
    """
    result = await db.execute(select(User).where(User.email == email.lower()))
    user = result.scalar_one_or_none()

    if user is None or not verify_password(password, user.hashed_password) or not user.is_active:
        raise InvalidCredentialsError()

    user.last_login_at = utcnow()
    result = await db.execute(select(Account).where(Account.user_id == user.id))
    return _issue(user, result.scalar_one_or_none())
