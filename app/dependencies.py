"""
FastAPI dependencies for authentication and authorization.

Dependencies form a chain that enforces both authentication and
role-based access control:

  get_current_user (JWT -> User)
      ├── get_current_account (User -> Account)   [MEMBER role]
      └── require_admin (User -> User)             [ADMIN role]

  verify_cron_secret    (Bearer CRON_SECRET)      [scheduler]
  verify_worker_secret  (Bearer WORKER_SECRET)    [Automation Worker]

Role-based access control:
  - MEMBER: Can only act on their own account and operations. Member
    endpoints use get_current_account, which scopes every query to the
    authenticated user's account.
  - ADMIN: Oversight of every account, plus the ledger effects of
    payments and payouts and the correction engine. Admins cannot start
    or drive operations.

Machine callers:
  The sweeps and worker callbacks carry a shared secret. When the secret
  is not configured the endpoint refuses to run at all (500) rather than
  running unauthenticated.
"""

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.exceptions import ConfigurationError
from app.models.account import Account
from app.models.user import User, UserType
from app.security import bearer_credential, secret_matches, user_id_from_token
from app.services import account_service


# Where Swagger UI's "Authorize" button sends credentials
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the bearer token to an active User.

    Raises:
        HTTPException 401: If the token is invalid or the user is unknown
            or deactivated.
    """
    try:
        user_id = user_id_from_token(token)
    except (JWTError, ValueError):
        raise _credentials_exception()

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise _credentials_exception()
    return user


async def get_current_account(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """
    Get the billed Account of the authenticated member.

    Admin users are blocked here: they have their own /admin/* endpoints
    and must not start, drive, or cancel operations.

    Raises:
        HTTPException 403: If the user is an admin.
        AccountNotFoundError: If the member has no account.
    """
    if user.user_type == UserType.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin accounts cannot access member endpoints. "
                   "Use /admin/* endpoints instead.",
        )
    return await account_service.get_account_for_user(db, user.id)


async def require_admin(
    user: User = Depends(get_current_user),
) -> User:
    """
    Require the authenticated user to have the ADMIN role.

    Raises:
        HTTPException 403: If the user is not an admin.
    """
    if user.user_type != UserType.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


# ---------------------------------------------------------------------------
# Shared-secret guards
# ---------------------------------------------------------------------------

def _check_bearer_secret(
    authorization: str | None,
    expected: str | None,
    setting_name: str,
) -> None:
    # Configuration is checked before the header
    if not expected:
        raise ConfigurationError(setting_name)

    if not secret_matches(bearer_credential(authorization), expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def verify_cron_secret(
    authorization: str | None = Header(default=None),
) -> None:
    _check_bearer_secret(authorization, settings.CRON_SECRET, "CRON_SECRET")


async def verify_worker_secret(
    authorization: str | None = Header(default=None),
) -> None:
    _check_bearer_secret(authorization, settings.WORKER_SECRET, "WORKER_SECRET")
