"""
Auth router — the only unauthenticated endpoints besides /health.

  POST /auth/signup  — Register a member and open their account
  POST /auth/login   — Exchange email and password for a token

Send the returned token as `Authorization: Bearer <token>`.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.auth import LoginRequest, SessionResponse, SignupRequest
from app.services import auth_service
from app.services.auth_service import AuthSession

router = APIRouter()


def _session_response(session: AuthSession) -> SessionResponse:
    return SessionResponse(
        user_id=session.user.id,
        account_id=session.account.id if session.account else None,
        email=session.user.email,
        user_type=session.user.user_type.value,
        token=session.token,
        expires_in=session.expires_in,
    )


@router.post(
    "/signup",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new member",
)
async def signup(
    request: SignupRequest,
    db: AsyncSession = Depends(get_db),
):
    """The account starts at a zero balance; 409 if the email is taken."""
    session = await auth_service.signup(
        db=db,
        email=request.email,
        password=request.password,
        currency=request.currency,
    )
    return _session_response(session)


@router.post(
    "/login",
    response_model=SessionResponse,
    summary="Log in",
)
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_db),
):
    session = await auth_service.login(db=db, email=request.email, password=request.password)
    return _session_response(session)
