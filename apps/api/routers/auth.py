"""
Account router: signup with free-tier allocation, session profile, logout.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, raise_credit_http_error
from routers.rate_limit import rate_limit
from services.credit_errors import CreditError
from services.credit_service import load_user
from services.session_token import create_session_token
from services.subscription import register_user

router = APIRouter()


class SignupRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    name: Optional[str] = Field(default=None, max_length=128)


class SessionResponse(BaseModel):
    user_id: str
    email: str
    plan: str
    credits: int
    session_token: str
    session_expires_at: int


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    plan: str
    subscription_status: str
    credits: int


@router.post("/signup", response_model=SessionResponse)
async def signup(
    request: SignupRequest,
    _rate_limit: None = Depends(rate_limit("auth_signup", limit=20, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
):
    """Create a new account and issue its first session token. Existing emails get 409."""
    try:
        user = await register_user(request.email, db, name=request.name)
    except CreditError as exc:
        raise_credit_http_error(exc)
    session = create_session_token(user.id, user.email)
    return SessionResponse(
        user_id=user.id,
        email=user.email,
        plan=user.plan,
        credits=int(user.credits or 0),
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        user = await load_user(auth.user_id, db)
    except CreditError as exc:
        raise_credit_http_error(exc)

    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        plan=user.plan,
        subscription_status=user.subscription_status,
        credits=int(user.credits or 0),
    )


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
