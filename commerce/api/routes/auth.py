"""
api/routes/auth.py
------------------
Authentication endpoints.

POST /register  — Self-registration. Admins claim a tenant code; their
                  tenant database is provisioned asynchronously.
POST /login     — Exchange credentials for a JWT access token
                  (OAuth2 password form; "username" carries the email).
GET  /me        — Return the authenticated user's profile, including
                  whether the tenant database is ready.
"""

from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.api.errors import BUSINESS_ERRORS, to_http_exception
from commerce.core.config import settings
from commerce.core.security import create_access_token
from commerce.db.session import get_db
from commerce.dependencies import get_current_user
from commerce.models.user import User
from commerce.queue.broker import JobQueue, get_job_queue
from commerce.schemas.user import (
    TokenResponse,
    UserRead,
    UserRegister,
)
from commerce.services.user_service import UserService

router = APIRouter(tags=["Authentication"])


@router.post(
    "/register",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user account",
)
async def register(
    body: UserRegister,
    db: Annotated[AsyncSession, Depends(get_db)],
    queue: Annotated[JobQueue, Depends(get_job_queue)],
) -> UserRead:
    """
    Create a new account.
    role=admin requires tenant_code; role=customer must not send one.
    """
    try:
        user = await UserService.register(db, body, queue)
        return UserRead.model_validate(user)
    except BUSINESS_ERRORS as exc:
        raise to_http_exception(exc)


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Login and receive a JWT access token",
)
async def login(
    # OAuth2PasswordRequestForm sends username + password as form data.
    # The "username" field contains the email address.
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> TokenResponse:
    """
    Authenticate with email + password and receive a signed JWT.

    Via curl:
        -d "username=you@email.com&password=yourpassword"
    """
    user = await UserService.authenticate(db, form_data.username, form_data.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    expires = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    token = create_access_token(
        subject=user.id,
        role=user.role,
        tenant_code=user.tenant_code,
        expires_delta=expires,
    )

    return TokenResponse(
        access_token=token,
        token_type="bearer",
        expires_in=int(expires.total_seconds()),
        user=UserRead.model_validate(user),
    )


@router.get(
    "/me",
    response_model=UserRead,
    summary="Get the currently authenticated user",
)
async def get_me(
    current_user: Annotated[User, Depends(get_current_user)],
) -> UserRead:
    return UserRead.model_validate(current_user)
