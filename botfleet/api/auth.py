"""Authentication endpoints"""

from fastapi import APIRouter, Depends, HTTPException, status, Request, Response
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from botfleet.api.deps import client_ip, get_governor, rate_limit_anonymous
from botfleet.config import settings
from botfleet.db import get_db
from botfleet.db.models import User
from botfleet.plans import get_plan
from botfleet.schemas import UserCreate, UserLogin, UserResponse, Token
from botfleet.logging_config import set_request_context
from botfleet.services import (
    authenticate_user, create_user, get_user_by_email,
    get_user_by_id, create_access_token, decode_access_token,
    count_user_bots,
)
from botfleet.services.governor import Governor

router = APIRouter(prefix="/auth", tags=["Authentication"])
security = HTTPBearer(auto_error=False)  # Don't auto-reject; the auth cookie is checked too

COOKIE_MAX_AGE = 60 * 60 * 24 * 7  # 1 week


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Dependency to get the current authenticated user.
    Checks Bearer token first, then falls back to the auth cookie."""
    user_id = None

    # 1. Try Bearer token
    if credentials and credentials.credentials:
        user_id = decode_access_token(credentials.credentials)

    # 2. Fall back to cookie
    if not user_id:
        cookie_token = request.cookies.get(settings.auth_cookie_name)
        if cookie_token:
            user_id = decode_access_token(cookie_token)

    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await get_user_by_id(db, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled",
        )

    set_request_context(user_id=user.id)
    return user


async def get_rate_limited_user(
    user: User = Depends(get_current_user),
    governor: Governor = Depends(get_governor),
) -> User:
    """Authenticated user, counted against their plan's request ceiling."""
    governor.check_api(user.id, user.plan)
    return user


async def _user_response(db: AsyncSession, user: User) -> UserResponse:
    response = UserResponse.model_validate(user)
    response.max_bots = get_plan(user.plan).max_bots
    response.bot_count = await count_user_bots(db, user.id)
    return response


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(
    user_data: UserCreate,
    db: AsyncSession = Depends(get_db),
    _ip: str = Depends(rate_limit_anonymous),
):
    """Register a new user on the free plan"""
    existing = await get_user_by_email(db, user_data.email)
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    user = await create_user(
        db,
        email=user_data.email,
        password=user_data.password,
        name=user_data.name
    )
    return await _user_response(db, user)


@router.post("/login", response_model=Token)
async def login(
    credentials: UserLogin,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    governor: Governor = Depends(get_governor),
):
    """Login and get access token. Also sets the auth cookie."""
    governor.check_login(client_ip(request))

    user = await authenticate_user(db, credentials.email, credentials.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled",
        )

    token = create_access_token(user.id)
    response.set_cookie(
        key=settings.auth_cookie_name,
        value=token,
        max_age=COOKIE_MAX_AGE,
        httponly=True,
        secure=not settings.debug,
        samesite="lax",
        path="/",
    )
    return Token(access_token=token)


@router.get("/me", response_model=UserResponse)
async def get_me(
    current_user: User = Depends(get_rate_limited_user),
    db: AsyncSession = Depends(get_db),
):
    """Get current user info with plan limits"""
    return await _user_response(db, current_user)


@router.post("/logout")
async def logout(response: Response):
    """Clear the auth cookie"""
    response.delete_cookie(settings.auth_cookie_name, path="/")
    return {"message": "Logged out"}
