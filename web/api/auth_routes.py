"""Auth API routes: login, current user, user management."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select

import config
from tracker.models import User, async_session_factory
from tracker.models.user import ROLES
from web.auth import (
    create_access_token,
    get_user_by_username,
    hash_password,
    require_admin_user,
    require_user,
    verify_password,
)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    username: str
    role: str


class UserResponse(BaseModel):
    username: str
    role: str


class CreateUserRequest(BaseModel):
    username: str
    password: str
    role: str = "viewer"


async def _bootstrap_admin() -> User:
    async with async_session_factory() as session:
        user = User(
            username=config.INITIAL_ADMIN_USERNAME,
            password_hash=hash_password(config.INITIAL_ADMIN_PASSWORD),
            role="admin",
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest):
    """Authenticate and return JWT. The first login with INITIAL_ADMIN_PASSWORD creates the admin."""
    user = await get_user_by_username(body.username)
    if not user:
        if (
            config.INITIAL_ADMIN_PASSWORD
            and body.username == config.INITIAL_ADMIN_USERNAME
            and body.password == config.INITIAL_ADMIN_PASSWORD
        ):
            user = await _bootstrap_admin()
        else:
            raise HTTPException(status_code=401, detail="Invalid username or password")
    elif not verify_password(body.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid username or password")
    token = create_access_token(user.username, user.role)
    return LoginResponse(access_token=token, username=user.username, role=user.role)


@router.get("/me", response_model=UserResponse)
async def get_me(user: User = Depends(require_user)):
    return UserResponse(username=user.username, role=user.role)


@router.get("/users", response_model=list[UserResponse])
async def list_users(admin: User = Depends(require_admin_user)):
    """List all users (admin only)."""
    async with async_session_factory() as session:
        result = await session.execute(select(User).order_by(User.username))
        return [UserResponse(username=u.username, role=u.role) for u in result.scalars().all()]


@router.post("/users", response_model=UserResponse)
async def create_user(body: CreateUserRequest, admin: User = Depends(require_admin_user)):
    """Create a viewer or admin account (admin only)."""
    if body.role not in ROLES:
        raise HTTPException(400, "Invalid role")
    async with async_session_factory() as session:
        existing = await session.execute(select(User).where(User.username == body.username))
        if existing.scalar_one_or_none():
            raise HTTPException(400, "Username already exists")
        user = User(username=body.username, password_hash=hash_password(body.password), role=body.role)
        session.add(user)
        await session.commit()
        return UserResponse(username=user.username, role=user.role)
