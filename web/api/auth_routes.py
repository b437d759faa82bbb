"""Auth API routes: login, current user, user management."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import select

import config
from auction.models import Tournament, User
from auction.models.base import async_session_factory
from auction.models.user import ROLES
from web.auth import (
    create_access_token,
    get_user_by_username,
    hash_password,
    require_master_user,
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
    tournament_id: Optional[int] = None


class UserResponse(BaseModel):
    username: str
    role: str
    tournament_id: Optional[int] = None


class CreateUserRequest(BaseModel):
    username: str
    password: str
    role: str = "viewer"  # master, auctioneer, viewer
    tournament_id: Optional[int] = None  # required for auctioneers


def _login_response(user: User) -> LoginResponse:
    token = create_access_token(user.username, user.role)
    return LoginResponse(
        access_token=token, username=user.username, role=user.role, tournament_id=user.tournament_id
    )


@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest):
    """Authenticate and return JWT."""
    user = await get_user_by_username(body.username)
    if not user:
        # Bootstrap: if INITIAL_MASTER_PASSWORD is set and matches, create the master account
        if (
            config.INITIAL_MASTER_PASSWORD
            and body.username == config.INITIAL_MASTER_USERNAME
            and body.password == config.INITIAL_MASTER_PASSWORD
        ):
            async with async_session_factory() as session:
                user = User(
                    username=config.INITIAL_MASTER_USERNAME,
                    password_hash=hash_password(config.INITIAL_MASTER_PASSWORD),
                    role="master",
                )
                session.add(user)
                await session.commit()
                await session.refresh(user)
                return _login_response(user)
        raise HTTPException(status_code=401, detail="Invalid username or password")
    if not verify_password(body.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return _login_response(user)


@router.get("/me", response_model=UserResponse)
async def get_me(user: User = Depends(require_user)):
    """Get current authenticated user."""
    return UserResponse(username=user.username, role=user.role, tournament_id=user.tournament_id)


@router.get("/users", response_model=list[UserResponse])
async def list_users(master: User = Depends(require_master_user)):
    """List all users (master only)."""
    async with async_session_factory() as session:
        result = await session.execute(select(User).order_by(User.username))
        users = result.scalars().all()
        return [UserResponse(username=u.username, role=u.role, tournament_id=u.tournament_id) for u in users]


@router.post("/users", response_model=UserResponse)
async def create_user(body: CreateUserRequest, master: User = Depends(require_master_user)):
    """Create a new user (master only). Auctioneers must be bound to an existing tournament."""
    if body.role not in ROLES:
        raise HTTPException(400, "Invalid role")
    if body.role == "auctioneer" and body.tournament_id is None:
        raise HTTPException(400, "Auctioneers must be assigned a tournament")
    async with async_session_factory() as session:
        existing = await session.execute(select(User).where(User.username == body.username))
        if existing.scalar_one_or_none():
            raise HTTPException(400, "Username already exists")
        if body.tournament_id is not None and not await session.get(Tournament, body.tournament_id):
            raise HTTPException(404, "Tournament not found")
        user = User(
            username=body.username,
            password_hash=hash_password(body.password),
            role=body.role,
            tournament_id=body.tournament_id if body.role == "auctioneer" else None,
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return UserResponse(username=user.username, role=user.role, tournament_id=user.tournament_id)


@router.delete("/users/{username}")
async def delete_user(username: str, master: User = Depends(require_master_user)):
    """Delete a user (master only). Cannot delete self."""
    if username == master.username:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Cannot delete your own account")
    async with async_session_factory() as session:
        result = await session.execute(select(User).where(User.username == username))
        user = result.scalar_one_or_none()
        if not user:
            raise HTTPException(404, "User not found")
        await session.delete(user)
        await session.commit()
        return {"ok": True}
