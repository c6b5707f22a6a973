"""User lookup helpers."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.enums import UserRole
from models.user import User


async def ensure_user(
    user_id: str,
    db: AsyncSession,
    *,
    email: Optional[str] = None,
    role: UserRole = UserRole.USER,
) -> User:
    """Return the user row, creating a placeholder for first-time callers."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, email=email or f"{user_id}@local.invalid", role=role)
    db.add(user)
    await db.commit()
    return user
