"""
Authentication dependency

Sign-in happens at the upstream gateway, which forwards the authenticated
user's id in the X-User-Id header. This module only resolves that id to an
active user.
"""
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.database import get_db
from backend.models.user import User, UserStatus


async def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Get the active user the request was made for"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
    )
    if not x_user_id or not x_user_id.isdigit():
        raise credentials_exception

    user = await db.get(User, int(x_user_id))
    if user is None or UserStatus(user.status) != UserStatus.ACTIVE:
        raise credentials_exception
    return user
