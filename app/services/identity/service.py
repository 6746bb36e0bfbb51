from __future__ import annotations

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import unsign_session
from app.db import models


async def get_identity_for_token(session: AsyncSession, token: str | None) -> models.AuthIdentity | None:
    if not token:
        return None
    user_id = unsign_session(token)
    if not user_id:
        return None
    return await session.get(models.AuthIdentity, user_id)


async def delete_identity(session: AsyncSession, user_id: str) -> None:
    await session.execute(delete(models.AuthIdentity).where(models.AuthIdentity.id == user_id))
