from __future__ import annotations
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .db import AdminUser


class AdminStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def list_all(self) -> List[AdminUser]:
        result = await self.db.execute(
            select(AdminUser).order_by(AdminUser.created_at, AdminUser.id)
        )
        return list(result.scalars().all())

    async def get_by_username(self, username: str) -> Optional[AdminUser]:
        result = await self.db.execute(
            select(AdminUser).where(AdminUser.username == username)
        )
        return result.scalars().first()

    async def create(self, *, username: str, password_hash: str,
                     email: Optional[str] = None) -> AdminUser:
        admin = AdminUser(
            username=username,
            password_hash=password_hash,
            email=email,
            is_active=True,
            created_at=now_ts(),
        )
        self.db.add(admin)
        await self.db.flush()
        return admin

    async def set_active(self, admin_id: int,
                         is_active: bool) -> Optional[AdminUser]:
        admin = await self.db.get(AdminUser, admin_id)
        if admin is None:
            return None
        admin.is_active = is_active
        await self.db.flush()
        return admin

    async def touch_login(self, admin: AdminUser) -> None:
        admin.last_login_at = now_ts()
        await self.db.flush()
