from __future__ import annotations
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .db import Log

KEY_CREATED = "key_created"
KEY_DELETED = "key_deleted"
SERVICE_CREATED = "service_created"
SERVICE_UPDATED = "service_updated"
SERVICE_DELETED = "service_deleted"
SERVICES_IMPORTED = "services_imported"
ORDER_CREATED = "order_created"
ORDER_COMPLETED = "order_completed"
ORDER_FAILED = "order_failed"
ORDER_STATUS_UPDATED = "order_status_updated"
ADMIN_LOGIN = "admin_login"
ADMIN_CREATED = "admin_created"
ADMIN_STATUS_CHANGED = "admin_status_changed"


class LogSink:
    """Append-only audit trail. Rows are written, never updated."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def write(self, type: str, message: str, *, data: Any = None,
                    user_id: Optional[str] = None,
                    key_id: Optional[int] = None,
                    order_id: Optional[int] = None) -> Log:
        entry = Log(
            type=type,
            message=message,
            data=data,
            user_id=user_id,
            key_id=key_id,
            order_id=order_id,
            created_at=now_ts(),
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def list(self, type: Optional[str] = None,
                   order_id: Optional[int] = None,
                   limit: int = 200) -> List[Log]:
        stmt = select(Log)
        if type:
            stmt = stmt.where(Log.type == type)
        if order_id is not None:
            stmt = stmt.where(Log.order_id == order_id)
        stmt = stmt.order_by(Log.created_at.desc(), Log.id.desc())
        result = await self.db.execute(stmt.limit(limit))
        return list(result.scalars().all())
