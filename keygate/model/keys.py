# model/keys.py
"""
Key store.

Redemption never reads a key's counters and writes them back. The quota
check and the increment happen in one conditional UPDATE, so two
concurrent redemptions of the same key cannot both pass: the loser sees
zero affected rows and gets None back.
"""

from __future__ import annotations
from typing import Dict, List, Optional

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import generate_key_value, now_ts
from .db import Key, KEY_SINGLE_USE


SQL_MARK_USED = text("""
    UPDATE keys
    SET is_used = TRUE,
        used_quantity = used_quantity + :n,
        used_at = :now,
        used_by = :used_by
    WHERE id = :id
      AND is_used = FALSE
      AND (max_quantity IS NULL OR used_quantity + :n <= max_quantity)
    RETURNING id
""")

SQL_INCREMENT_USED_QUANTITY = text("""
    UPDATE keys
    SET used_quantity = used_quantity + :n,
        is_used = CASE
            WHEN max_quantity IS NOT NULL
                 AND used_quantity + :n >= max_quantity THEN TRUE
            ELSE FALSE
        END,
        used_at = :now,
        used_by = :used_by
    WHERE id = :id
      AND is_used = FALSE
      AND (max_quantity IS NULL OR used_quantity + :n <= max_quantity)
    RETURNING id
""")


class KeyStore:
    """Callers own the transaction; nothing here commits."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def list_all(self) -> List[Key]:
        result = await self.db.execute(
            select(Key).order_by(Key.created_at.desc(), Key.id.desc())
        )
        return list(result.scalars().all())

    async def get(self, key_id: int, fresh: bool = False) -> Optional[Key]:
        return await self.db.get(Key, key_id, populate_existing=fresh)

    async def get_by_value(self, value: str) -> Optional[Key]:
        result = await self.db.execute(select(Key).where(Key.value == value))
        return result.scalars().first()

    async def create(
        self, *, created_by: str, type: str = KEY_SINGLE_USE,
        name: Optional[str] = None, max_quantity: Optional[int] = None,
        service_id: Optional[int] = None, value: Optional[str] = None,
    ) -> Key:
        key = Key(
            value=value or generate_key_value(),
            name=name,
            type=type,
            max_quantity=max_quantity,
            used_quantity=0,
            service_id=service_id,
            is_used=False,
            created_at=now_ts(),
            created_by=created_by,
        )
        self.db.add(key)
        await self.db.flush()
        return key

    async def delete(self, key_id: int) -> bool:
        key = await self.db.get(Key, key_id)
        if key is None:
            return False
        await self.db.delete(key)
        await self.db.flush()
        return True

    async def _conditional_update(self, stmt, key_id: int, n: int,
                                  used_by: str) -> Optional[Key]:
        row = (await self.db.execute(stmt, {
            "id": key_id,
            "n": n,
            "now": now_ts(),
            "used_by": used_by,
        })).first()
        if row is None:
            return None
        return await self.db.get(Key, key_id, populate_existing=True)

    async def mark_used(self, key_id: int, used_by: str,
                        quantity: int = 0) -> Optional[Key]:
        """
        Flip the key to used, recording `quantity` against it. Returns
        None when the key is already used or the quantity would overshoot
        max_quantity.
        """
        return await self._conditional_update(
            SQL_MARK_USED, key_id, quantity, used_by
        )

    async def increment_used_quantity(self, key_id: int, delta: int,
                                      used_by: str) -> Optional[Key]:
        """
        Add `delta` to used_quantity; the key becomes used once the quota
        is reached. Returns None when nothing was updated.
        """
        return await self._conditional_update(
            SQL_INCREMENT_USED_QUANTITY, key_id, delta, used_by
        )

    async def consume(self, key: Key, quantity: int,
                      used_by: str) -> Optional[Key]:
        if key.type == KEY_SINGLE_USE:
            return await self.mark_used(key.id, used_by, quantity)
        return await self.increment_used_quantity(key.id, quantity, used_by)

    async def stats(self) -> Dict[str, int]:
        total = (await self.db.execute(
            select(func.count()).select_from(Key)
        )).scalar_one()
        used = (await self.db.execute(
            select(func.count()).select_from(Key).where(Key.is_used.is_(True))
        )).scalar_one()
        return {"total": total, "used": used, "unused": total - used}
