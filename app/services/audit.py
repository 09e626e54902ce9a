from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.models import AuditLog


async def log_audit(
    db: AsyncSession,
    actor_id: Optional[int],
    action: str,
    object_type: str = None,
    object_id: str = None,
    detail: dict = None,
    ip_address: str = None,
) -> AuditLog:
    entry = AuditLog(
        actor_id=actor_id,
        action=action,
        object_type=object_type,
        object_id=object_id,
        detail=detail,
        ip_address=ip_address,
    )
    db.add(entry)
    # flushed with the caller's transaction, never committed here
    return entry


async def audit_trail(db: AsyncSession, object_type: str, object_id: str):
    res = await db.execute(
        select(AuditLog)
        .where(AuditLog.object_type == object_type)
        .where(AuditLog.object_id == object_id)
        .order_by(AuditLog.id)
    )
    return list(res.scalars().all())
