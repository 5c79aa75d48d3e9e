from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alphasup.models.models import AuditLog


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


async def log_audit(
    db: AsyncSession,
    actor_id: str,
    action: str,
    object_type: Optional[str] = None,
    object_id: Optional[str] = None,
    detail: Optional[dict] = None,
    success: bool = True,
    error_message: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> AuditLog:
    """Stage an audit row on the caller's session.

    Nothing is flushed or committed here; the row lands with the state change
    it describes, or not at all.
    """
    audit = AuditLog(
        actor_id=actor_id,
        action=action,
        object_type=object_type,
        object_id=object_id,
        detail=_json_safe(detail) if detail is not None else None,
        success=success,
        error_message=error_message[:1024] if error_message else None,
        ip_address=ip_address,
    )
    db.add(audit)
    return audit


async def recent_audit_logs(
    db: AsyncSession, action: Optional[str] = None, object_id: Optional[str] = None, limit: int = 100
) -> List[AuditLog]:
    stmt = select(AuditLog).order_by(AuditLog.id.desc()).limit(limit)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if object_id:
        stmt = stmt.where(AuditLog.object_id == object_id)
    res = await db.execute(stmt)
    return list(res.scalars().all())
