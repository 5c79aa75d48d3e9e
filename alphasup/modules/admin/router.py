from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select as sa_select
from sqlalchemy.ext.asyncio import AsyncSession

from alphasup.auth.deps import require_admin
from alphasup.db.session import get_session
from alphasup.models.enums import PaymentStatus
from alphasup.models.models import Payment
from alphasup.schemas.payment import PaymentResponse
from alphasup.services.audit import recent_audit_logs

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/audit-logs")
async def list_audit_logs(
    action: Optional[str] = None,
    object_id: Optional[str] = Query(None, alias="objectId"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
):
    logs = await recent_audit_logs(db, action=action, object_id=object_id, limit=limit)
    return [
        dict(
            id=a.id,
            actorId=a.actor_id,
            action=a.action,
            objectType=a.object_type,
            objectId=a.object_id,
            detail=a.detail,
            success=a.success,
            errorMessage=a.error_message,
            createdAt=a.created_at.isoformat() if a.created_at else None,
        )
        for a in logs
    ]


@router.get("/payments", response_model=List[PaymentResponse])
async def list_payments(
    status: Optional[PaymentStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
):
    stmt = sa_select(Payment).order_by(Payment.created_at.desc()).limit(limit)
    if status is not None:
        stmt = stmt.where(Payment.status == status.value)
    res = await db.execute(stmt)
    return [PaymentResponse.from_payment(p) for p in res.scalars().all()]
