"""Durable notification inbox."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.app.routes.auth import get_current_user_dep
from greia_platform.domain.models import User
from greia_platform.domain.schemas import MarkReadRequest, NotificationResponse
from greia_platform.infra.database import get_db
from greia_platform.services.notification_service import NotificationFanout

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("")
async def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    data = await NotificationFanout(db).list_notifications(user.id, page=page, limit=limit)
    data["notifications"] = [NotificationResponse.model_validate(n) for n in data["notifications"]]
    return data


@router.get("/unread-count")
async def unread_count(
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return {"unread": await NotificationFanout(db).unread_count(user.id)}


@router.post("/read")
async def mark_read(
    body: MarkReadRequest,
    user: User = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    updated = await NotificationFanout(db).mark_read(user.id, body.notification_ids or None)
    return {"updated": updated}
