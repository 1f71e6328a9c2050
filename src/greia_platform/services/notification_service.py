"""Notification fanout: durable Notification rows plus realtime pushes.

Callers inside a larger transaction ``stage`` events, commit, then
``dispatch``. The durable row commits with the domain change; the realtime
push is best-effort and runs only after the commit.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.domain.models import Notification
from greia_platform.domain.schemas import NotificationEvent
from greia_platform.infra.realtime import RealtimeBus

logger = logging.getLogger(__name__)


class NotificationFanout:
    """Translates domain events into Notification rows and bus pushes."""

    def __init__(self, db: AsyncSession, bus: Optional[RealtimeBus] = None):
        self.db = db
        self.bus = bus
        self._pending: list[tuple[NotificationEvent, Notification]] = []

    def stage(self, event: NotificationEvent) -> Notification:
        """Add the durable row to the current transaction and queue the push."""
        row = Notification(
            user_id=event.user_id,
            type=event.type.value,
            title=event.title,
            message=event.message,
            data=event.data,
        )
        self.db.add(row)
        self._pending.append((event, row))
        return row

    def discard(self) -> None:
        """Drop queued pushes after a rollback."""
        self._pending.clear()

    async def dispatch(self) -> int:
        """Push queued events to the realtime bus. Returns the count pushed.

        Bus failures are logged and swallowed; the durable row is already
        committed.
        """
        pending, self._pending = self._pending, []
        if self.bus is None:
            return 0

        pushed = 0
        for event, row in pending:
            payload = {"notification_id": row.id, "title": event.title,
                       "message": event.message, **event.data}
            try:
                await self.bus.publish(event.channel, event.type.value, payload)
                pushed += 1
            except Exception as exc:
                logger.warning(
                    "Realtime push %s to %s failed: %s", event.type.value, event.channel, exc
                )
        return pushed

    async def publish(self, event: NotificationEvent) -> Notification:
        """Stage, commit and push a single event outside a larger transaction."""
        row = self.stage(event)
        await self.db.commit()
        await self.dispatch()
        return row

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def list_notifications(self, user_id: str, page: int = 1, limit: int = 20) -> dict:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)

        total = (await self.db.execute(
            select(func.count()).select_from(Notification).where(Notification.user_id == user_id)
        )).scalar_one()
        result = await self.db.execute(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {
            "notifications": list(result.scalars().all()),
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "pages": (total + limit - 1) // limit,
            },
        }

    async def mark_read(self, user_id: str, notification_ids: Optional[list[str]] = None) -> int:
        """Mark the given (or all) unread notifications of a user read."""
        stmt = (
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .values(read=True, read_at=datetime.now(timezone.utc))
        )
        if notification_ids:
            stmt = stmt.where(Notification.id.in_(notification_ids))
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount

    async def unread_count(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
        )
        return result.scalar_one()
