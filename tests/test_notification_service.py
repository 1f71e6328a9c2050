"""Tests for NotificationFanout: durable rows, post-commit pushes, inbox reads."""

import pytest
from sqlalchemy import func, select

from greia_platform.domain.enums import NotificationType
from greia_platform.domain.models import Notification
from greia_platform.domain.schemas import NotificationEvent
from greia_platform.infra.realtime import ConnectionManager, WebSocketBus
from greia_platform.services.notification_service import NotificationFanout

from conftest import FakeBus, make_user


def _event(user, type_=NotificationType.OFFER_RECEIVED, **data):
    return NotificationEvent(
        user_id=user.id,
        type=type_,
        title="New agent offer",
        message="An agent made an offer.",
        data=data or {"submission_id": "sub-1"},
    )


async def _rows(db, user):
    return (await db.execute(
        select(func.count()).select_from(Notification).where(Notification.user_id == user.id)
    )).scalar_one()


class TestDispatch:
    async def test_publish_writes_row_and_pushes_to_private_channel(self, db_session, fake_bus):
        user = await make_user(db_session)

        row = await NotificationFanout(db_session, fake_bus).publish(_event(user))

        assert await _rows(db_session, user) == 1
        channel, event, payload = fake_bus.published[0]
        assert channel == f"private-user-{user.id}"
        assert event == "offer-received"
        assert payload["notification_id"] == row.id
        assert payload["submission_id"] == "sub-1"

    async def test_bus_failure_is_swallowed(self, db_session):
        user = await make_user(db_session)
        fanout = NotificationFanout(db_session, FakeBus(fail=True))

        fanout.stage(_event(user))
        await db_session.commit()
        pushed = await fanout.dispatch()

        assert pushed == 0
        assert await _rows(db_session, user) == 1

    async def test_discard_drops_pushes_after_rollback(self, db_session, fake_bus):
        user = await make_user(db_session)
        user_id = user.id
        fanout = NotificationFanout(db_session, fake_bus)

        fanout.stage(_event(user))
        await db_session.rollback()
        fanout.discard()

        assert await fanout.dispatch() == 0
        assert fake_bus.published == []
        count = (await db_session.execute(
            select(func.count()).select_from(Notification).where(Notification.user_id == user_id)
        )).scalar_one()
        assert count == 0

    async def test_no_bus_still_persists(self, db_session):
        user = await make_user(db_session)
        fanout = NotificationFanout(db_session)

        await fanout.publish(_event(user))

        assert await _rows(db_session, user) == 1


class TestInbox:
    async def test_list_unread_and_mark_read(self, db_session):
        user = await make_user(db_session)
        other = await make_user(db_session)
        fanout = NotificationFanout(db_session)
        rows = [await fanout.publish(_event(user, n=i)) for i in range(3)]
        await fanout.publish(_event(other))

        page = await fanout.list_notifications(user.id, page=1, limit=2)
        assert page["pagination"] == {"total": 3, "page": 1, "limit": 2, "pages": 2}
        assert await fanout.unread_count(user.id) == 3

        assert await fanout.mark_read(user.id, [rows[0].id]) == 1
        assert await fanout.unread_count(user.id) == 2

        assert await fanout.mark_read(user.id) == 2
        assert await fanout.unread_count(user.id) == 0
        assert await fanout.unread_count(other.id) == 1


class _Socket:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def accept(self):
        pass

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


class TestWebSocketBus:
    async def test_publish_reaches_group_members_only(self):
        connections = ConnectionManager()
        mine, theirs = _Socket(), _Socket()
        await connections.connect(mine, "c1", group="private-user-u1")
        await connections.connect(theirs, "c2", group="private-user-u2")

        await WebSocketBus(connections).publish("private-user-u1", "offer-accepted", {"offer_id": "o1"})

        assert len(mine.sent) == 1
        assert mine.sent[0]["type"] == "offer-accepted"
        assert mine.sent[0]["data"] == {"offer_id": "o1"}
        assert theirs.sent == []

    async def test_dead_socket_is_dropped(self):
        connections = ConnectionManager()
        await connections.connect(_Socket(fail=True), "dead", group="private-user-u1")

        delivered = await connections.broadcast_to_group("private-user-u1", {"type": "ping"})

        assert delivered == 0
        assert await connections.broadcast_to_group("private-user-u1", {"type": "ping"}) == 0
