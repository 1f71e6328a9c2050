"""Tests for the payment monitor that settles commissions missing a webhook."""

from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from greia_platform.domain.enums import CommissionStatus
from greia_platform.domain.models import Commission
from greia_platform.services.payment_monitor import sync_processing_commissions

from conftest import make_agent, make_commission

S = CommissionStatus


async def _processing(db, agent, intent_id, minutes_ago=120):
    commission = await make_commission(db, agent, status=S.PROCESSING, stripe_payment_id=intent_id)
    await db.execute(
        update(Commission)
        .where(Commission.id == commission.id)
        .values(updated_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago))
    )
    await db.commit()
    return commission


class TestSyncProcessingCommissions:
    async def test_settles_stale_intents(self, db_session, fake_gateway, fake_bus):
        agent = await make_agent(db_session)
        paid = await _processing(db_session, agent, "pi_paid")
        failed = await _processing(db_session, agent, "pi_failed")
        waiting = await _processing(db_session, agent, "pi_waiting")
        fake_gateway.intent_statuses = {
            "pi_paid": "succeeded",
            "pi_failed": "requires_payment_method",
            "pi_waiting": "processing",
        }

        stats = await sync_processing_commissions(db_session, fake_gateway, fake_bus)

        assert stats == {"checked": 3, "settled": 2, "in_flight": 1, "abandoned": 0, "errors": 0}
        for commission in (paid, failed, waiting):
            await db_session.refresh(commission)
        assert paid.status == S.PAID.value
        assert failed.status == S.FAILED.value
        assert failed.failure_reason == "Payment intent requires_payment_method"
        assert waiting.status == S.PROCESSING.value
        assert sorted(e for _, e, _ in fake_bus.published) == ["commission-failed", "commission-paid"]

    async def test_recent_commissions_are_left_alone(self, db_session, fake_gateway):
        agent = await make_agent(db_session)
        await _processing(db_session, agent, "pi_fresh", minutes_ago=1)
        fake_gateway.intent_statuses = {"pi_fresh": "succeeded"}

        stats = await sync_processing_commissions(db_session, fake_gateway)

        assert stats["checked"] == 0

    async def test_gateway_errors_are_counted(self, db_session, fake_gateway):
        agent = await make_agent(db_session)
        commission = await _processing(db_session, agent, "pi_unknown")

        stats = await sync_processing_commissions(db_session, fake_gateway)

        assert stats == {"checked": 1, "settled": 0, "in_flight": 0, "abandoned": 0, "errors": 1}
        await db_session.refresh(commission)
        assert commission.status == S.PROCESSING.value

    async def test_rerun_is_idempotent(self, db_session, fake_gateway):
        agent = await make_agent(db_session)
        commission = await _processing(db_session, agent, "pi_paid")
        fake_gateway.intent_statuses = {"pi_paid": "succeeded"}

        await sync_processing_commissions(db_session, fake_gateway)
        stats = await sync_processing_commissions(db_session, fake_gateway)

        assert stats["checked"] == 0
        await db_session.refresh(commission)
        assert commission.status == S.PAID.value

    async def test_claim_without_intent_is_failed(self, db_session, fake_gateway):
        agent = await make_agent(db_session)
        orphan = await _processing(db_session, agent, None)
        fresh = await _processing(db_session, agent, None, minutes_ago=1)

        stats = await sync_processing_commissions(db_session, fake_gateway)

        assert stats == {"checked": 0, "settled": 0, "in_flight": 0, "abandoned": 1, "errors": 0}
        await db_session.refresh(orphan)
        await db_session.refresh(fresh)
        assert orphan.status == S.FAILED.value
        assert orphan.failure_reason == "Payment initiation did not complete"
        assert fresh.status == S.PROCESSING.value
        assert fake_gateway.calls == []
