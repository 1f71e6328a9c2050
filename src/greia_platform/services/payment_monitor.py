"""Background reconciliation for commissions whose webhook never arrived."""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.app.config import get_settings
from greia_platform.domain.enums import CommissionStatus, GatewayOutcome
from greia_platform.domain.errors import GreiaError, PaymentGatewayError
from greia_platform.domain.models import Commission
from greia_platform.domain.schemas import GatewayEvent
from greia_platform.infra.realtime import RealtimeBus
from greia_platform.infra.stripe_gateway import PaymentGateway
from greia_platform.services.commission_engine import CommissionEngine
from greia_platform.services.notification_service import NotificationFanout

logger = logging.getLogger(__name__)

# Stripe intent status -> terminal outcome. Anything else is still in flight.
INTENT_STATUS_OUTCOMES = {
    "succeeded": GatewayOutcome.SUCCEEDED,
    "canceled": GatewayOutcome.CANCELED,
    "requires_payment_method": GatewayOutcome.FAILED,
}


async def sync_processing_commissions(
    db: AsyncSession,
    gateway: PaymentGateway,
    bus: RealtimeBus | None = None,
) -> dict:
    """Poll the gateway for stale PROCESSING commissions and reconcile them.

    Stale PROCESSING rows that never recorded an intent id (the initiating
    call died between claim and gateway response) are marked FAILED so they
    can be retried.

    Returns counts of commissions checked, settled, still in flight,
    abandoned and errored.
    """
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.payment_sync_stale_minutes)

    result = await db.execute(
        select(Commission.id, Commission.stripe_payment_id).where(
            Commission.status == CommissionStatus.PROCESSING.value,
            Commission.stripe_payment_id.isnot(None),
            Commission.updated_at < cutoff,
        )
    )
    stale = result.all()

    engine = CommissionEngine(db, gateway=gateway, notifier=NotificationFanout(db, bus))
    stats = {"checked": 0, "settled": 0, "in_flight": 0, "abandoned": 0, "errors": 0}

    result = await db.execute(
        select(Commission).where(
            Commission.status == CommissionStatus.PROCESSING.value,
            Commission.stripe_payment_id.is_(None),
            Commission.updated_at < cutoff,
        )
        .execution_options(populate_existing=True)
    )
    for commission in result.scalars().all():
        await engine.mark_failed(commission, "Payment initiation did not complete")
        stats["abandoned"] += 1

    for commission_id, intent_id in stale:
        stats["checked"] += 1
        try:
            intent_status = await gateway.retrieve_intent(intent_id)
        except PaymentGatewayError as exc:
            logger.warning("Could not retrieve intent %s: %s", intent_id, exc)
            stats["errors"] += 1
            continue

        outcome = INTENT_STATUS_OUTCOMES.get(intent_status)
        if outcome is None:
            stats["in_flight"] += 1
            continue

        event = GatewayEvent(
            event_id=f"sync-{intent_id}-{intent_status}",
            event_type=f"payment_intent.sync.{intent_status}",
            intent_id=intent_id,
            outcome=outcome,
            metadata={"commission_id": commission_id},
            failure_reason=None if outcome == GatewayOutcome.SUCCEEDED
            else f"Payment intent {intent_status}",
        )
        try:
            await engine.reconcile(event)
            stats["settled"] += 1
        except GreiaError as exc:
            await db.rollback()
            logger.error("Sync reconcile failed for commission %s: %s", commission_id, exc)
            stats["errors"] += 1

    if stats["checked"] or stats["abandoned"]:
        logger.info("Payment sync: %s", stats)
    return stats
