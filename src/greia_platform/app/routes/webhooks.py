"""Inbound payment-provider webhooks."""

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.domain.errors import NotFoundError
from greia_platform.infra.database import get_db
from greia_platform.infra.realtime import RealtimeBus, get_realtime_bus
from greia_platform.infra.stripe_gateway import PaymentGateway, get_payment_gateway
from greia_platform.services.commission_engine import CommissionEngine
from greia_platform.services.notification_service import NotificationFanout

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    bus: RealtimeBus = Depends(get_realtime_bus),
):
    """Verify and apply a Stripe event. Bad signatures are rejected with 400."""
    payload = await request.body()
    event = gateway.parse_webhook(payload, stripe_signature)
    if event is None:
        return {"received": True, "handled": False}

    engine = CommissionEngine(db, gateway=gateway, notifier=NotificationFanout(db, bus))
    try:
        commission = await engine.reconcile(event)
    except NotFoundError:
        # Not one of ours; ack it
        logger.warning("Stripe event %s matched no commission (intent %s)", event.event_id, event.intent_id)
        return {"received": True, "handled": False}

    return {"received": True, "handled": True, "commission_id": commission.id,
            "status": commission.status}
