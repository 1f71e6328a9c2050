"""Commission Engine - derives, pays and reconciles agent commissions.

This is NOT an AI agent. A commission is created inside the offer-accept
transaction, paid out through the PaymentGateway, and settled by webhook
reconciliation (or the payment monitor when a webhook never arrives).

The financial record always lands in a known state: gateway failures and
timeouts degrade the commission to FAILED instead of propagating.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.app.config import get_settings
from greia_platform.domain.enums import CommissionStatus, GatewayOutcome, NotificationType
from greia_platform.domain.errors import ConflictError, NotFoundError, PaymentGatewayError
from greia_platform.domain.models import (
    Commission,
    GatewayEventRecord,
    Offer,
    Submission,
    User,
)
from greia_platform.domain.schemas import GatewayEvent, NotificationEvent
from greia_platform.infra.stripe_gateway import PaymentGateway
from greia_platform.services.commission_state_machine import (
    PAYABLE_STATES,
    CommissionStateMachine,
)
from greia_platform.services.notification_service import NotificationFanout

logger = logging.getLogger(__name__)

COMMISSION_RATE = Decimal("0.05")
PLATFORM_FEE_RATE = Decimal("0.05")
COMMISSION_GRACE_PERIOD_DAYS = 30
STATS_WINDOW_DAYS = 30

_CENT = Decimal("0.01")


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(_CENT, rounding=ROUND_HALF_UP)


def calculate_commission(listing_price) -> tuple[Decimal, Decimal]:
    """Return (amount, platform_fee) for a listing price."""
    amount = _money(Decimal(str(listing_price)) * COMMISSION_RATE)
    return amount, _money(amount * PLATFORM_FEE_RATE)


class CommissionEngine:
    """Commission lifecycle operations over one AsyncSession.

    ``create_commission`` joins the caller's transaction; every other
    mutating method commits its own unit of work.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[NotificationFanout] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier or NotificationFanout(db)
        self.state_machine = CommissionStateMachine()
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_commission(self, offer: Offer, submission: Submission) -> Commission:
        """Materialize the commission for an accepted offer.

        Adds to the caller's transaction; never touches the gateway.
        """
        now = datetime.now(timezone.utc)
        amount, platform_fee = calculate_commission(submission.price)
        commission = Commission(
            id=str(uuid.uuid4()),
            listing_id=submission.id,
            agent_id=offer.agent_id,
            inquiry_id=offer.id,
            listing_price=_money(submission.price),
            rate=float(COMMISSION_RATE),
            amount=amount,
            platform_fee=platform_fee,
            currency=self.settings.stripe_currency,
            due_date=now + timedelta(days=COMMISSION_GRACE_PERIOD_DAYS),
            status=CommissionStatus.PENDING.value,
            payment_attempts=0,
            created_at=now,
        )
        self.db.add(commission)

        self.notifier.stage(NotificationEvent(
            user_id=offer.agent_id,
            type=NotificationType.COMMISSION_CREATED,
            title="Commission created",
            message=f"A commission of {amount} is due for {submission.title}.",
            data={"commission_id": commission.id, "listing_id": submission.id,
                  "amount": str(amount)},
        ))
        logger.info(
            "Commission %s created: offer=%s agent=%s amount=%s",
            commission.id, offer.id, offer.agent_id, amount,
        )
        return commission

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    async def get_commission(self, commission_id: str) -> Commission:
        commission = await self.db.get(Commission, commission_id, populate_existing=True)
        if commission is None:
            raise NotFoundError("Commission", commission_id)
        return commission

    async def initiate_payment(self, commission_id: str) -> Commission:
        """Create a gateway intent for a PENDING or FAILED commission.

        Returns the commission as PROCESSING (intent created) or FAILED
        (no payout destination, gateway rejection or error, timeout). A
        cancelled call is marked FAILED before the cancellation propagates.
        """
        commission = await self.get_commission(commission_id)
        self.state_machine.validate_transition(commission.status, CommissionStatus.PROCESSING)

        # Claim: only one caller wins the move into PROCESSING
        result = await self.db.execute(
            update(Commission)
            .where(
                Commission.id == commission_id,
                Commission.status.in_([s.value for s in PAYABLE_STATES]),
            )
            .values(
                status=CommissionStatus.PROCESSING.value,
                payment_attempts=Commission.payment_attempts + 1,
                failure_reason=None,
                updated_at=datetime.now(timezone.utc),
            )
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise ConflictError(f"Commission {commission_id} is already being processed")
        await self.db.commit()
        await self.db.refresh(commission)
        attempt = commission.payment_attempts

        agent = await self.db.get(User, commission.agent_id)
        if agent is None or not agent.stripe_account_id:
            return await self.mark_failed(commission, "Agent payout account not connected")
        if self.gateway is None:
            return await self.mark_failed(commission, "Payment gateway not configured")

        try:
            intent = await asyncio.wait_for(
                self.gateway.create_payment_intent(
                    amount=commission.amount,
                    currency=commission.currency,
                    destination=agent.stripe_account_id,
                    metadata={
                        "commission_id": commission.id,
                        "listing_id": commission.listing_id,
                        "agent_id": commission.agent_id,
                    },
                    idempotency_key=f"commission-{commission.id}-attempt-{attempt}",
                ),
                timeout=self.settings.payment_gateway_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return await self.mark_failed(commission, "Payment gateway timed out")
        except PaymentGatewayError as exc:
            reason = "Payment gateway timed out" if exc.timeout else f"Payment failed: {exc.message}"
            return await self.mark_failed(commission, reason)
        except asyncio.CancelledError:
            await self.mark_failed(commission, "Payment initiation cancelled")
            raise
        except Exception as exc:
            logger.exception("Commission %s: unexpected gateway error", commission.id)
            return await self.mark_failed(commission, f"Payment failed: {exc}")

        commission.stripe_payment_id = intent.intent_id
        commission.notes = f"Payment intent {intent.intent_id} created (attempt {attempt})"
        await self.db.commit()
        logger.info(
            "Commission %s PROCESSING: intent=%s attempt=%d",
            commission.id, intent.intent_id, attempt,
        )
        return commission

    async def mark_failed(self, commission: Commission, reason: str) -> Commission:
        self.state_machine.validate_transition(commission.status, CommissionStatus.FAILED)
        commission.status = CommissionStatus.FAILED.value
        commission.failure_reason = reason
        commission.notes = reason
        await self.db.commit()
        logger.warning("Commission %s FAILED: %s", commission.id, reason)
        return commission

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _find_for_event(self, event: GatewayEvent) -> Optional[Commission]:
        commission_id = event.metadata.get("commission_id")
        if commission_id:
            commission = await self.db.get(Commission, commission_id)
            if commission is not None:
                return commission
        result = await self.db.execute(
            select(Commission).where(Commission.stripe_payment_id == event.intent_id)
        )
        return result.scalar_one_or_none()

    async def reconcile(self, event: GatewayEvent) -> Commission:
        """Apply a terminal gateway outcome. Safe to call repeatedly.

        A repeated event id, an already-PAID commission, or an event for a
        superseded intent is a no-op.
        """
        seen = await self.db.get(GatewayEventRecord, event.event_id)
        if seen is not None:
            logger.info("Gateway event %s already processed", event.event_id)
            if seen.commission_id:
                return await self.get_commission(seen.commission_id)
            raise NotFoundError("Commission", event.intent_id)

        commission = await self._find_for_event(event)
        if commission is None:
            raise NotFoundError("Commission", event.metadata.get("commission_id") or event.intent_id)

        self.db.add(GatewayEventRecord(
            event_id=event.event_id,
            event_type=event.event_type,
            intent_id=event.intent_id,
            commission_id=commission.id,
            outcome=event.outcome.value,
        ))

        status = CommissionStatus(commission.status)
        if status == CommissionStatus.PAID:
            logger.info("Commission %s already PAID; ignoring %s", commission.id, event.event_id)
        elif commission.stripe_payment_id and commission.stripe_payment_id != event.intent_id:
            logger.warning(
                "Commission %s: event %s is for superseded intent %s (current %s); ignoring",
                commission.id, event.event_id, event.intent_id, commission.stripe_payment_id,
            )
        elif event.outcome == GatewayOutcome.SUCCEEDED:
            self._apply_success(commission, status, event)
        elif status == CommissionStatus.FAILED:
            logger.info("Commission %s already FAILED; ignoring %s", commission.id, event.event_id)
        else:
            self._apply_failure(commission, status, event)

        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event won the ledger insert
            await self.db.rollback()
            self.notifier.discard()
            logger.info("Gateway event %s recorded concurrently", event.event_id)
            await self.db.refresh(commission)
            return commission

        await self.notifier.dispatch()
        return commission

    def _apply_success(self, commission: Commission, status: CommissionStatus, event: GatewayEvent):
        if status == CommissionStatus.FAILED:
            # Money moved after we gave up on the attempt; re-enter PROCESSING first
            logger.warning("Commission %s succeeded after being marked FAILED", commission.id)
            self.state_machine.validate_transition(status, CommissionStatus.PROCESSING)
            status = CommissionStatus.PROCESSING
        self.state_machine.validate_transition(status, CommissionStatus.PAID)

        now = datetime.now(timezone.utc)
        commission.status = CommissionStatus.PAID.value
        commission.paid_date = now
        commission.stripe_payment_id = event.intent_id
        commission.transaction_ref = event.transaction_ref or event.intent_id
        commission.failure_reason = None
        commission.notes = f"Paid via {event.intent_id}"

        self.notifier.stage(NotificationEvent(
            user_id=commission.agent_id,
            type=NotificationType.COMMISSION_PAID,
            title="Commission paid",
            message=f"Your commission of {commission.amount} has been paid.",
            data={"commission_id": commission.id, "listing_id": commission.listing_id,
                  "amount": str(commission.amount),
                  "transaction_ref": commission.transaction_ref},
        ))
        logger.info("Commission %s PAID: ref=%s", commission.id, commission.transaction_ref)

    def _apply_failure(self, commission: Commission, status: CommissionStatus, event: GatewayEvent):
        self.state_machine.validate_transition(status, CommissionStatus.FAILED)
        reason = event.failure_reason or f"Payment {event.outcome.value}"
        commission.status = CommissionStatus.FAILED.value
        commission.failure_reason = reason
        commission.notes = f"Payment {event.outcome.value}: {reason}"

        self.notifier.stage(NotificationEvent(
            user_id=commission.agent_id,
            type=NotificationType.COMMISSION_FAILED,
            title="Commission payment failed",
            message=f"Payment of your commission failed: {reason}",
            data={"commission_id": commission.id, "listing_id": commission.listing_id,
                  "reason": reason},
        ))
        logger.warning("Commission %s FAILED via %s: %s", commission.id, event.event_id, reason)

    # ------------------------------------------------------------------
    # Read-only aggregation
    # ------------------------------------------------------------------

    async def get_agent_summary(self, agent_id: str) -> dict:
        """Counts per status and amount totals for one agent."""
        result = await self.db.execute(
            select(
                Commission.status,
                func.count(Commission.id),
                func.sum(Commission.amount),
                func.sum(Commission.platform_fee),
            )
            .where(Commission.agent_id == agent_id)
            .group_by(Commission.status)
        )
        counts = {s.value: 0 for s in CommissionStatus}
        amounts = {s.value: Decimal("0.00") for s in CommissionStatus}
        paid_fees = Decimal("0.00")
        for status, count, amount_sum, fee_sum in result.all():
            counts[status] = count
            amounts[status] = _money(amount_sum)
            if status == CommissionStatus.PAID.value:
                paid_fees = _money(fee_sum)

        return {
            "agent_id": agent_id,
            "counts": counts,
            "total": sum(counts.values()),
            "total_earned": amounts[CommissionStatus.PAID.value],
            "total_outstanding": amounts[CommissionStatus.PENDING.value]
            + amounts[CommissionStatus.PROCESSING.value]
            + amounts[CommissionStatus.FAILED.value],
            "total_platform_fee": paid_fees,
        }

    async def get_agent_history(self, agent_id: str, page: int = 1, limit: int = 10) -> dict:
        """Newest-first page of an agent's commissions with listing details."""
        page = max(page, 1)
        limit = min(max(limit, 1), 100)

        total = (await self.db.execute(
            select(func.count()).select_from(Commission).where(Commission.agent_id == agent_id)
        )).scalar_one()
        result = await self.db.execute(
            select(Commission, Submission.title)
            .join(Submission, Submission.id == Commission.listing_id)
            .where(Commission.agent_id == agent_id)
            .order_by(Commission.created_at.desc(), Commission.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )

        items = []
        for commission, title in result.all():
            items.append({
                "id": commission.id,
                "status": commission.status,
                "listing": {
                    "id": commission.listing_id,
                    "title": title,
                    "price": commission.listing_price,
                },
                "breakdown": {
                    "rate": commission.rate,
                    "amount": commission.amount,
                    "platform_fee": commission.platform_fee,
                    "agent_net": _money(commission.amount - commission.platform_fee),
                },
                "due_date": commission.due_date,
                "paid_date": commission.paid_date,
                "transaction_ref": commission.transaction_ref,
                "created_at": commission.created_at,
            })

        return {
            "commissions": items,
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "pages": (total + limit - 1) // limit,
            },
        }

    async def get_commission_stats(self) -> dict:
        """Platform-wide fee totals plus a recent per-status breakdown."""
        fee_rows = await self.db.execute(
            select(Commission.status, func.sum(Commission.platform_fee))
            .where(Commission.status.in_([
                CommissionStatus.PAID.value, CommissionStatus.PENDING.value,
            ]))
            .group_by(Commission.status)
        )
        fees = {status: _money(total) for status, total in fee_rows.all()}

        since = datetime.now(timezone.utc) - timedelta(days=STATS_WINDOW_DAYS)
        recent_rows = await self.db.execute(
            select(Commission.status, func.count(Commission.id), func.sum(Commission.amount))
            .where(Commission.created_at >= since)
            .group_by(Commission.status)
        )
        recent = {
            status: {"count": count, "amount": _money(total)}
            for status, count, total in recent_rows.all()
        }

        return {
            "total_platform_fee_paid": fees.get(CommissionStatus.PAID.value, Decimal("0.00")),
            "total_platform_fee_pending": fees.get(CommissionStatus.PENDING.value, Decimal("0.00")),
            "last_30_days": recent,
        }
