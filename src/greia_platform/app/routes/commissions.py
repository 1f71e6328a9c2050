"""Agent commission views and admin payout actions."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from greia_platform.app.routes.auth import get_current_user_dep, require_admin, require_role
from greia_platform.domain.enums import UserRole
from greia_platform.domain.errors import AuthorizationError
from greia_platform.domain.models import User
from greia_platform.domain.schemas import CommissionResponse
from greia_platform.infra.database import get_db
from greia_platform.infra.realtime import RealtimeBus, get_realtime_bus
from greia_platform.infra.stripe_gateway import PaymentGateway, get_payment_gateway
from greia_platform.services.commission_engine import CommissionEngine
from greia_platform.services.notification_service import NotificationFanout

router = APIRouter(prefix="/api/commissions", tags=["commissions"])


def get_commission_engine(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    bus: RealtimeBus = Depends(get_realtime_bus),
) -> CommissionEngine:
    return CommissionEngine(db, gateway=gateway, notifier=NotificationFanout(db, bus))


@router.get("/summary")
async def agent_summary(
    agent: User = Depends(require_role(UserRole.AGENT)),
    engine: CommissionEngine = Depends(get_commission_engine),
):
    return await engine.get_agent_summary(agent.id)


@router.get("/history")
async def agent_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    agent: User = Depends(require_role(UserRole.AGENT)),
    engine: CommissionEngine = Depends(get_commission_engine),
):
    return await engine.get_agent_history(agent.id, page=page, limit=limit)


@router.get("/stats")
async def commission_stats(
    admin: User = Depends(require_admin),
    engine: CommissionEngine = Depends(get_commission_engine),
):
    return await engine.get_commission_stats()


@router.get("/{commission_id}", response_model=CommissionResponse)
async def get_commission(
    commission_id: str,
    user: User = Depends(get_current_user_dep),
    engine: CommissionEngine = Depends(get_commission_engine),
):
    commission = await engine.get_commission(commission_id)
    if commission.agent_id != user.id and user.role != UserRole.ADMIN.value:
        raise AuthorizationError("Not allowed to view this commission")
    return commission


@router.post("/{commission_id}/pay", response_model=CommissionResponse)
async def initiate_payment(
    commission_id: str,
    admin: User = Depends(require_admin),
    engine: CommissionEngine = Depends(get_commission_engine),
):
    """Start (or retry) the payout. A FAILED result is returned, not raised."""
    return await engine.initiate_payment(commission_id)
