"""FastAPI application entry point for the GREIA Platform API."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from greia_platform.app.config import get_settings
from greia_platform.domain.errors import GreiaError
from greia_platform.domain.schemas import HealthResponse
from greia_platform.infra.database import async_session, init_db
from greia_platform.infra.realtime import get_realtime_bus
from greia_platform.infra.stripe_gateway import get_payment_gateway
from greia_platform.services.payment_monitor import sync_processing_commissions

logger = logging.getLogger(__name__)


async def payment_monitor_loop():
    """Reconcile stale PROCESSING commissions against Stripe on an interval."""
    interval = get_settings().payment_sync_interval_minutes * 60
    while True:
        try:
            async with async_session() as db:
                await sync_processing_commissions(db, get_payment_gateway(), get_realtime_bus())
        except Exception as e:
            logger.error("Payment monitor error: %s", e)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database and start the payment monitor."""
    await init_db()

    monitor = None
    if get_settings().stripe_secret_key:
        monitor = asyncio.create_task(payment_monitor_loop())
    else:
        logger.warning("STRIPE_SECRET_KEY not set; payment monitor disabled")
    yield
    if monitor is not None:
        monitor.cancel()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="GREIA Platform API",
    lifespan=lifespan,
    debug=settings.debug,
)

_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GreiaError)
async def greia_error_handler(request: Request, exc: GreiaError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from greia_platform.app.routes.auth import router as auth_router
from greia_platform.app.routes.submissions import router as submissions_router
from greia_platform.app.routes.commissions import router as commissions_router
from greia_platform.app.routes.webhooks import router as webhooks_router
from greia_platform.app.routes.moderation import router as moderation_router
from greia_platform.app.routes.notifications import router as notifications_router
from greia_platform.app.routes.ws import router as ws_router

app.include_router(auth_router)
app.include_router(submissions_router)
app.include_router(commissions_router)
app.include_router(webhooks_router)
app.include_router(moderation_router)
app.include_router(notifications_router)
app.include_router(ws_router)


@app.get("/health", tags=["health"], response_model=HealthResponse)
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "greia-platform"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "greia_platform.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
