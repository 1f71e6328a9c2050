"""One-shot payment sync: settle PROCESSING commissions whose webhook never arrived.

Usage:
    python scripts/sync_commission_payments.py

Requires STRIPE_SECRET_KEY in .env. The API process runs the same job on an
interval; this is for manual catch-up after an outage.
"""

import asyncio
import logging
import os
import sys

# Ensure src is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

logging.basicConfig(level=logging.INFO, format="%(levelname)s  %(message)s")
logger = logging.getLogger(__name__)


async def sync():
    from greia_platform.app.config import get_settings
    from greia_platform.infra.database import async_session, init_db
    from greia_platform.infra.stripe_gateway import get_payment_gateway
    from greia_platform.services.payment_monitor import sync_processing_commissions

    if not get_settings().stripe_secret_key:
        logger.error("STRIPE_SECRET_KEY not set in .env, aborting.")
        return

    await init_db()

    async with async_session() as session:
        stats = await sync_processing_commissions(session, get_payment_gateway())

    logger.info(
        "Done: %d checked, %d settled, %d still in flight, %d abandoned, %d errors.",
        stats["checked"], stats["settled"], stats["in_flight"], stats["abandoned"], stats["errors"],
    )


if __name__ == "__main__":
    asyncio.run(sync())
