import asyncio
import logging
from datetime import datetime

from database import get_db
from utils.payout_periods import previous_period
from utils.payout_service import generate_payout_invoices_for_period, get_payout_settings

CHECK_INTERVAL_SECONDS = 60 * 60  # every hour
logger = logging.getLogger(__name__)


async def run_payout_generation_once(db, now: datetime | None = None) -> dict | None:
    """
    Generate the most recently closed period unless a run already covered
    it. Overlapping triggers are harmless: the per-period guard rejects them.
    """
    start, _ = previous_period(now)
    settings = await get_payout_settings(db)

    if settings.get("last_run_period_start") == start and settings.get("last_run_status") == "SUCCESS":
        return None

    summary = await generate_payout_invoices_for_period(db, start, now=now)
    logger.info(
        "PAYOUT_GENERATION_RUN period=%s generated=%s skipped_existing=%s skipped_empty=%s failed=%s",
        start.date(),
        len(summary["generated"]),
        len(summary["skipped_existing"]),
        len(summary["skipped_empty"]),
        len(summary["failed"]),
    )
    return summary


async def payout_generation_worker():
    db = get_db()

    while True:
        try:
            await run_payout_generation_once(db)
        except Exception:
            logger.exception("PAYOUT_GENERATION_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)
