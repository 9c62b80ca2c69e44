# worker.py
import asyncio

import asyncpg
import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from tenacity import retry, wait_exponential_jitter, stop_after_attempt, retry_if_exception_type
from sqlalchemy.exc import DBAPIError, OperationalError

from database import AsyncSessionLocal, init_models
from monitor import check_for_alerts
from crud import clear_all_alerts
from config import ALERT_CHECK_INTERVAL_SEC, ALERT_PURGE_HOUR, ALERT_PURGE_TIMEZONE

from logging_config import get_logger

# ------------ Variable Declaration -----------
logger = get_logger("worker", "worker.log")

PURGE_JOB_ID = "daily-alert-purge"


# ---------- Alert tick ----------
@retry(
    wait=wait_exponential_jitter(initial=2, max=30),
    stop=stop_after_attempt(5),
    retry=retry_if_exception_type(
        (DBAPIError, OperationalError, OSError, asyncpg.CannotConnectNowError)
    ),
    reraise=True,
)
async def run_alert_tick(now=None, session_factory=None):
    """
    One evaluation pass. Per-driver failures are handled inside the monitor;
    only connection-level errors reach here and get retried.
    """
    return await check_for_alerts(now=now, session_factory=session_factory)


# ---------- Daily purge ----------
async def purge_alert_history(session_factory=None) -> int:
    session_factory = session_factory or AsyncSessionLocal
    logger.info("Starting daily alert history cleanup...")
    async with session_factory() as db:
        removed = await clear_all_alerts(db)
    logger.info(f"Alert history cleanup completed ({removed} alerts removed)")
    return removed


def build_scheduler() -> AsyncIOScheduler:
    tz = pytz.timezone(ALERT_PURGE_TIMEZONE)
    scheduler = AsyncIOScheduler(timezone=tz)
    scheduler.add_job(
        purge_alert_history,
        CronTrigger(hour=ALERT_PURGE_HOUR, minute=0, timezone=tz),
        id=PURGE_JOB_ID,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    return scheduler


# ---------- Main Worker Loop ----------
async def alert_loop(stop_event: asyncio.Event = None, interval_sec: int = ALERT_CHECK_INTERVAL_SEC):
    logger.info(f"Alert loop started (interval={interval_sec}s)")
    stop_event = stop_event or asyncio.Event()

    while not stop_event.is_set():
        try:
            await run_alert_tick()
        except Exception as e:
            logger.exception(f"Alert tick failed: {e}")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_sec)
        except asyncio.TimeoutError:
            pass

    logger.info("Alert loop stopped")


async def worker(stop_event: asyncio.Event = None):
    scheduler = build_scheduler()
    scheduler.start()
    logger.info(f"Daily alert cleanup scheduled for {ALERT_PURGE_HOUR:02d}:00 {ALERT_PURGE_TIMEZONE}")
    try:
        await alert_loop(stop_event)
    finally:
        scheduler.shutdown(wait=False)


async def _main():
    await init_models()
    await worker()


if __name__ == "__main__":
    logger.info("Worker starting up...")
    asyncio.run(_main())
