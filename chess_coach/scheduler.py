"""Scheduler — periodic engine health probe using APScheduler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from chess_coach.config import RelayConfig
    from chess_coach.engine import EngineSession

logger = logging.getLogger(__name__)

HEALTH_JOB_ID = "engine_health"


async def probe_engine(engine: EngineSession) -> None:
    """Ping a running engine. A stopped engine is left stopped."""
    if not engine.is_running:
        logger.debug("Engine not running, skipping health check")
        return

    try:
        healthy = await engine.ping()
    except Exception as e:
        logger.error(f"Engine health check crashed: {e}", exc_info=True)
        return

    if healthy:
        logger.debug("Engine health check ok")
    else:
        logger.warning("Engine health check failed; it will restart on the next analysis")


def setup_scheduler(config: RelayConfig, engine: EngineSession) -> AsyncIOScheduler:
    """Build and configure the scheduler from the relay config."""
    scheduler = AsyncIOScheduler()

    minutes = config.engine.health_check_minutes
    if minutes:
        scheduler.add_job(
            probe_engine,
            trigger=IntervalTrigger(minutes=minutes),
            args=[engine],
            id=HEALTH_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled engine health check every {minutes} min")

    return scheduler
