from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from mini_crm.core.config import settings
from mini_crm.tasks.campaign_stats_sync import run_campaign_stats_sync_job
from mini_crm.tasks.segment_refresh import run_segment_refresh_job

logger = logging.getLogger(__name__)
_scheduler: BackgroundScheduler | None = None


def start_scheduler() -> None:
    global _scheduler
    if _scheduler is not None or not settings.scheduler_enabled:
        if not settings.scheduler_enabled:
            logger.info("스케줄러 비활성화 상태 (SCHEDULER_ENABLED=false)")
        return

    _scheduler = BackgroundScheduler(timezone="UTC")
    if settings.campaign_stats_sync_enabled:
        _scheduler.add_job(
            run_campaign_stats_sync_job,
            IntervalTrigger(seconds=settings.campaign_stats_sync_interval_seconds),
            id="campaign_stats_sync",
            max_instances=1,
            replace_existing=True,
            coalesce=True,
        )
    if settings.segment_refresh_enabled:
        _scheduler.add_job(
            run_segment_refresh_job,
            IntervalTrigger(minutes=settings.segment_refresh_interval_minutes),
            id="segment_refresh",
            max_instances=1,
            replace_existing=True,
            coalesce=True,
        )

    _scheduler.start()
    logger.info("스케줄러 시작")


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        logger.info("스케줄러 종료")
        _scheduler = None
