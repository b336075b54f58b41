from __future__ import annotations

import logging

from mini_crm.core.config import settings
from mini_crm.db.session import SessionLocal
from mini_crm.services.campaign_service import sync_campaign_stats

logger = logging.getLogger(__name__)


def run_campaign_stats_sync_job() -> None:
    if not settings.campaign_stats_sync_enabled:
        return

    session = SessionLocal()
    try:
        summary = sync_campaign_stats(session)
        logger.debug(
            "캠페인 통계 동기화 완료 (updated=%s, completed=%s)",
            summary["updated"],
            summary["completed"],
        )
    except Exception:  # noqa: BLE001
        session.rollback()
        logger.exception("캠페인 통계 동기화 실패")
    finally:
        session.close()
