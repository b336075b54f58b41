from __future__ import annotations

import logging

from mini_crm.core.config import settings
from mini_crm.db.session import SessionLocal
from mini_crm.services.segment_service import refresh_segment_audiences

logger = logging.getLogger(__name__)


def run_segment_refresh_job() -> None:
    if not settings.segment_refresh_enabled:
        return

    session = SessionLocal()
    try:
        summary = refresh_segment_audiences(session)
        logger.info(
            "세그먼트 대상 수 갱신 완료 (refreshed=%s, failed=%s)",
            summary["refreshed"],
            summary["failed"],
        )
    except Exception:  # noqa: BLE001
        session.rollback()
        logger.exception("세그먼트 대상 수 갱신 실패")
    finally:
        session.close()
