from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterator

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mini_crm.core.config import settings
from mini_crm.models.domain import Customer, Order
from mini_crm.services.segment_evaluator import PopulationUnavailableError

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite는 tz 정보 없이 돌려주므로 UTC로 맞춘다.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _days_since(value: datetime | None, now: datetime) -> int | None:
    if value is None:
        return None
    return max((now - value).days, 0)


def _load_order_stats(db: Session) -> dict[int, dict[str, Any]]:
    stmt = select(
        Order.customer_id,
        func.count().label("order_count"),
        func.avg(Order.amount).label("average_order_value"),
        func.max(Order.ordered_at).label("last_order_at"),
    ).group_by(Order.customer_id)
    rows = db.execute(stmt).all()
    stats: dict[int, dict[str, Any]] = {}
    for row in rows:
        stats[row.customer_id] = {
            "order_count": int(row.order_count or 0),
            "average_order_value": float(row.average_order_value or 0),
            "last_order_at": _as_utc(row.last_order_at),
        }
    return stats


def to_population_record(
    customer: Customer,
    order_stats: dict[str, Any] | None = None,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    order_stats = order_stats or {}
    last_visit_at = _as_utc(customer.last_visit_at)
    last_order_at = order_stats.get("last_order_at")
    return {
        "customer_id": customer.id,
        "customer_key": customer.customer_key,
        "name": customer.name,
        "email": customer.email,
        "phone": customer.phone,
        "city": customer.city,
        "preferred_category": customer.preferred_category,
        "total_spending": float(customer.total_spending or 0),
        "total_visits": customer.total_visits,
        "order_count": order_stats.get("order_count", 0),
        "average_order_value": order_stats.get("average_order_value", 0.0),
        "last_visit_at": last_visit_at,
        "last_order_at": last_order_at,
        "registered_at": _as_utc(customer.registered_at),
        "days_since_last_visit": _days_since(last_visit_at, now),
        "days_since_last_order": _days_since(last_order_at, now),
        "is_active": customer.is_active,
        "churn_risk": customer.churn_risk,
        "preferred_channel": customer.preferred_channel,
    }


def iter_population(db: Session, *, now: datetime | None = None) -> Iterator[dict[str, Any]]:
    """
    세그먼트 평가용 고객 레코드를 id 순으로 스트리밍한다.

    DB 오류는 PopulationUnavailableError로 감싸 올린다 (빈 모집단으로 처리하지 않는다).
    """
    now = now or datetime.now(timezone.utc)
    try:
        order_stats = _load_order_stats(db)
        stmt = (
            select(Customer)
            .order_by(Customer.id)
            .execution_options(yield_per=settings.segment_eval_batch_size)
        )
        for customer in db.scalars(stmt):
            yield to_population_record(customer, order_stats.get(customer.id), now=now)
    except SQLAlchemyError as exc:
        logger.exception("고객 모집단 조회 실패")
        raise PopulationUnavailableError("고객 데이터를 조회할 수 없습니다.") from exc


def get_customers_by_ids(db: Session, customer_ids: list[int]) -> list[Customer]:
    if not customer_ids:
        return []
    customers = db.scalars(select(Customer).where(Customer.id.in_(customer_ids))).all()
    by_id = {customer.id: customer for customer in customers}
    return [by_id[customer_id] for customer_id in customer_ids if customer_id in by_id]
