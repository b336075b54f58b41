from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from mini_crm.models.domain import Segment
from mini_crm.schemas.rules import parse_rule_tree
from mini_crm.schemas.segments import (
    CustomerBrief,
    FieldDescriptorRead,
    RuleErrorRead,
    SegmentCreate,
    SegmentCustomersPage,
    SegmentPreviewResponse,
    SegmentUpdate,
)
from mini_crm.services import segment_evaluator
from mini_crm.services.customer_service import iter_population
from mini_crm.services.field_catalog import FieldCatalog, get_catalog
from mini_crm.services.rule_compiler import (
    CompileResult,
    RuleValidationError,
    SegmentCompilationError,
    compile_persisted_tree,
    compile_rule_tree,
)

logger = logging.getLogger(__name__)


class SegmentNotFoundError(ValueError):
    pass


class SegmentRuleError(ValueError):
    """요청으로 들어온 규칙 트리가 유효하지 않다."""

    def __init__(self, errors: Sequence[RuleValidationError]) -> None:
        super().__init__("세그먼트 규칙이 유효하지 않습니다.")
        self.errors = [to_error_read(error) for error in errors]


def to_error_read(error: RuleValidationError) -> RuleErrorRead:
    return RuleErrorRead(
        code=error.code.value,
        message=error.message,
        path=error.path,
        rule_id=error.rule_id,
    )


def to_customer_brief(record: dict[str, Any]) -> CustomerBrief:
    return CustomerBrief(
        id=record["customer_id"],
        customer_key=record["customer_key"],
        name=record["name"],
        email=record.get("email"),
        city=record.get("city"),
        total_spending=record.get("total_spending") or 0.0,
        churn_risk=record.get("churn_risk"),
    )


def list_field_options(catalog: FieldCatalog | None = None) -> list[FieldDescriptorRead]:
    catalog = catalog or get_catalog()
    return [
        FieldDescriptorRead(
            name=descriptor.name,
            type=descriptor.semantic_type.value,
            label=descriptor.label,
            operators=sorted(operator.value for operator in descriptor.allowed_operators),
            options=list(descriptor.options),
        )
        for descriptor in catalog
    ]


def preview_segment(
    db: Session,
    rule_tree: Any,
    *,
    sample_size: int | None = None,
    catalog: FieldCatalog | None = None,
) -> SegmentPreviewResponse:
    result = compile_rule_tree(rule_tree, catalog or get_catalog())
    if not result.ok:
        return SegmentPreviewResponse(
            valid=False,
            errors=[to_error_read(error) for error in result.errors],
        )
    preview = segment_evaluator.preview(result.predicate, iter_population(db), sample_size=sample_size)
    return SegmentPreviewResponse(
        valid=True,
        audience_size=preview.audience_size,
        description=result.description,
        sample=[to_customer_brief(record) for record in preview.sample],
    )


def _compile_request_tree(rule_tree: Any, catalog: FieldCatalog) -> tuple[CompileResult, dict]:
    result = compile_rule_tree(rule_tree, catalog)
    if not result.ok:
        raise SegmentRuleError(result.errors)
    normalized = parse_rule_tree(rule_tree).model_dump(mode="json", exclude_none=True)
    return result, normalized


def _refresh_audience(db: Session, segment: Segment, result: CompileResult) -> None:
    segment.audience_size = segment_evaluator.count(result.predicate, iter_population(db))
    segment.last_calculated_at = datetime.now(timezone.utc)


def create_segment(db: Session, payload: SegmentCreate, *, catalog: FieldCatalog | None = None) -> Segment:
    result, normalized = _compile_request_tree(payload.rule_tree, catalog or get_catalog())
    segment = Segment(
        name=payload.name.strip(),
        description=payload.description or result.description,
        rule_tree=normalized,
        natural_language_query=payload.natural_language_query,
        tags=payload.tags,
        is_active=True,
    )
    _refresh_audience(db, segment, result)
    db.add(segment)
    db.commit()
    db.refresh(segment)
    logger.info("세그먼트 생성 (id=%s, audience=%s)", segment.id, segment.audience_size)
    return segment


def get_segment(db: Session, segment_id: int) -> Segment:
    segment = db.get(Segment, segment_id)
    if not segment:
        raise SegmentNotFoundError("세그먼트를 찾을 수 없습니다.")
    return segment


def list_segments(db: Session, *, include_inactive: bool = False) -> list[Segment]:
    stmt = select(Segment).order_by(Segment.id.desc())
    if not include_inactive:
        stmt = stmt.where(Segment.is_active.is_(True))
    return list(db.scalars(stmt))


def update_segment(
    db: Session,
    segment_id: int,
    payload: SegmentUpdate,
    *,
    catalog: FieldCatalog | None = None,
) -> Segment:
    segment = get_segment(db, segment_id)
    if payload.rule_tree is not None:
        result, normalized = _compile_request_tree(payload.rule_tree, catalog or get_catalog())
        segment.rule_tree = normalized
        _refresh_audience(db, segment, result)
    if payload.name is not None:
        segment.name = payload.name.strip()
    if payload.description is not None:
        segment.description = payload.description
    if payload.natural_language_query is not None:
        segment.natural_language_query = payload.natural_language_query
    if payload.tags is not None:
        segment.tags = payload.tags
    db.commit()
    db.refresh(segment)
    return segment


def deactivate_segment(db: Session, segment_id: int) -> Segment:
    segment = get_segment(db, segment_id)
    segment.is_active = False
    db.commit()
    db.refresh(segment)
    return segment


def compile_segment(segment: Segment, catalog: FieldCatalog | None = None) -> CompileResult:
    return compile_persisted_tree(segment.rule_tree, catalog or get_catalog())


def select_segment_customer_ids(
    db: Session,
    segment: Segment,
    *,
    catalog: FieldCatalog | None = None,
) -> list[int]:
    result = compile_segment(segment, catalog)
    return segment_evaluator.select(result.predicate, iter_population(db))


def list_segment_customers(
    db: Session,
    segment_id: int,
    *,
    limit: int = 50,
    offset: int = 0,
    sort_key: str | None = None,
    descending: bool = False,
    catalog: FieldCatalog | None = None,
) -> SegmentCustomersPage:
    catalog = catalog or get_catalog()
    if sort_key and sort_key not in catalog:
        raise ValueError(f"정렬할 수 없는 필드입니다: {sort_key}")
    segment = get_segment(db, segment_id)
    result = compile_segment(segment, catalog)
    matches = segment_evaluator.select_records(result.predicate, iter_population(db))
    page = segment_evaluator.select_records(
        lambda record: True,
        matches,
        limit=limit,
        offset=offset,
        sort_key=sort_key,
        descending=descending,
    )
    return SegmentCustomersPage(
        segment_id=segment.id,
        total=len(matches),
        limit=limit,
        offset=offset,
        items=[to_customer_brief(record) for record in page],
    )


def refresh_segment_audiences(
    db: Session,
    segment_ids: Iterable[int] | None = None,
    *,
    catalog: FieldCatalog | None = None,
) -> dict[str, int]:
    """활성 세그먼트의 audience_size를 다시 계산한다. 컴파일 불가 세그먼트는 건너뛰고 기록한다."""
    catalog = catalog or get_catalog()
    stmt = select(Segment).where(Segment.is_active.is_(True)).order_by(Segment.id)
    if segment_ids is not None:
        stmt = stmt.where(Segment.id.in_(list(segment_ids)))
    segments = list(db.scalars(stmt))
    if not segments:
        return {"refreshed": 0, "failed": 0}

    population = list(iter_population(db))
    refreshed = 0
    failed = 0
    for segment in segments:
        try:
            result = compile_segment(segment, catalog)
        except SegmentCompilationError as exc:
            failed += 1
            logger.error(
                "세그먼트 규칙 컴파일 실패 (id=%s): %s",
                segment.id,
                "; ".join(f"{e.path}: {e.message}" for e in exc.errors),
            )
            continue
        segment.audience_size = segment_evaluator.count(result.predicate, population)
        segment.last_calculated_at = datetime.now(timezone.utc)
        refreshed += 1
    db.commit()
    return {"refreshed": refreshed, "failed": failed}
