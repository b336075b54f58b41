from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from mini_crm.api import deps
from mini_crm.db.session import get_db
from mini_crm.schemas.segments import (
    FieldDescriptorRead,
    SegmentCreate,
    SegmentCustomersPage,
    SegmentFromTextRequest,
    SegmentFromTextResponse,
    SegmentPreviewRequest,
    SegmentPreviewResponse,
    SegmentRead,
    SegmentUpdate,
)
from mini_crm.services import segment_service
from mini_crm.services.ai_rule_service import natural_language_to_rule_tree
from mini_crm.services.field_catalog import FieldCatalog
from mini_crm.services.rule_compiler import SegmentCompilationError
from mini_crm.services.segment_evaluator import PopulationUnavailableError
from mini_crm.services.segment_service import SegmentNotFoundError, SegmentRuleError

router = APIRouter(prefix="/segments", tags=["segments"])


def _rule_error(exc: SegmentRuleError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"message": str(exc), "errors": [error.model_dump() for error in exc.errors]},
    )


@router.get("/fields", response_model=list[FieldDescriptorRead])
def get_fields(catalog: FieldCatalog = Depends(deps.field_catalog)):
    """
    RuleBuilder 화면에서 사용할 필드/연산자 목록.
    """
    return segment_service.list_field_options(catalog)


@router.post("/preview", response_model=SegmentPreviewResponse)
def preview_segment(
    payload: SegmentPreviewRequest,
    db: Session = Depends(get_db),
    catalog: FieldCatalog = Depends(deps.field_catalog),
):
    """
    규칙 트리를 저장하지 않고 검증 + 대상 수 + 샘플 고객을 돌려준다.
    검증 실패는 200 + valid=false + errors로 응답한다.
    """
    try:
        return segment_service.preview_segment(
            db, payload.rule_tree, sample_size=payload.sample_size, catalog=catalog
        )
    except PopulationUnavailableError as exc:
        raise deps.population_unavailable(exc) from exc


@router.post("/from-text", response_model=SegmentFromTextResponse)
def segment_from_text(
    payload: SegmentFromTextRequest,
    catalog: FieldCatalog = Depends(deps.field_catalog),
):
    try:
        return natural_language_to_rule_tree(payload.text, catalog=catalog)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("", response_model=SegmentRead, status_code=status.HTTP_201_CREATED)
def create_segment(
    payload: SegmentCreate,
    db: Session = Depends(get_db),
    catalog: FieldCatalog = Depends(deps.field_catalog),
):
    try:
        segment = segment_service.create_segment(db, payload, catalog=catalog)
        return SegmentRead.model_validate(segment)
    except SegmentRuleError as exc:
        raise _rule_error(exc) from exc
    except PopulationUnavailableError as exc:
        raise deps.population_unavailable(exc) from exc


@router.get("", response_model=list[SegmentRead])
def list_segments(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    segments = segment_service.list_segments(db, include_inactive=include_inactive)
    return [SegmentRead.model_validate(segment) for segment in segments]


@router.get("/{segment_id}", response_model=SegmentRead)
def get_segment(segment_id: int, db: Session = Depends(get_db)):
    try:
        return SegmentRead.model_validate(segment_service.get_segment(db, segment_id))
    except SegmentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.put("/{segment_id}", response_model=SegmentRead)
def update_segment(
    segment_id: int,
    payload: SegmentUpdate,
    db: Session = Depends(get_db),
    catalog: FieldCatalog = Depends(deps.field_catalog),
):
    try:
        segment = segment_service.update_segment(db, segment_id, payload, catalog=catalog)
        return SegmentRead.model_validate(segment)
    except SegmentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SegmentRuleError as exc:
        raise _rule_error(exc) from exc
    except PopulationUnavailableError as exc:
        raise deps.population_unavailable(exc) from exc


@router.delete("/{segment_id}", response_model=SegmentRead)
def delete_segment(segment_id: int, db: Session = Depends(get_db)):
    """
    세그먼트는 캠페인이 참조하므로 삭제하지 않고 비활성화한다.
    """
    try:
        return SegmentRead.model_validate(segment_service.deactivate_segment(db, segment_id))
    except SegmentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/{segment_id}/customers", response_model=SegmentCustomersPage)
def get_segment_customers(
    segment_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    sort_key: str | None = Query(default=None),
    descending: bool = Query(default=False),
    db: Session = Depends(get_db),
    catalog: FieldCatalog = Depends(deps.field_catalog),
):
    try:
        return segment_service.list_segment_customers(
            db,
            segment_id,
            limit=limit,
            offset=offset,
            sort_key=sort_key,
            descending=descending,
            catalog=catalog,
        )
    except SegmentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SegmentCompilationError as exc:
        raise deps.compilation_conflict(exc) from exc
    except PopulationUnavailableError as exc:
        raise deps.population_unavailable(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
