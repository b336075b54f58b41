from __future__ import annotations

from fastapi import HTTPException, status

from mini_crm.services.field_catalog import FieldCatalog, get_catalog
from mini_crm.services.rule_compiler import SegmentCompilationError
from mini_crm.services.segment_evaluator import PopulationUnavailableError


def field_catalog() -> FieldCatalog:
    return get_catalog()


def compilation_conflict(exc: SegmentCompilationError) -> HTTPException:
    """저장된 세그먼트가 현재 필드 카탈로그로 컴파일되지 않을 때 (409)."""
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "message": str(exc),
            "errors": [
                {"code": e.code.value, "message": e.message, "path": e.path, "rule_id": e.rule_id}
                for e in exc.errors
            ],
        },
    )


def population_unavailable(exc: PopulationUnavailableError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
