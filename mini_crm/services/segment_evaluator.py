from __future__ import annotations

import threading
from dataclasses import dataclass, field
from itertools import islice
from typing import Any, Iterable, Iterator, Optional

from mini_crm.core.config import settings
from mini_crm.services.rule_compiler import MISSING, Predicate, read_field

DEFAULT_ID_FIELD = "customer_id"


class EvaluationCancelled(RuntimeError):
    """cancel_event가 설정되어 배치 사이에서 평가를 중단했다."""


class PopulationUnavailableError(RuntimeError):
    """고객 모집단 조회 자체가 실패했다."""


@dataclass
class SegmentPreview:
    audience_size: int
    sample: list[Any] = field(default_factory=list)


def _iter_matches(
    predicate: Predicate,
    population: Iterable[Any],
    cancel_event: Optional[threading.Event],
    batch_size: Optional[int],
) -> Iterator[Any]:
    size = batch_size or settings.segment_eval_batch_size
    iterator = iter(population)
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise EvaluationCancelled("세그먼트 평가가 취소되었습니다.")
        batch = list(islice(iterator, size))
        if not batch:
            return
        for record in batch:
            if predicate(record):
                yield record


def _ordered(
    records: list[Any],
    *,
    id_field: str,
    sort_key: Optional[str],
    descending: bool,
) -> list[Any]:
    for record in records:
        if read_field(record, id_field) in (MISSING, None):
            raise ValueError(f"정렬 기준 id 필드({id_field})가 없는 레코드가 있습니다.")
    # 1차: id 오름차순. 이후 정렬은 stable 하므로 동률은 id 순서를 유지한다.
    ordered = sorted(records, key=lambda record: read_field(record, id_field))
    if not sort_key:
        return ordered
    present = [r for r in ordered if read_field(r, sort_key) not in (MISSING, None)]
    missing = [r for r in ordered if read_field(r, sort_key) in (MISSING, None)]
    present.sort(key=lambda record: read_field(record, sort_key), reverse=descending)
    return present + missing


def count(
    predicate: Predicate,
    population: Iterable[Any],
    *,
    cancel_event: Optional[threading.Event] = None,
    batch_size: Optional[int] = None,
) -> int:
    return sum(1 for _ in _iter_matches(predicate, population, cancel_event, batch_size))


def select_records(
    predicate: Predicate,
    population: Iterable[Any],
    *,
    limit: Optional[int] = None,
    offset: int = 0,
    sort_key: Optional[str] = None,
    descending: bool = False,
    id_field: str = DEFAULT_ID_FIELD,
    cancel_event: Optional[threading.Event] = None,
    batch_size: Optional[int] = None,
) -> list[Any]:
    if offset < 0 or (limit is not None and limit < 0):
        raise ValueError("limit/offset은 0 이상이어야 합니다.")
    matches = list(_iter_matches(predicate, population, cancel_event, batch_size))
    ordered = _ordered(matches, id_field=id_field, sort_key=sort_key, descending=descending)
    end = None if limit is None else offset + limit
    return ordered[offset:end]


def select(
    predicate: Predicate,
    population: Iterable[Any],
    *,
    limit: Optional[int] = None,
    offset: int = 0,
    sort_key: Optional[str] = None,
    descending: bool = False,
    id_field: str = DEFAULT_ID_FIELD,
    cancel_event: Optional[threading.Event] = None,
    batch_size: Optional[int] = None,
) -> list[Any]:
    """조건을 만족하는 고객 id를 (sort_key, id) 순서로 돌려준다."""
    records = select_records(
        predicate,
        population,
        limit=limit,
        offset=offset,
        sort_key=sort_key,
        descending=descending,
        id_field=id_field,
        cancel_event=cancel_event,
        batch_size=batch_size,
    )
    return [read_field(record, id_field) for record in records]


def preview(
    predicate: Predicate,
    population: Iterable[Any],
    *,
    sample_size: Optional[int] = None,
    id_field: str = DEFAULT_ID_FIELD,
    cancel_event: Optional[threading.Event] = None,
    batch_size: Optional[int] = None,
) -> SegmentPreview:
    size = settings.segment_preview_sample_size if sample_size is None else sample_size
    matches = list(_iter_matches(predicate, population, cancel_event, batch_size))
    ordered = _ordered(matches, id_field=id_field, sort_key=None, descending=False)
    return SegmentPreview(audience_size=len(matches), sample=ordered[:size])
