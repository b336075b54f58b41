from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from mini_crm.api import deps
from mini_crm.db.session import get_db
from mini_crm.schemas.campaigns import (
    CampaignAnalytics,
    CampaignCreate,
    CampaignLaunchSummary,
    CampaignRead,
    DispatchSummary,
)
from mini_crm.services import campaign_service
from mini_crm.services.campaign_service import CampaignNotFoundError
from mini_crm.services.dispatch_service import dispatch_campaign_messages
from mini_crm.services.rule_compiler import SegmentCompilationError
from mini_crm.services.segment_evaluator import PopulationUnavailableError

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


@router.post("", response_model=CampaignRead, status_code=status.HTTP_201_CREATED)
def create_campaign_endpoint(payload: CampaignCreate, db: Session = Depends(get_db)):
    try:
        campaign = campaign_service.create_campaign(db, payload)
        return CampaignRead.model_validate(campaign)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/{campaign_id}", response_model=CampaignRead)
def get_campaign_endpoint(campaign_id: int, db: Session = Depends(get_db)):
    try:
        return CampaignRead.model_validate(campaign_service.get_campaign(db, campaign_id))
    except CampaignNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/{campaign_id}/launch", response_model=CampaignLaunchSummary)
def launch_campaign(campaign_id: int, db: Session = Depends(get_db)):
    """
    세그먼트를 평가해 수신자별 메시지를 queued 상태로 적재한다.
    """
    try:
        return campaign_service.launch_campaign(db, campaign_id)
    except CampaignNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SegmentCompilationError as exc:
        raise deps.compilation_conflict(exc) from exc
    except PopulationUnavailableError as exc:
        raise deps.population_unavailable(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/{campaign_id}/dispatch", response_model=DispatchSummary)
def dispatch_campaign(
    campaign_id: int,
    limit: int | None = Query(default=None, ge=1, le=10000),
    db: Session = Depends(get_db),
):
    """
    queued 메시지를 발송 벤더에 접수한다. 접수/거절 결과는 sent/failed로 반영된다.
    """
    try:
        return dispatch_campaign_messages(db, campaign_id, limit=limit)
    except CampaignNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/{campaign_id}/summary", response_model=CampaignAnalytics)
def campaign_summary(campaign_id: int, db: Session = Depends(get_db)):
    try:
        return campaign_service.get_campaign_analytics(db, campaign_id)
    except CampaignNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
