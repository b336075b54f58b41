from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from mini_crm.db.session import get_db
from mini_crm.schemas.receipts import (
    DeliveryReceiptBatch,
    DeliveryReceiptIn,
    MessageDeliveryRead,
    ReceiptBatchResponse,
    ReceiptOutcomeRead,
)
from mini_crm.services import delivery_receipt_service
from mini_crm.services.delivery_receipt_service import ReceiptNotFoundError

router = APIRouter(prefix="/delivery-receipts", tags=["delivery-receipts"])


@router.post("", response_model=ReceiptOutcomeRead)
def receive_receipt(payload: DeliveryReceiptIn, db: Session = Depends(get_db)):
    """
    벤더 웹훅 1건. 중복/역순 receipt도 200으로 응답하고 outcome으로 구분한다.
    """
    try:
        return delivery_receipt_service.process_receipt(db, payload)
    except ReceiptNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/batch", response_model=ReceiptBatchResponse)
def receive_receipt_batch(payload: DeliveryReceiptBatch, db: Session = Depends(get_db)):
    """
    벤더 웹훅 배치. 건별 결과를 요청 순서대로 돌려주며 일부 실패가 전체를 막지 않는다.
    """
    try:
        return delivery_receipt_service.process_receipt_batch(db, payload.receipts)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/{vendor_message_id}", response_model=MessageDeliveryRead)
def get_delivery_status(vendor_message_id: str, db: Session = Depends(get_db)):
    try:
        return delivery_receipt_service.get_message_delivery(db, vendor_message_id)
    except ReceiptNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
