from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TypeVar

import httpx

from mini_crm.core.config import settings

T = TypeVar("T")

logger = logging.getLogger(__name__)

VENDOR_SUCCESS_CODES = {"0000"}
VENDOR_RETRYABLE_CODES = {"5000", "5030"}
VENDOR_RESULT_CODE_MESSAGES = {
    "0000": "접수 성공",
    "1001": "수신자 주소 오류",
    "1002": "수신 거부된 수신자",
    "1003": "본문 오류",
    "1004": "채널 오류",
    "1005": "중복 메시지 ID",
    "4010": "인증 실패",
    "5000": "벤더 시스템 오류",
    "5030": "처리량 제한 초과",
}
MAX_RETRY_ATTEMPTS = 3
BASE_RETRY_DELAY = 0.4


class VendorAPIError(RuntimeError):
    """발송 벤더 API 호출 오류."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool = False,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable
        self.payload = payload or {}


@dataclass
class VendorSubmission:
    vendor_message_id: str
    accepted: bool
    code: Optional[str]
    message: Optional[str]
    submitted_at: datetime
    raw_payload: Dict[str, Any]


def submit_message(
    *,
    vendor_message_id: str,
    channel: str,
    recipient: str | None,
    subject: str | None,
    body: str,
) -> VendorSubmission:
    """
    메시지 1건을 벤더에 접수한다.

    벤더가 거절한 경우(비재시도 코드)는 예외 대신 accepted=False로 돌려준다.
    """
    payload = {
        "messageId": vendor_message_id,
        "channel": channel,
        "to": recipient,
        "subject": subject,
        "body": body,
    }

    def _call() -> VendorSubmission:
        data = _post("messages", payload)
        code = _normalize_code(data.get("resultCode"))
        if code in VENDOR_RETRYABLE_CODES:
            _ensure_success(data, "messages")
        accepted = code in VENDOR_SUCCESS_CODES
        return VendorSubmission(
            vendor_message_id=data.get("messageId") or vendor_message_id,
            accepted=accepted,
            code=code,
            message=None if accepted else _describe(code, data.get("resultMessage")),
            submitted_at=_parse_datetime(data.get("acceptedAt")) or datetime.now(timezone.utc),
            raw_payload=data,
        )

    return _run_with_retry("messages", _call)


def get_message_status(vendor_message_id: str) -> Dict[str, Any]:
    """벤더에 저장된 메시지 상태를 조회한다 (웹훅 누락 점검용)."""

    def _call() -> Dict[str, Any]:
        data = _get(f"messages/{vendor_message_id}")
        _ensure_success(data, "messages/status")
        return data

    return _run_with_retry("messages/status", _call)


# --------------------------------------------------------------------------- #
# Internal helpers

def _is_mock() -> bool:
    return settings.vendor_mock_mode or not settings.vendor_base_url


def _headers() -> Dict[str, str]:
    if not settings.vendor_api_key:
        raise VendorAPIError("VENDOR_API_KEY 환경 변수가 설정되지 않았습니다.")
    return {"Authorization": f"Bearer {settings.vendor_api_key}"}


def _url(endpoint: str) -> str:
    return f"{settings.vendor_base_url.rstrip('/')}/v1/{endpoint}"


def _post(endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    if _is_mock():
        return _mock_submit(payload)
    try:
        with httpx.Client(timeout=settings.vendor_timeout) as client:
            response = client.post(_url(endpoint), json=payload, headers=_headers())
    except httpx.HTTPError as exc:  # 네트워크/타임아웃 오류
        raise VendorAPIError(f"벤더 API 호출 실패: {exc}", retryable=True) from exc
    return _decode(response)


def _get(endpoint: str) -> Dict[str, Any]:
    if _is_mock():
        return {"resultCode": "0000", "messageId": endpoint.rsplit("/", 1)[-1], "status": "sent"}
    try:
        with httpx.Client(timeout=settings.vendor_timeout) as client:
            response = client.get(_url(endpoint), headers=_headers())
    except httpx.HTTPError as exc:
        raise VendorAPIError(f"벤더 API 호출 실패: {exc}", retryable=True) from exc
    return _decode(response)


def _decode(response: httpx.Response) -> Dict[str, Any]:
    if response.status_code >= 500 or response.status_code == 429:
        raise VendorAPIError(f"벤더 API HTTP 오류: {response.status_code}", retryable=True)
    try:
        data = response.json()
    except ValueError as exc:
        raise VendorAPIError("벤더 응답이 JSON 형식이 아닙니다.") from exc
    if response.status_code >= 400 and not data.get("resultCode"):
        raise VendorAPIError(f"벤더 API HTTP 오류: {response.status_code}", payload=data)
    return data


def _mock_submit(payload: Dict[str, Any]) -> Dict[str, Any]:
    now = datetime.now(timezone.utc).isoformat()
    if not payload.get("to"):
        return {
            "resultCode": "1001",
            "resultMessage": VENDOR_RESULT_CODE_MESSAGES["1001"],
            "messageId": payload["messageId"],
        }
    if payload.get("channel") not in ("email", "sms"):
        return {
            "resultCode": "1004",
            "resultMessage": VENDOR_RESULT_CODE_MESSAGES["1004"],
            "messageId": payload["messageId"],
        }
    return {"resultCode": "0000", "messageId": payload["messageId"], "acceptedAt": now}


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _normalize_code(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _describe(code: Optional[str], message: Optional[str]) -> str:
    return message or VENDOR_RESULT_CODE_MESSAGES.get(code or "") or "Unknown error"


def _ensure_success(data: Dict[str, Any], endpoint: str) -> None:
    code = _normalize_code(data.get("resultCode"))
    if code and code not in VENDOR_SUCCESS_CODES:
        raise VendorAPIError(
            f"{endpoint} 실패({code}): {_describe(code, data.get('resultMessage'))}",
            code=code,
            retryable=code in VENDOR_RETRYABLE_CODES,
            payload=data,
        )


def _run_with_retry(operation: str, func: Callable[[], T]) -> T:
    attempt = 1
    while True:
        try:
            return func()
        except VendorAPIError as exc:
            if not exc.retryable or attempt >= MAX_RETRY_ATTEMPTS or _is_mock():
                raise
            delay = min(BASE_RETRY_DELAY * (2 ** (attempt - 1)), 2.0)
            logger.warning("%s 재시도 %s회차 (%.1fs 후): %s", operation, attempt, delay, exc)
            time.sleep(delay)
            attempt += 1
