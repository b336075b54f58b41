"""
자연어 → 세그먼트 RuleTree 변환.

AI 결과는 신뢰하지 않는다. 어떤 경로로 만든 트리든 compile_rule_tree로 다시 검증해서 돌려준다.
AI 엔드포인트가 설정되지 않았거나 호출이 실패하면 키워드 기반 fallback 트리를 만든다.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from mini_crm.core.config import settings
from mini_crm.schemas.segments import SegmentFromTextResponse
from mini_crm.services.field_catalog import FieldCatalog, get_catalog
from mini_crm.services.rule_compiler import compile_rule_tree
from mini_crm.services.segment_service import to_error_read

logger = logging.getLogger(__name__)

AI_CONFIDENCE = 0.8
FALLBACK_CONFIDENCE = 0.3

_FENCE = re.compile(r"```(?:json)?\s*|\s*```")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class RuleTranslationError(RuntimeError):
    """AI 변환 호출 또는 응답 해석 실패."""


@dataclass
class RuleTranslation:
    rule_tree: Any
    description: str
    confidence: float
    source: str
    explanation: Optional[str] = None


def _field_guide(catalog: FieldCatalog) -> str:
    lines = []
    for descriptor in catalog:
        operators = ", ".join(sorted(op.value for op in descriptor.allowed_operators))
        options = f" options={list(descriptor.options)}" if descriptor.options else ""
        lines.append(f"- {descriptor.name} ({descriptor.semantic_type.value}){options}: {operators}")
    return "\n".join(lines)


def _build_prompt(text: str, catalog: FieldCatalog) -> str:
    today = datetime.now(timezone.utc).date().isoformat()
    return (
        "Convert the customer segment description into a rule tree.\n\n"
        f"Today is {today}. Dates must be ISO-8601.\n"
        "Available fields and operators:\n"
        f"{_field_guide(catalog)}\n\n"
        "Return only JSON of the form:\n"
        '{"rule_tree": {"logic": "AND", "children": [{"field": "...", "operator": "...", '
        '"value": ..., "type": "..."}]}, "description": "..."}\n'
        "Groups may be nested with their own logic and children.\n\n"
        f'Description: "{text}"'
    )


def _parse_content(content: str) -> Dict[str, Any]:
    cleaned = _FENCE.sub("", content.strip())
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(cleaned)
        if not match:
            raise RuleTranslationError("AI 응답을 JSON으로 해석할 수 없습니다.")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise RuleTranslationError("AI 응답을 JSON으로 해석할 수 없습니다.") from exc
    if not isinstance(parsed, dict) or "rule_tree" not in parsed:
        raise RuleTranslationError("AI 응답에 rule_tree가 없습니다.")
    return parsed


def translate_with_ai(text: str, catalog: FieldCatalog) -> RuleTranslation:
    if not settings.ai_rules_base_url:
        raise RuleTranslationError("AI_RULES_BASE_URL 환경 변수가 설정되지 않았습니다.")
    headers = {}
    if settings.ai_rules_api_key:
        headers["Authorization"] = f"Bearer {settings.ai_rules_api_key}"
    payload = {
        "model": settings.ai_rules_model,
        "temperature": 0.1,
        "messages": [
            {
                "role": "system",
                "content": "You convert marketing audience descriptions into segment rule trees. "
                "Always return valid JSON.",
            },
            {"role": "user", "content": _build_prompt(text, catalog)},
        ],
    }
    url = f"{settings.ai_rules_base_url.rstrip('/')}/chat/completions"
    try:
        with httpx.Client(timeout=settings.ai_rules_timeout) as client:
            response = client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            body = response.json()
    except httpx.HTTPError as exc:
        raise RuleTranslationError(f"AI 변환 호출 실패: {exc}") from exc
    except ValueError as exc:
        raise RuleTranslationError("AI 응답이 JSON 형식이 아닙니다.") from exc

    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise RuleTranslationError("AI 응답 형식이 올바르지 않습니다.") from exc

    parsed = _parse_content(content)
    return RuleTranslation(
        rule_tree=parsed["rule_tree"],
        description=str(parsed.get("description") or ""),
        confidence=AI_CONFIDENCE,
        source="ai",
    )


def _rule(field: str, operator: str, value: Any, type_: str) -> Dict[str, Any]:
    return {"field": field, "operator": operator, "value": value, "type": type_}


def fallback_rule_tree(text: str, *, now: datetime | None = None) -> RuleTranslation:
    """키워드 매칭으로 만든 낮은 신뢰도의 트리. 매칭된 키워드는 모두 AND로 묶는다."""
    now = now or datetime.now(timezone.utc)
    lowered = text.lower()
    recent_since = (now - timedelta(days=30)).isoformat()
    keyword_rules = [
        ("high value", _rule("total_spending", "greaterOrEqual", 1000, "number")),
        ("recent", _rule("registered_at", "greaterOrEqual", recent_since, "date")),
        ("inactive", _rule("is_active", "equals", False, "boolean")),
        ("email subscribers", _rule("preferred_channel", "in", ["email", "both"], "array")),
        ("sms subscribers", _rule("preferred_channel", "in", ["sms", "both"], "array")),
        ("churn", _rule("churn_risk", "equals", "high", "enum")),
    ]
    matched: List[str] = []
    children: List[Dict[str, Any]] = []
    for keyword, rule in keyword_rules:
        if keyword in lowered:
            matched.append(keyword)
            children.append(rule)
    if "inactive" not in matched and re.search(r"\bactive\b", lowered):
        matched.append("active")
        children.append(_rule("is_active", "equals", True, "boolean"))

    if not children:
        return RuleTranslation(
            rule_tree={"logic": "AND", "children": [_rule("is_active", "equals", True, "boolean")]},
            description="Default fallback: active customers",
            confidence=FALLBACK_CONFIDENCE,
            source="fallback",
        )
    return RuleTranslation(
        rule_tree={"logic": "AND", "children": children},
        description=f"Fallback rule for: {', '.join(matched)}",
        confidence=FALLBACK_CONFIDENCE,
        source="fallback",
    )


def natural_language_to_rule_tree(
    text: str,
    *,
    catalog: FieldCatalog | None = None,
) -> SegmentFromTextResponse:
    catalog = catalog or get_catalog()
    text = text.strip()
    if not text:
        raise ValueError("변환할 문장이 비어 있습니다.")

    if settings.ai_rules_base_url:
        try:
            translation = translate_with_ai(text, catalog)
        except RuleTranslationError as exc:
            logger.warning("AI 규칙 변환 실패, fallback 사용: %s", exc)
            translation = fallback_rule_tree(text)
            translation.explanation = str(exc)
    else:
        translation = fallback_rule_tree(text)
        translation.explanation = "AI 변환이 설정되지 않아 키워드 규칙을 사용했습니다."

    result = compile_rule_tree(translation.rule_tree, catalog)
    return SegmentFromTextResponse(
        rule_tree=translation.rule_tree,
        valid=result.ok,
        description=result.description if result.ok else translation.description,
        confidence=translation.confidence if result.ok else 0.0,
        explanation=translation.explanation or translation.description or None,
        source=translation.source,
        errors=[to_error_read(error) for error in result.errors],
    )
