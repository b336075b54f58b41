from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_validator,
    model_validator,
)


class Rule(BaseModel):
    """리프 조건. operator는 컴파일 단계에서 카탈로그 기준으로 검증한다."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    field: str = Field(..., min_length=1)
    operator: str = Field(..., min_length=1)
    value: Any = None
    type: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_keys(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" not in data and "dataType" in data:
            data = {**data, "type": data["dataType"]}
        return data


class RuleGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    logic: Literal["AND", "OR"] = "AND"
    children: tuple[RuleNode, ...]

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_shape(cls, data: Any) -> Any:
        # 예전 Segment 문서 형태: {logic, rules: [...], groups: [...]}
        if isinstance(data, dict) and "children" not in data and (
            "rules" in data or "groups" in data
        ):
            children = list(data.get("rules") or []) + list(data.get("groups") or [])
            data = {key: value for key, value in data.items() if key not in ("rules", "groups")}
            data["children"] = children
        return data

    @field_validator("logic", mode="before")
    @classmethod
    def _upper_logic(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


def _node_kind(value: Any) -> str | None:
    if isinstance(value, RuleGroup):
        return "group"
    if isinstance(value, Rule):
        return "rule"
    if isinstance(value, dict):
        if any(key in value for key in ("children", "logic", "rules", "groups")):
            return "group"
        return "rule"
    return None


RuleNode = Annotated[
    Union[Annotated[Rule, Tag("rule")], Annotated[RuleGroup, Tag("group")]],
    Discriminator(_node_kind),
]

RuleGroup.model_rebuild()

RuleTreeAdapter: TypeAdapter[RuleGroup] = TypeAdapter(RuleGroup)


def parse_rule_tree(payload: Any) -> RuleGroup:
    """
    dict/list 페이로드를 RuleGroup으로 변환한다.

    최상위가 list이면 예전 ruleGroups 배열로 보고 AND로 묶는다.
    형식 오류는 pydantic.ValidationError로 올라간다.
    """
    if isinstance(payload, RuleGroup):
        return payload
    if isinstance(payload, list):
        payload = {"logic": "AND", "children": payload}
    return RuleTreeAdapter.validate_python(payload)
