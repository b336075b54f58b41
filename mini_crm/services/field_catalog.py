from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Iterable, Iterator, Optional


class SemanticType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    ENUM = "enum"


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    GREATER_OR_EQUAL = "greaterOrEqual"
    LESS_OR_EQUAL = "lessOrEqual"
    IN = "in"
    NOT_IN = "notIn"
    IS_EMPTY = "isEmpty"
    IS_NOT_EMPTY = "isNotEmpty"


OPERATOR_LABELS: dict[Operator, str] = {
    Operator.EQUALS: "equals",
    Operator.NOT_EQUALS: "does not equal",
    Operator.CONTAINS: "contains",
    Operator.NOT_CONTAINS: "does not contain",
    Operator.GREATER_THAN: "is greater than",
    Operator.LESS_THAN: "is less than",
    Operator.GREATER_OR_EQUAL: "is at least",
    Operator.LESS_OR_EQUAL: "is at most",
    Operator.IN: "is one of",
    Operator.NOT_IN: "is not one of",
    Operator.IS_EMPTY: "is empty",
    Operator.IS_NOT_EMPTY: "is not empty",
}

# 기존 RuleBuilder UI가 보내던 기호 연산자 표기.
LEGACY_OPERATOR_ALIASES: dict[str, Operator] = {
    "=": Operator.EQUALS,
    "==": Operator.EQUALS,
    "!=": Operator.NOT_EQUALS,
    ">": Operator.GREATER_THAN,
    "<": Operator.LESS_THAN,
    ">=": Operator.GREATER_OR_EQUAL,
    "<=": Operator.LESS_OR_EQUAL,
    "not_contains": Operator.NOT_CONTAINS,
    "not_in": Operator.NOT_IN,
    "is_empty": Operator.IS_EMPTY,
    "is_not_empty": Operator.IS_NOT_EMPTY,
}

VALUELESS_OPERATORS = frozenset({Operator.IS_EMPTY, Operator.IS_NOT_EMPTY})
SET_OPERATORS = frozenset({Operator.IN, Operator.NOT_IN})
ORDERING_OPERATORS = frozenset(
    {
        Operator.GREATER_THAN,
        Operator.LESS_THAN,
        Operator.GREATER_OR_EQUAL,
        Operator.LESS_OR_EQUAL,
    }
)

_PRESENCE = {Operator.IS_EMPTY, Operator.IS_NOT_EMPTY}
_EQUALITY = {Operator.EQUALS, Operator.NOT_EQUALS}

OPERATORS_BY_TYPE: dict[SemanticType, frozenset[Operator]] = {
    SemanticType.STRING: frozenset(
        _EQUALITY | SET_OPERATORS | _PRESENCE | {Operator.CONTAINS, Operator.NOT_CONTAINS}
    ),
    SemanticType.NUMBER: frozenset(_EQUALITY | ORDERING_OPERATORS | SET_OPERATORS | _PRESENCE),
    SemanticType.DATE: frozenset(_EQUALITY | ORDERING_OPERATORS | _PRESENCE),
    SemanticType.BOOLEAN: frozenset(_EQUALITY | _PRESENCE),
    SemanticType.ENUM: frozenset(_EQUALITY | SET_OPERATORS | _PRESENCE),
}


def normalize_operator(raw: str | Operator) -> Optional[Operator]:
    """UI/AI가 보낸 연산자 문자열을 표준 Operator로 변환한다. 모르면 None."""
    if isinstance(raw, Operator):
        return raw
    text = str(raw).strip()
    try:
        return Operator(text)
    except ValueError:
        return LEGACY_OPERATOR_ALIASES.get(text)


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    semantic_type: SemanticType
    label: str = ""
    allowed_operators: frozenset[Operator] = field(default_factory=frozenset)
    options: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        allowed = self.allowed_operators or OPERATORS_BY_TYPE[self.semantic_type]
        if not allowed <= OPERATORS_BY_TYPE[self.semantic_type]:
            raise ValueError(f"{self.name}: {self.semantic_type.value} 타입에 허용되지 않는 연산자가 있습니다.")
        object.__setattr__(self, "allowed_operators", frozenset(allowed))
        if not self.label:
            object.__setattr__(self, "label", self.name)

    def allows(self, operator: Operator) -> bool:
        return operator in self.allowed_operators


class FieldCatalog:
    """조회 가능한 고객 속성 목록. 프로세스 시작 시 한 번 만들어 공유한다."""

    def __init__(self, descriptors: Iterable[FieldDescriptor]) -> None:
        self._fields: dict[str, FieldDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self._fields:
                raise ValueError(f"중복된 필드 정의입니다: {descriptor.name}")
            self._fields[descriptor.name] = descriptor

    def get(self, name: str) -> Optional[FieldDescriptor]:
        return self._fields.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._fields

    def __iter__(self) -> Iterator[FieldDescriptor]:
        return iter(self._fields.values())

    def __len__(self) -> int:
        return len(self._fields)


def default_catalog() -> FieldCatalog:
    return FieldCatalog(
        [
            FieldDescriptor("customer_key", SemanticType.STRING, "Customer Key"),
            FieldDescriptor("name", SemanticType.STRING, "Name"),
            FieldDescriptor("email", SemanticType.STRING, "Email"),
            FieldDescriptor("phone", SemanticType.STRING, "Phone"),
            FieldDescriptor("city", SemanticType.STRING, "City"),
            FieldDescriptor("preferred_category", SemanticType.STRING, "Preferred Category"),
            FieldDescriptor("total_spending", SemanticType.NUMBER, "Total Spending"),
            FieldDescriptor("total_visits", SemanticType.NUMBER, "Total Visits"),
            FieldDescriptor("order_count", SemanticType.NUMBER, "Number of Orders"),
            FieldDescriptor("average_order_value", SemanticType.NUMBER, "Average Order Value"),
            FieldDescriptor("days_since_last_visit", SemanticType.NUMBER, "Days Since Last Visit"),
            FieldDescriptor("days_since_last_order", SemanticType.NUMBER, "Days Since Last Order"),
            FieldDescriptor("last_visit_at", SemanticType.DATE, "Last Visit"),
            FieldDescriptor("last_order_at", SemanticType.DATE, "Last Order"),
            FieldDescriptor("registered_at", SemanticType.DATE, "Registration Date"),
            FieldDescriptor("is_active", SemanticType.BOOLEAN, "Active"),
            FieldDescriptor(
                "churn_risk",
                SemanticType.ENUM,
                "Churn Risk",
                options=("low", "medium", "high"),
            ),
            FieldDescriptor(
                "preferred_channel",
                SemanticType.ENUM,
                "Preferred Channel",
                options=("email", "sms", "both"),
            ),
        ]
    )


@lru_cache(maxsize=1)
def get_catalog() -> FieldCatalog:
    return default_catalog()
