"""
세그먼트 RuleTree → Predicate 컴파일러.

- 트리를 한 번만 순회하면서 모든 리프를 FieldCatalog 기준으로 검증한다.
- 오류는 첫 번째에서 멈추지 않고 전부 모아서 돌려준다 (예외 X).
- 검증을 통과한 트리만 Predicate로 만들며, 평가 시점에는 타입을 다시 확인하지 않는다.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Sequence

from pydantic import ValidationError

from mini_crm.core.config import settings
from mini_crm.schemas.rules import Rule, RuleGroup, parse_rule_tree
from mini_crm.services.field_catalog import (
    OPERATOR_LABELS,
    SET_OPERATORS,
    VALUELESS_OPERATORS,
    FieldCatalog,
    FieldDescriptor,
    Operator,
    SemanticType,
    normalize_operator,
)

Predicate = Callable[[Any], bool]

MISSING = object()


class ValidationErrorCode(str, Enum):
    UNKNOWN_FIELD = "UNKNOWN_FIELD"
    OPERATOR_NOT_ALLOWED = "OPERATOR_NOT_ALLOWED"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    MALFORMED_TREE = "MALFORMED_TREE"


@dataclass(frozen=True)
class RuleValidationError:
    code: ValidationErrorCode
    message: str
    path: str
    rule_id: str | None = None


class EmptyGroupMode(str, Enum):
    MATCH_ALL = "match_all"
    MATCH_NONE = "match_none"
    IDENTITY = "identity"


@dataclass(frozen=True)
class EmptyGroupPolicy:
    """
    자식이 없는 그룹을 상수로 바꾸는 규칙.

    identity는 불 대수 항등원을 따른다: AND → 참, OR → 거짓.
    """

    root: EmptyGroupMode = EmptyGroupMode.MATCH_ALL
    nested: EmptyGroupMode = EmptyGroupMode.IDENTITY

    def constant_for(self, logic: str, *, is_root: bool) -> bool:
        mode = self.root if is_root else self.nested
        if mode is EmptyGroupMode.MATCH_ALL:
            return True
        if mode is EmptyGroupMode.MATCH_NONE:
            return False
        return logic == "AND"


def default_policy() -> EmptyGroupPolicy:
    return EmptyGroupPolicy(root=EmptyGroupMode(settings.segment_empty_root_policy))


@dataclass(frozen=True)
class CompileResult:
    predicate: Optional[Predicate]
    description: str
    errors: tuple[RuleValidationError, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors


class SegmentCompilationError(RuntimeError):
    """저장된(이전에 유효했던) 트리가 더 이상 컴파일되지 않을 때."""

    def __init__(self, message: str, errors: Sequence[RuleValidationError]) -> None:
        super().__init__(message)
        self.errors = tuple(errors)


# --------------------------------------------------------------------------- #
# 값 변환


class _Uncoercible(ValueError):
    pass


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        raise _Uncoercible("boolean is not a number")
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(Decimal(value.strip()))
        except (InvalidOperation, ValueError) as exc:
            raise _Uncoercible(f"{value!r} is not a number") from exc
    raise _Uncoercible(f"{type(value).__name__} is not a number")


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as exc:
            raise _Uncoercible(f"{value!r} is not an ISO-8601 date") from exc
    else:
        raise _Uncoercible(f"{type(value).__name__} is not a date")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _as_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise _Uncoercible(f"{value!r} is not a boolean")


def _as_string(value: Any) -> str:
    if isinstance(value, bool) or value is None:
        raise _Uncoercible(f"{value!r} is not a string")
    if isinstance(value, (str, int, float, Decimal)):
        return str(value)
    raise _Uncoercible(f"{type(value).__name__} is not a string")


def _scalar_coercer(descriptor: FieldDescriptor) -> Callable[[Any], Any]:
    semantic_type = descriptor.semantic_type
    if semantic_type is SemanticType.NUMBER:
        return _as_number
    if semantic_type is SemanticType.DATE:
        return _as_datetime
    if semantic_type is SemanticType.BOOLEAN:
        return _as_boolean
    if semantic_type is SemanticType.ENUM:

        def _as_option(value: Any) -> str:
            text = _as_string(value)
            if descriptor.options and text not in descriptor.options:
                raise _Uncoercible(f"{text!r} is not one of {list(descriptor.options)}")
            return text

        return _as_option
    return _as_string


def coerce_operand(descriptor: FieldDescriptor, operator: Operator, value: Any) -> Any:
    """규칙 리터럴을 필드 타입으로 변환한다. 실패하면 _Uncoercible."""
    if operator in VALUELESS_OPERATORS:
        return None
    coerce = _scalar_coercer(descriptor)
    if operator in SET_OPERATORS:
        if isinstance(value, str):
            items: Iterable[Any] = [part.strip() for part in value.split(",") if part.strip()]
        elif isinstance(value, (list, tuple, set, frozenset)):
            items = value
        else:
            raise _Uncoercible("set operators need an array value")
        return frozenset(coerce(item) for item in items)
    if value is None:
        raise _Uncoercible("value is required")
    operand = coerce(value)
    if operator in (Operator.CONTAINS, Operator.NOT_CONTAINS):
        return str(operand).casefold()
    return operand


def read_field(record: Any, name: str) -> Any:
    """Mapping/ORM 객체 모두에서 (점 표기 포함) 필드 값을 읽는다."""
    current = record
    for part in name.split("."):
        if current is None:
            return MISSING
        if isinstance(current, Mapping):
            current = current.get(part, MISSING)
        else:
            current = getattr(current, part, MISSING)
        if current is MISSING:
            return MISSING
    return current


def _is_empty(value: Any) -> bool:
    if value is MISSING or value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) == 0
    return False


# --------------------------------------------------------------------------- #
# 리프 검증 (순서대로 실행, 오류는 모두 수집)


@dataclass(frozen=True)
class _RuleContext:
    rule: Rule
    path: str
    catalog: FieldCatalog

    @property
    def descriptor(self) -> Optional[FieldDescriptor]:
        return self.catalog.get(self.rule.field)

    @property
    def operator(self) -> Optional[Operator]:
        return normalize_operator(self.rule.operator)

    def error(self, code: ValidationErrorCode, message: str) -> RuleValidationError:
        return RuleValidationError(code=code, message=message, path=self.path, rule_id=self.rule.id)


RuleValidator = Callable[[_RuleContext], list[RuleValidationError]]


def _validate_field(ctx: _RuleContext) -> list[RuleValidationError]:
    if ctx.descriptor is None:
        return [ctx.error(ValidationErrorCode.UNKNOWN_FIELD, f"알 수 없는 필드입니다: {ctx.rule.field}")]
    return []


def _validate_operator(ctx: _RuleContext) -> list[RuleValidationError]:
    descriptor = ctx.descriptor
    if descriptor is None:
        return []
    operator = ctx.operator
    if operator is None or not descriptor.allows(operator):
        return [
            ctx.error(
                ValidationErrorCode.OPERATOR_NOT_ALLOWED,
                f"{descriptor.name}({descriptor.semantic_type.value}) 필드에 "
                f"'{ctx.rule.operator}' 연산자를 사용할 수 없습니다.",
            )
        ]
    return []


def _validate_declared_type(ctx: _RuleContext) -> list[RuleValidationError]:
    descriptor = ctx.descriptor
    declared = (ctx.rule.type or "").strip().lower()
    if descriptor is None or not declared:
        return []
    if declared == descriptor.semantic_type.value:
        return []
    # 예전 UI는 in/notIn 값에 dataType=array를 붙였다.
    if declared == "array" and ctx.operator in SET_OPERATORS:
        return []
    return [
        ctx.error(
            ValidationErrorCode.TYPE_MISMATCH,
            f"{descriptor.name} 필드는 {descriptor.semantic_type.value} 타입입니다 (요청: {declared}).",
        )
    ]


def _validate_operand(ctx: _RuleContext) -> list[RuleValidationError]:
    descriptor = ctx.descriptor
    operator = ctx.operator
    if descriptor is None or operator is None or not descriptor.allows(operator):
        return []
    try:
        coerce_operand(descriptor, operator, ctx.rule.value)
    except _Uncoercible as exc:
        return [
            ctx.error(
                ValidationErrorCode.TYPE_MISMATCH,
                f"{descriptor.name} 값이 {descriptor.semantic_type.value} 타입과 맞지 않습니다: {exc}",
            )
        ]
    return []


RULE_VALIDATORS: tuple[RuleValidator, ...] = (
    _validate_field,
    _validate_operator,
    _validate_declared_type,
    _validate_operand,
)


def validate_rule(
    rule: Rule,
    catalog: FieldCatalog,
    path: str,
    validators: Sequence[RuleValidator] = RULE_VALIDATORS,
) -> list[RuleValidationError]:
    ctx = _RuleContext(rule=rule, path=path, catalog=catalog)
    return [error for validator in validators for error in validator(ctx)]


# --------------------------------------------------------------------------- #
# 리프 → Predicate


def _is_date_only(value: Any) -> bool:
    if isinstance(value, datetime):
        return False
    if isinstance(value, date):
        return True
    return isinstance(value, str) and len(value.strip()) == 10


def _compile_leaf(rule: Rule, catalog: FieldCatalog) -> Predicate:
    descriptor = catalog.get(rule.field)
    operator = normalize_operator(rule.operator)
    assert descriptor is not None and operator is not None
    operand = coerce_operand(descriptor, operator, rule.value)
    coerce = _scalar_coercer(descriptor)
    name = descriptor.name

    if operator is Operator.IS_EMPTY:
        return lambda record: _is_empty(read_field(record, name))
    if operator is Operator.IS_NOT_EMPTY:
        return lambda record: not _is_empty(read_field(record, name))

    def _value(record: Any) -> Any:
        raw = read_field(record, name)
        if raw is MISSING or raw is None:
            return MISSING
        try:
            return coerce(raw)
        except _Uncoercible:
            return MISSING

    if operator in (Operator.CONTAINS, Operator.NOT_CONTAINS):
        negate = operator is Operator.NOT_CONTAINS

        def _contains(record: Any) -> bool:
            value = _value(record)
            if value is MISSING:
                return False
            return (operand not in str(value).casefold()) if negate else (operand in str(value).casefold())

        return _contains

    comparisons: dict[Operator, Callable[[Any], bool]] = {
        Operator.EQUALS: lambda value: value == operand,
        Operator.NOT_EQUALS: lambda value: value != operand,
        Operator.GREATER_THAN: lambda value: value > operand,
        Operator.LESS_THAN: lambda value: value < operand,
        Operator.GREATER_OR_EQUAL: lambda value: value >= operand,
        Operator.LESS_OR_EQUAL: lambda value: value <= operand,
        Operator.IN: lambda value: value in operand,
        Operator.NOT_IN: lambda value: value not in operand,
    }
    if descriptor.semantic_type is SemanticType.DATE and _is_date_only(rule.value):
        # 시각 없는 날짜 리터럴의 equals/notEquals는 UTC 기준 같은 날인지로 비교한다.
        day = operand.date()
        comparisons[Operator.EQUALS] = lambda value: value.date() == day
        comparisons[Operator.NOT_EQUALS] = lambda value: value.date() != day
    compare = comparisons[operator]

    def _compare(record: Any) -> bool:
        value = _value(record)
        if value is MISSING:
            return False
        return compare(value)

    return _compare


def _all_of(predicates: Sequence[Predicate]) -> Predicate:
    return lambda record: all(predicate(record) for predicate in predicates)


def _any_of(predicates: Sequence[Predicate]) -> Predicate:
    return lambda record: any(predicate(record) for predicate in predicates)


def _constant(result: bool) -> Predicate:
    return lambda record: result


# --------------------------------------------------------------------------- #
# 설명 문자열


def _format_operand(value: Any) -> str:
    if isinstance(value, frozenset):
        items = sorted(value, key=lambda item: (str(type(item)), item))
        return "[" + ", ".join(_format_operand(item) for item in items) + "]"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return json.dumps(value, ensure_ascii=False)


def _describe_leaf(rule: Rule, catalog: FieldCatalog) -> str:
    descriptor = catalog.get(rule.field)
    operator = normalize_operator(rule.operator)
    assert descriptor is not None and operator is not None
    label = OPERATOR_LABELS[operator]
    if operator in VALUELESS_OPERATORS:
        return f"{descriptor.name} {label}"
    operand = coerce_operand(descriptor, operator, rule.value)
    if operator in (Operator.CONTAINS, Operator.NOT_CONTAINS):
        operand = str(rule.value)
    return f"{descriptor.name} {label} {_format_operand(operand)}"


# --------------------------------------------------------------------------- #
# 트리 순회


class _TreeCompiler:
    def __init__(self, catalog: FieldCatalog, policy: EmptyGroupPolicy, max_depth: int) -> None:
        self.catalog = catalog
        self.policy = policy
        self.max_depth = max_depth
        self.errors: list[RuleValidationError] = []
        self._on_path: set[int] = set()

    def compile_group(
        self, group: RuleGroup, path: str, depth: int
    ) -> tuple[Predicate, str]:
        if id(group) in self._on_path:
            self.errors.append(
                RuleValidationError(
                    code=ValidationErrorCode.MALFORMED_TREE,
                    message="그룹이 자기 자신을 참조합니다 (순환 트리).",
                    path=path,
                    rule_id=group.id,
                )
            )
            return _constant(False), ""
        if depth > self.max_depth:
            self.errors.append(
                RuleValidationError(
                    code=ValidationErrorCode.MALFORMED_TREE,
                    message=f"그룹 중첩 깊이가 최대값({self.max_depth})을 넘었습니다.",
                    path=path,
                    rule_id=group.id,
                )
            )
            return _constant(False), ""

        is_root = depth == 0
        if not group.children:
            result = self.policy.constant_for(group.logic, is_root=is_root)
            return _constant(result), "all customers" if result else "no customers"

        self._on_path.add(id(group))
        predicates: list[Predicate] = []
        descriptions: list[str] = []
        for index, child in enumerate(group.children):
            child_path = f"{path}.children[{index}]"
            if isinstance(child, RuleGroup):
                predicate, text = self.compile_group(child, child_path, depth + 1)
                if text and len(child.children) > 1:
                    text = f"({text})"
            else:
                predicate, text = self.compile_rule(child, child_path)
            predicates.append(predicate)
            descriptions.append(text)
        self._on_path.discard(id(group))

        combined = predicates[0] if len(predicates) == 1 else (
            _all_of(predicates) if group.logic == "AND" else _any_of(predicates)
        )
        return combined, f" {group.logic} ".join(descriptions)

    def compile_rule(self, rule: Rule, path: str) -> tuple[Predicate, str]:
        errors = validate_rule(rule, self.catalog, path)
        if errors:
            self.errors.extend(errors)
            return _constant(False), ""
        return _compile_leaf(rule, self.catalog), _describe_leaf(rule, self.catalog)


def _malformed_from_pydantic(exc: ValidationError) -> list[RuleValidationError]:
    errors: list[RuleValidationError] = []
    for item in exc.errors():
        location = "".join(
            f"[{part}]" if isinstance(part, int) else f".{part}" for part in item.get("loc", ())
        )
        errors.append(
            RuleValidationError(
                code=ValidationErrorCode.MALFORMED_TREE,
                message=item.get("msg", "잘못된 트리 형식입니다."),
                path=f"root{location}",
            )
        )
    return errors


def compile_rule_tree(
    tree: RuleGroup | dict | list,
    catalog: FieldCatalog,
    policy: EmptyGroupPolicy | None = None,
    *,
    max_depth: int | None = None,
) -> CompileResult:
    """
    RuleTree를 검증하고 Predicate + 설명 문자열로 컴파일한다.

    신뢰할 수 없는 입력(API, AI 결과)은 dict/list 그대로 넘겨도 되며,
    형식 오류는 MALFORMED_TREE 오류로 반환된다.
    """
    try:
        root = parse_rule_tree(tree)
    except ValidationError as exc:
        return CompileResult(predicate=None, description="", errors=tuple(_malformed_from_pydantic(exc)))

    compiler = _TreeCompiler(
        catalog,
        policy or default_policy(),
        settings.segment_max_depth if max_depth is None else max_depth,
    )
    predicate, description = compiler.compile_group(root, "root", 0)
    if compiler.errors:
        return CompileResult(predicate=None, description="", errors=tuple(compiler.errors))
    return CompileResult(predicate=predicate, description=description)


def compile_persisted_tree(
    tree: RuleGroup | dict | list,
    catalog: FieldCatalog,
    policy: EmptyGroupPolicy | None = None,
) -> CompileResult:
    """저장된 세그먼트용. 실패는 조용히 넘기지 않고 SegmentCompilationError로 올린다."""
    result = compile_rule_tree(tree, catalog, policy)
    if not result.ok:
        codes = ", ".join(sorted({error.code.value for error in result.errors}))
        raise SegmentCompilationError(f"저장된 세그먼트 규칙을 컴파일할 수 없습니다 ({codes}).", result.errors)
    return result
