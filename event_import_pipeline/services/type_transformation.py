"""
Type transformation for imported rows.

Applies a dataset's enabled transformation rules to a deep copy of a row
and reports every field-level change. Custom transforms are looked up by
name in a registry of Python callables; arbitrary expression evaluation is
not supported.
"""

import copy
import inspect
import logging
import math
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..core.exceptions import TransformationError
from ..models.dataset import TransformationRule, TransformStrategy
from ..models.event import FieldChange
from ..utils.field_paths import get_value_at_path, set_value_at_path
from ..utils.logger import get_logger, set_log_context

TRUE_VALUES = {"true", "1", "yes"}
FALSE_VALUES = {"false", "0", "no"}


def get_actual_type(value: Any) -> str:
    """Runtime type name as used by ``fromType`` / ``toType``."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, (datetime, date)):
        return "date"
    return "object"


def parse_number(value: Any) -> Union[int, float]:
    text = str(value).strip()
    try:
        number = float(text)
    except ValueError:
        raise TransformationError(f'Cannot parse "{value}" as number')
    if math.isnan(number):
        raise TransformationError(f'Cannot parse "{value}" as number')
    if number.is_integer() and not any(c in text.lower() for c in (".", "e", "inf")):
        return int(number)
    return number


def parse_boolean(value: Any) -> bool:
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise TransformationError(f'Cannot parse "{value}" as boolean')


DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M",
    "%d.%m.%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%a, %d %b %Y %H:%M:%S %Z",
)


def parse_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text).isoformat()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).isoformat()
        except ValueError:
            continue
    raise TransformationError(f'Cannot parse "{value}" as date')


def cast_value(value: Any, to_type: str) -> Any:
    """Direct coercion, mirroring String()/Number()/Boolean()."""
    if to_type == "string":
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)
    if to_type == "number":
        if isinstance(value, bool):
            return int(value)
        try:
            return parse_number(value) if str(value).strip() else 0
        except TransformationError:
            return float("nan")
    if to_type == "boolean":
        return bool(value)
    return value


class TransformContext:
    """Everything a custom transform may use besides the value itself."""

    def __init__(self, logger: logging.Logger, rule: TransformationRule):
        self.logger = logger
        self.rule = rule
        self.parse_number = parse_number
        self.parse_boolean = parse_boolean
        self.parse_date = parse_date


CustomTransform = Callable[[Any, TransformContext], Union[Any, Awaitable[Any]]]


def _split_list(value: Any, context: TransformContext) -> Any:
    return [part.strip() for part in str(value).split(",") if part.strip()]


BUILTIN_CUSTOM_TRANSFORMS: Dict[str, CustomTransform] = {
    "trim": lambda value, ctx: str(value).strip(),
    "uppercase": lambda value, ctx: str(value).upper(),
    "lowercase": lambda value, ctx: str(value).lower(),
    "split-list": _split_list,
    "number-or-null": lambda value, ctx: _number_or_none(value),
}


def _number_or_none(value: Any) -> Optional[Union[int, float]]:
    try:
        return parse_number(value)
    except TransformationError:
        return None


class TypeTransformationService:
    """
    Applies transformation rules to rows.

    A failing rule is recorded as a change with an ``error`` and leaves the
    field untouched; it never stops the remaining rules.
    """

    def __init__(self, rules: List[Union[TransformationRule, Dict[str, Any]]],
                 custom_transforms: Optional[Dict[str, CustomTransform]] = None):
        self.rules = [
            rule if isinstance(rule, TransformationRule) else TransformationRule.from_dict(rule)
            for rule in rules
        ]
        self.custom_transforms: Dict[str, CustomTransform] = dict(BUILTIN_CUSTOM_TRANSFORMS)
        self.custom_transforms.update(custom_transforms or {})

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="type_transformation")

    @property
    def enabled_rules(self) -> List[TransformationRule]:
        return [rule for rule in self.rules if rule.enabled]

    async def transform_record(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply every enabled rule to a copy of ``record``.

        Returns:
            ``{"transformed": <row copy>, "changes": [FieldChange, ...]}``
        """
        transformed = copy.deepcopy(record)
        changes: List[FieldChange] = []

        for rule in self.enabled_rules:
            old_value = get_value_at_path(transformed, rule.field_path)
            if old_value is None or get_actual_type(old_value) != rule.from_type:
                continue

            try:
                new_value = await self.apply_rule(old_value, rule)
            except Exception as e:
                changes.append(FieldChange(path=rule.field_path, old_value=old_value,
                                           new_value=None, error=str(e)))
                continue

            if new_value != old_value or type(new_value) is not type(old_value):
                set_value_at_path(transformed, rule.field_path, new_value)
                changes.append(FieldChange(path=rule.field_path, old_value=old_value, new_value=new_value))

        return {"transformed": transformed, "changes": changes}

    async def apply_rule(self, value: Any, rule: TransformationRule) -> Any:
        strategy = rule.transform_strategy
        if strategy == TransformStrategy.PARSE.value:
            return self._parse(value, rule.to_type)
        if strategy == TransformStrategy.CAST.value:
            return cast_value(value, rule.to_type)
        if strategy == TransformStrategy.CUSTOM.value:
            return await self._custom(value, rule)
        if strategy == TransformStrategy.REJECT.value:
            raise TransformationError(
                f"Type mismatch: expected {rule.to_type}, got {get_actual_type(value)}",
                field_path=rule.field_path, strategy=strategy
            )
        raise TransformationError(f"Unknown transform strategy: {strategy}",
                                  field_path=rule.field_path, strategy=strategy)

    def _parse(self, value: Any, to_type: str) -> Any:
        if to_type == "number":
            return parse_number(value)
        if to_type == "boolean":
            return parse_boolean(value)
        if to_type == "date":
            return parse_date(value)
        if to_type == "string":
            return cast_value(value, "string")
        return value

    async def _custom(self, value: Any, rule: TransformationRule) -> Any:
        name = (rule.custom_transform or "").strip()
        transform = self.custom_transforms.get(name)
        if transform is None:
            raise TransformationError(f"Custom transform failed: unknown transform '{name}'",
                                      field_path=rule.field_path, strategy="custom")
        context = TransformContext(self.logger, rule)
        try:
            result = transform(value, context)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            raise TransformationError(f"Custom transform failed: {e}",
                                      field_path=rule.field_path, strategy="custom") from e
