"""Schema validation: the only bridge from an untyped raw tree to a typed value.

Schemas are pydantic models (or any type pydantic can adapt). Validation runs in
strict JSON mode so nothing is coerced, and models derived from :class:`Shape` refuse
unknown fields, so a successful parse has exactly the declared shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError, to_json

from faultline.errors import ValidationFailure
from faultline.outcome import Failure, Outcome, Success

T = TypeVar("T")

PathSegment = str | int


class Shape(BaseModel):
    """Base class for schema models: strict, closed and immutable."""

    model_config = ConfigDict(extra="forbid", strict=True, frozen=True)


class Issue(str, Enum):
    MISSING = "missing"
    WRONG_TYPE = "wrong-type"
    OUT_OF_RANGE = "out-of-range"
    UNEXPECTED = "unexpected"


_OUT_OF_RANGE_TYPES = frozenset(
    {
        "greater_than",
        "greater_than_equal",
        "less_than",
        "less_than_equal",
        "multiple_of",
        "finite_number",
        "too_short",
        "too_long",
        "string_too_short",
        "string_too_long",
        "string_pattern_mismatch",
        "literal_error",
        "enum",
        "value_error",
        "assertion_error",
    }
)


def classify_error_type(error_type: str) -> Issue:
    """Map a pydantic error type onto the violation kinds callers see."""

    if error_type == "missing":
        return Issue.MISSING
    if error_type == "extra_forbidden":
        return Issue.UNEXPECTED
    if error_type in _OUT_OF_RANGE_TYPES:
        return Issue.OUT_OF_RANGE
    return Issue.WRONG_TYPE


@dataclass(frozen=True)
class FieldViolation:
    """One mismatch between the raw data and the schema."""

    path: tuple[PathSegment, ...]
    issue: Issue
    message: str = field(default="", compare=False)
    received: Any = field(default=None, compare=False)

    @property
    def dotted_path(self) -> str:
        parts: list[str] = []
        for segment in self.path:
            if isinstance(segment, int):
                parts.append(f"[{segment}]")
            elif parts:
                parts.append(f".{segment}")
            else:
                parts.append(segment)
        return "".join(parts) or "<root>"

    def __str__(self) -> str:
        text = f"{self.dotted_path}: {self.issue.value}"
        if self.message:
            text += f" ({self.message})"
        return text


def violations_from(exc: ValidationError) -> list[FieldViolation]:
    """Translate every error pydantic collected, preserving its order."""

    violations: list[FieldViolation] = []
    for error in exc.errors(include_url=False):
        issue = classify_error_type(error["type"])
        violations.append(
            FieldViolation(
                path=tuple(error["loc"]),
                issue=issue,
                message=error.get("msg", ""),
                received=None if issue is Issue.MISSING else error.get("input"),
            )
        )
    return violations


class ValidationSchema(Generic[T]):
    """Stateless, reusable description of the expected shape of raw data."""

    def __init__(self, target: type[T] | Any) -> None:
        self.target = target

    @cached_property
    def _adapter(self) -> TypeAdapter[T]:
        return TypeAdapter(self.target)

    @property
    def name(self) -> str:
        return getattr(self.target, "__name__", repr(self.target))

    def parse(self, raw: Any) -> Outcome[T, ValidationFailure]:
        """Validate ``raw`` against the schema.

        The whole input is inspected before reporting; a failure carries the
        complete ordered list of violations.
        """

        try:
            value = self._validate(raw)
        except ValidationError as exc:
            return Failure(ValidationFailure(violations_from(exc)))
        return Success(value)

    def _validate(self, raw: Any) -> T:
        # Raw trees come from JSON, so strictness follows pydantic's JSON-mode rules.
        try:
            document = to_json(raw)
        except PydanticSerializationError:
            return self._adapter.validate_python(raw, strict=True)
        return self._adapter.validate_json(document, strict=True)

    def json_schema(self) -> dict[str, Any]:
        return self._adapter.json_schema()

    def __repr__(self) -> str:
        return f"ValidationSchema({self.name})"


def parse(schema: ValidationSchema[T], raw: Any) -> Outcome[T, ValidationFailure]:
    return schema.parse(raw)


__all__ = [
    "FieldViolation",
    "Issue",
    "PathSegment",
    "Shape",
    "ValidationSchema",
    "classify_error_type",
    "parse",
    "violations_from",
]
