"""Fault taxonomy for faultline.

Every recoverable failure is a :class:`Fault` and travels in an Effect's typed
error channel. :class:`Panic` is deliberately *not* a ``Fault``: it marks a
broken contract, bypasses recovery combinators and ends the run after cleanup.
"""

from __future__ import annotations

import traceback
from collections.abc import Iterable
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from faultline.schema import FieldViolation


class Fault(Exception):
    """Base class for every failure carried in the error channel."""

    def __eq__(self, other: object) -> bool:
        if type(self) is not type(other):
            return NotImplemented
        return self.args == other.args

    def __hash__(self) -> int:
        return hash((type(self), self.args))


class TransportFault(Fault):
    """The transport capability could not complete the exchange."""

    def __init__(self, cause: BaseException | str) -> None:
        self.cause = cause
        super().__init__(cause)
        if isinstance(cause, BaseException):
            self.__cause__ = cause

    @classmethod
    def from_exception(cls, exc: BaseException) -> TransportFault:
        return cls(exc)

    def __str__(self) -> str:
        if isinstance(self.cause, BaseException):
            return f"transport failed: {type(self.cause).__name__}: {self.cause}"
        return f"transport failed: {self.cause}"


class TimedOut(Fault):
    """A ``timeout`` deadline elapsed before the wrapped effect finished."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        super().__init__(seconds)

    def __str__(self) -> str:
        return f"timed out after {self.seconds:g}s"


class StatusFault(Fault):
    """The response arrived but its status code is not a success."""

    def __init__(self, status: int, body: bytes = b"") -> None:
        self.status = status
        self.body = body
        super().__init__(status)

    def __str__(self) -> str:
        return f"unexpected status {self.status}"


class SyntaxFault(Fault):
    """The response body could not be parsed into a raw tree."""

    def __init__(self, message: str, position: int | None = None) -> None:
        self.message = message
        self.position = position
        super().__init__(message, position)

    def __str__(self) -> str:
        if self.position is None:
            return f"unparseable body: {self.message}"
        return f"unparseable body at offset {self.position}: {self.message}"


class ValidationFailure(Fault):
    """Parsed data did not match the expected shape.

    Carries *every* violation found, in schema declaration order.
    """

    def __init__(self, violations: Iterable[FieldViolation]) -> None:
        self.violations: tuple[FieldViolation, ...] = tuple(violations)
        super().__init__(self.violations)

    def __len__(self) -> int:
        return len(self.violations)

    def __iter__(self):
        return iter(self.violations)

    def __str__(self) -> str:
        lines = [f"{len(self.violations)} validation issue(s)"]
        for violation in self.violations:
            lines.append(f"  - {violation}")
        return "\n".join(lines)


class MissingCapability(Fault):
    """The environment does not supply every capability the effect needs."""

    def __init__(self, names: Iterable[str]) -> None:
        self.names: tuple[str, ...] = tuple(sorted(names))
        super().__init__(self.names)

    def __str__(self) -> str:
        joined = ", ".join(repr(name) for name in self.names)
        return (
            f"missing capabilities: {joined}\n"
            f"Hint: supply them via `run(effect, env={{...}})` or "
            f"`effect.provide_environment({{...}})`"
        )


class Cancelled(Fault):
    """The run was aborted through its cancellation signal."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(reason)

    def __str__(self) -> str:
        return f"cancelled: {self.reason}" if self.reason else "cancelled"


class PanicKind(Enum):
    DEFECT = "defect"
    CONTRACT = "contract"
    CLEANUP = "cleanup"


class Panic(Exception):
    """Unrecoverable fault. Never seen by ``catch_all`` or ``map_error``."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        kind: PanicKind = PanicKind.DEFECT,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.kind = kind
        self.tb = ""
        if cause is not None:
            self.__cause__ = cause
            self.tb = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )

    def __str__(self) -> str:
        lines = [f"[{self.kind.value}] {self.message}"]
        if self.cause is not None:
            lines.append(f"caused by {type(self.cause).__name__}: {self.cause}")
        return "\n".join(lines)

    def format_full(self) -> str:
        parts = [str(self)]
        if self.tb:
            parts.append("----- Exception Traceback -----")
            parts.append(self.tb.rstrip())
        return "\n".join(parts)


class UnsafeUnwrapError(RuntimeError):
    """``unsafe_unwrap`` was called on the wrong variant: a programming error."""

    def __init__(self, outcome: Any) -> None:
        self.outcome = outcome
        super().__init__(f"unsafe_unwrap precondition violated on {outcome!r}")


__all__ = [
    "Cancelled",
    "Fault",
    "MissingCapability",
    "Panic",
    "PanicKind",
    "StatusFault",
    "SyntaxFault",
    "TimedOut",
    "TransportFault",
    "UnsafeUnwrapError",
    "ValidationFailure",
]
