"""
Outcome: the success/failure sum type every other faultline component builds on.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, NoReturn, TypeVar, cast

from faultline.errors import UnsafeUnwrapError

# =========================================================
# Type Vars
# =========================================================
A = TypeVar("A")
A_co = TypeVar("A_co", covariant=True)
E_co = TypeVar("E_co", covariant=True)
B = TypeVar("B")
E2 = TypeVar("E2")
R = TypeVar("R")


class Outcome(Generic[A_co, E_co]):
    """Sum type holding exactly one of a success value or an error."""

    __slots__ = ()

    def is_success(self) -> bool:
        """Return ``True`` when the outcome is a success."""

        return isinstance(self, Success)

    def is_failure(self) -> bool:
        """Return ``True`` when the outcome carries an error."""

        return isinstance(self, Failure)

    def match(
        self,
        *,
        on_success: Callable[[A_co], R],
        on_failure: Callable[[E_co], R],
    ) -> R:
        """Exhaustively inspect the outcome.

        Both handlers are mandatory keyword arguments, so a caller cannot
        forget the failure branch.
        """

        if isinstance(self, Success):
            return on_success(self.value)
        return on_failure(cast(Failure[E_co], self).error)

    def map(self, f: Callable[[A_co], B]) -> Outcome[B, E_co]:
        """Apply ``f`` to the value of a success; a failure is returned as is."""

        if isinstance(self, Success):
            return Success(f(self.value))
        return cast(Outcome[B, E_co], self)

    def map_error(self, f: Callable[[E_co], E2]) -> Outcome[A_co, E2]:
        """Apply ``f`` to the error of a failure; a success is returned as is."""

        if isinstance(self, Failure):
            return Failure(f(self.error))
        return cast(Outcome[A_co, E2], self)

    def and_then(self, f: Callable[[A_co], Outcome[B, E2]]) -> Outcome[B, E_co | E2]:
        """Chain computations that themselves return ``Outcome``."""

        if isinstance(self, Success):
            result = f(self.value)
            if not isinstance(result, Outcome):
                raise TypeError("and_then must return an Outcome instance")
            return result
        return cast(Outcome[B, E_co], self)

    def unwrap_or(self, default: B) -> A_co | B:
        """Return the contained value, or ``default`` for a failure."""

        if isinstance(self, Success):
            return self.value
        return default

    def unsafe_unwrap(self) -> A_co:
        """Return the success value without checking.

        Precondition: the caller has already proven this is a ``Success``
        (through ``is_success``, ``match`` or a ``case`` clause). Calling it on a
        ``Failure`` is a programming error and raises
        :class:`~faultline.errors.UnsafeUnwrapError`; it is never turned into a
        recoverable failure.
        """

        if isinstance(self, Success):
            return self.value
        raise UnsafeUnwrapError(self)

    def unsafe_unwrap_error(self) -> E_co:
        """Return the error without checking. Same precondition, mirrored."""

        if isinstance(self, Failure):
            return self.error
        raise UnsafeUnwrapError(self)

    def __bool__(self) -> bool:
        """Truthiness matches :meth:`is_success`."""

        return self.is_success()


@dataclass(frozen=True)
class Success(Outcome[A, NoReturn], Generic[A]):
    """Successful outcome."""

    value: A

    def __repr__(self) -> str:
        return f"Success({self.value!r})"


@dataclass(frozen=True)
class Failure(Outcome[NoReturn, E2], Generic[E2]):
    """Failed outcome."""

    error: E2

    def __repr__(self) -> str:
        return f"Failure({self.error!r})"


def success(value: A) -> Outcome[A, NoReturn]:
    return Success(value)


def failure(error: E2) -> Outcome[NoReturn, E2]:
    return Failure(error)


__all__ = [
    "Failure",
    "Outcome",
    "Success",
    "failure",
    "success",
]
