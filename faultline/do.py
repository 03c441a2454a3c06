"""
The do decorator for faultline.

Turns a generator function into a factory of :class:`~faultline.effect.Effect`
values, giving sequential, imperative-looking syntax over ``flat_map``::

    @do(requires={"transport"})
    def load(item_id: int) -> EffectGenerator[ItemDetail]:
        response = yield http.request(f"/items/{item_id}")
        yield http.expect_success(response)
        raw = yield http.parse_body(response)
        return (yield pure(raw).validate_with(ITEM_SCHEMA))

Each ``yield`` hands an effect to the runtime and receives its success value.
A failing effect short-circuits: the generator is closed and never resumed, so
code after the failing ``yield`` does not run. Raising a
:class:`~faultline.errors.Fault` inside the generator is the same as yielding
``fail(...)``; raising anything else is a panic.

Calling the decorated function builds a description only. The generator body
runs when the runtime reaches the effect, once per run.
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from functools import partial, wraps
from typing import Any, ParamSpec, TypeVar, overload

from faultline.effect import Effect, GeneratorEffect, Requires, as_requirements

P = ParamSpec("P")
T = TypeVar("T")

EffectGenerator = Generator[Effect[Any, Any], Any, T]


@overload
def do(func: Callable[P, EffectGenerator[T]]) -> Callable[P, Effect[T, Any]]: ...


@overload
def do(
    func: None = None, *, requires: Requires | None = None
) -> Callable[[Callable[P, EffectGenerator[T]]], Callable[P, Effect[T, Any]]]: ...


def do(func=None, *, requires=None):
    """
    Decorator that converts a generator function into an Effect factory.

    ``requires`` declares the capabilities the body reaches, so ``run`` can
    reject an incomplete environment before the first step. Undeclared
    capabilities are still checked as each yielded effect starts.
    """

    declared = as_requirements(requires)

    def decorate(fn: Callable[P, EffectGenerator[T]]) -> Callable[P, Effect[T, Any]]:
        name = getattr(fn, "__qualname__", getattr(fn, "__name__", "<do>"))

        @wraps(fn)
        def build(*args: P.args, **kwargs: P.kwargs) -> Effect[T, Any]:
            return GeneratorEffect(partial(fn, *args, **kwargs), declared, name)

        build.requires = declared  # type: ignore[attr-defined]
        return build

    if func is not None:
        return decorate(func)
    return decorate


__all__ = ["EffectGenerator", "do"]
