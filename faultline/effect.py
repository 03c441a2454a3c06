"""
Effect descriptions for faultline.

An :class:`Effect` is an immutable, lazy description of a fallible and possibly
asynchronous computation. Building one never touches a capability; only
:func:`faultline.runtime.run` interprets the description. Every node below is a
frozen dataclass, and every combinator returns a new node wrapping the old one.

Each node knows the capability names it references (``requires``). Python cannot
look inside a continuation before calling it, so ``flat_map``, ``catch_all`` and
friends accept a ``requires=`` declaration; anything undeclared is still checked
by the runtime right before the produced effect starts.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Generator, Iterable, Mapping
from dataclasses import dataclass, field
from functools import cached_property
from typing import TYPE_CHECKING, Any, Generic, NoReturn, TypeVar

from frozendict import frozendict

from faultline.errors import Cancelled, Fault, Panic, PanicKind
from faultline.outcome import Failure, Outcome, Success

if TYPE_CHECKING:
    from faultline.schema import ValidationSchema

logger = logging.getLogger(__name__)

A = TypeVar("A")
A_co = TypeVar("A_co", covariant=True)
E_co = TypeVar("E_co", covariant=True)
B = TypeVar("B")
R = TypeVar("R")

ErrorMapper = Callable[[BaseException], Fault]
Requires = Iterable[str]


def as_requirements(requires: Requires | None) -> frozenset[str]:
    if requires is None:
        return frozenset()
    if isinstance(requires, str):
        return frozenset({requires})
    return frozenset(requires)


class Effect(Generic[A_co, E_co]):
    """Lazy description producing ``Outcome[A, E]`` once run."""

    @cached_property
    def requires(self) -> frozenset[str]:
        """Capability names referenced anywhere inside this description."""

        return _collect_requires(self)

    def _requires(self) -> frozenset[str]:
        """This node's requirements; ``requires`` of every source is already cached."""

        return frozenset()

    def _sources(self) -> tuple[Effect[Any, Any], ...]:
        return ()

    # -----------------------------------------------------------------
    # sequencing
    # -----------------------------------------------------------------
    def map(self, f: Callable[[A_co], B]) -> Effect[B, E_co]:
        """Transform the success value; a failure passes through unchanged."""

        if not callable(f):
            raise TypeError("mapper must be callable")
        return Map(self, f)

    def flat_map(
        self,
        f: Callable[[A_co], Effect[B, Any]],
        *,
        requires: Requires | None = None,
    ) -> Effect[B, Any]:
        """Sequence another effect after this one.

        ``f`` is never called when this effect fails.
        """

        if not callable(f):
            raise TypeError("binder must be callable returning an Effect")
        return FlatMap(self, f, as_requirements(requires))

    and_then = flat_map

    def tap(self, f: Callable[[A_co], Any]) -> Effect[A_co, E_co]:
        """Run ``f`` for its side effect on the value and keep the value."""

        def passthrough(value: A_co) -> A_co:
            f(value)
            return value

        return Map(self, passthrough)

    # -----------------------------------------------------------------
    # error channel
    # -----------------------------------------------------------------
    def map_error(self, f: Callable[[E_co], Fault]) -> Effect[A_co, Fault]:
        """Transform only the failure channel. Panics are not touched."""

        if not callable(f):
            raise TypeError("error mapper must be callable")
        return MapError(self, f)

    def catch_all(
        self,
        handler: Callable[[E_co], Effect[B, Any]],
        *,
        requires: Requires | None = None,
    ) -> Effect[A_co | B, Any]:
        """Replace a failing branch with the effect ``handler`` builds.

        Cancellation and panics are not failures of this effect and are never
        handed to ``handler``.
        """

        if not callable(handler):
            raise TypeError("handler must be callable returning an Effect")
        return CatchAll(self, handler, as_requirements(requires))

    def either(self) -> Effect[Outcome[A_co, E_co], NoReturn]:
        """Materialise the outcome as a value; the result never fails."""

        return Either(self)

    def retry(
        self,
        max_attempts: int = 3,
        delay: float = 0.0,
        *,
        when: Callable[[Fault], bool] | None = None,
    ) -> Effect[A_co, E_co]:
        """Re-run this effect until it succeeds or ``max_attempts`` is spent.

        A positive ``delay`` sleeps on the ``clock`` capability between attempts.
        ``when`` restricts retrying to the faults it accepts.
        """

        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        from faultline.clock import CLOCK, sleep

        extra = frozenset({CLOCK}) if delay > 0 else frozenset()

        def attempt(number: int) -> Effect[A_co, E_co]:
            def handle(fault: Fault) -> Effect[A_co, E_co]:
                if number >= max_attempts or (when is not None and not when(fault)):
                    return fail(fault)
                logger.debug(
                    "retrying after %s (attempt %d/%d)", fault, number + 1, max_attempts
                )
                if delay > 0:
                    return sleep(delay).flat_map(lambda _: attempt(number + 1))
                return attempt(number + 1)

            return self.catch_all(handle, requires=extra)

        return attempt(1)

    # -----------------------------------------------------------------
    # validation / environment / time
    # -----------------------------------------------------------------
    def validate_with(self, schema: ValidationSchema[B]) -> Effect[B, Any]:
        """Parse the produced raw value with ``schema``.

        A mismatch becomes a ``ValidationFailure`` carrying every violation.
        """

        return FlatMap(self, lambda raw: from_outcome(schema.parse(raw)), frozenset())

    def provide_environment(
        self, env: Mapping[str, Any] | None = None, **capabilities: Any
    ) -> Effect[A_co, E_co]:
        """Discharge some or all of the required capabilities."""

        merged = frozendict({**(env or {}), **capabilities})
        return Provide(self, merged)

    def timeout(self, seconds: float) -> Effect[A_co, Any]:
        """Race this effect against a ``clock`` delay.

        When the delay wins, this effect is cancelled (its cleanups run) and the
        result is a ``TimedOut`` failure.
        """

        if seconds < 0:
            raise ValueError("timeout must not be negative")
        return Timeout(self, seconds)

    # -----------------------------------------------------------------
    # scoped cleanup
    # -----------------------------------------------------------------
    def ensuring(self, finalizer: Effect[Any, Any]) -> Effect[A_co, E_co]:
        """Run ``finalizer`` on every exit path: success, failure or cancellation."""

        return acquire_release(
            unit(),
            lambda _resource, _exit: finalizer,
            lambda _resource: self,
            requires=self.requires | finalizer.requires,
        )

    def on_cancel(self, handler: Effect[Any, Any]) -> Effect[A_co, E_co]:
        """Run ``handler`` only when this effect is cancelled mid-flight."""

        def release(_resource: None, exit: Outcome[Any, Any]) -> Effect[Any, Any]:
            if isinstance(exit, Failure) and isinstance(exit.error, Cancelled):
                return handler
            return unit()

        return acquire_release(
            unit(),
            release,
            lambda _resource: self,
            requires=self.requires | handler.requires,
        )

    # -----------------------------------------------------------------
    # execution
    # -----------------------------------------------------------------
    async def run(self, env: Mapping[str, Any] | None = None) -> Outcome[A_co, Any]:
        """Interpret this description. The only operation that performs effects."""

        from faultline.runtime import run

        return await run(self, env)


def _collect_requires(root: Effect[Any, Any]) -> frozenset[str]:
    """Fill the ``requires`` cache bottom-up with an explicit stack.

    Descriptions built from long ``map``/``flat_map`` chains nest far deeper
    than the interpreter's recursion limit.
    """

    pending: list[Effect[Any, Any]] = [root]
    while pending:
        node = pending[-1]
        if "requires" in node.__dict__:
            pending.pop()
            continue
        unresolved = [source for source in node._sources() if "requires" not in source.__dict__]
        if unresolved:
            pending.extend(unresolved)
            continue
        pending.pop()
        node.__dict__["requires"] = node._requires()
    return root.__dict__["requires"]


# =========================================================
# Leaf nodes
# =========================================================
@dataclass(frozen=True, eq=False)
class Pure(Effect[A, NoReturn]):
    value: A


@dataclass(frozen=True, eq=False)
class Fail(Effect[NoReturn, Fault]):
    error: Fault


@dataclass(frozen=True, eq=False)
class Die(Effect[NoReturn, NoReturn]):
    panic: Panic


@dataclass(frozen=True, eq=False)
class FromOutcome(Effect[A, Any]):
    outcome: Outcome[A, Any]


@dataclass(frozen=True, eq=False)
class Access(Effect[Any, NoReturn]):
    capability: str

    def _requires(self) -> frozenset[str]:
        return frozenset({self.capability})


@dataclass(frozen=True, eq=False)
class FallibleCall(Effect[A, Fault]):
    """One invocation of a named capability.

    ``call`` receives the capability implementation. It may return a plain value,
    an :class:`Outcome`, or an awaitable; the awaitable case is a suspension
    point. Exceptions are routed through ``error_mapper``.
    """

    capability: str
    call: Callable[[Any], Any]
    error_mapper: ErrorMapper
    label: str = ""

    def _requires(self) -> frozenset[str]:
        return frozenset({self.capability})


@dataclass(frozen=True, eq=False)
class Suspend(Effect[A, Any]):
    thunk: Callable[[], Effect[A, Any]]
    declared: frozenset[str] = field(default_factory=frozenset)

    def _requires(self) -> frozenset[str]:
        return self.declared


@dataclass(frozen=True, eq=False)
class GeneratorEffect(Effect[A, Any]):
    """Effect backed by a generator factory (see :func:`faultline.do.do`)."""

    factory: Callable[[], Generator[Effect[Any, Any], Any, A]]
    declared: frozenset[str] = field(default_factory=frozenset)
    name: str = "<generator>"

    def _requires(self) -> frozenset[str]:
        return self.declared


# =========================================================
# Composite nodes
# =========================================================
@dataclass(frozen=True, eq=False)
class Map(Effect[B, Any]):
    source: Effect[Any, Any]
    f: Callable[[Any], B]

    def _requires(self) -> frozenset[str]:
        return self.source.requires

    def _sources(self) -> tuple[Effect[Any, Any], ...]:
        return (self.source,)


@dataclass(frozen=True, eq=False)
class FlatMap(Effect[B, Any]):
    source: Effect[Any, Any]
    f: Callable[[Any], Effect[B, Any]]
    declared: frozenset[str] = field(default_factory=frozenset)

    def _requires(self) -> frozenset[str]:
        return self.source.requires | self.declared

    def _sources(self) -> tuple[Effect[Any, Any], ...]:
        return (self.source,)


@dataclass(frozen=True, eq=False)
class MapError(Effect[A, Fault]):
    source: Effect[A, Any]
    f: Callable[[Any], Fault]

    def _requires(self) -> frozenset[str]:
        return self.source.requires

    def _sources(self) -> tuple[Effect[Any, Any], ...]:
        return (self.source,)


@dataclass(frozen=True, eq=False)
class CatchAll(Effect[A, Any]):
    source: Effect[A, Any]
    handler: Callable[[Any], Effect[A, Any]]
    declared: frozenset[str] = field(default_factory=frozenset)

    def _requires(self) -> frozenset[str]:
        return self.source.requires | self.declared

    def _sources(self) -> tuple[Effect[Any, Any], ...]:
        return (self.source,)


@dataclass(frozen=True, eq=False)
class Either(Effect[Outcome[A, Any], NoReturn]):
    source: Effect[A, Any]

    def _requires(self) -> frozenset[str]:
        return self.source.requires

    def _sources(self) -> tuple[Effect[Any, Any], ...]:
        return (self.source,)


@dataclass(frozen=True, eq=False)
class Provide(Effect[A, Any]):
    source: Effect[A, Any]
    env: frozendict

    def _requires(self) -> frozenset[str]:
        return self.source.requires - frozenset(self.env)

    def _sources(self) -> tuple[Effect[Any, Any], ...]:
        return (self.source,)


@dataclass(frozen=True, eq=False)
class AcquireRelease(Effect[B, Any]):
    """Scoped acquisition.

    Once ``acquire`` succeeds, ``release(resource, exit)`` is registered and is
    guaranteed to run when ``use(resource)`` ends, whatever the exit.
    """

    acquire: Effect[Any, Any]
    release: Callable[[Any, Outcome[Any, Any]], Effect[Any, Any]]
    use: Callable[[Any], Effect[B, Any]]
    declared: frozenset[str] = field(default_factory=frozenset)

    def _requires(self) -> frozenset[str]:
        return self.acquire.requires | self.declared

    def _sources(self) -> tuple[Effect[Any, Any], ...]:
        return (self.acquire,)


@dataclass(frozen=True, eq=False)
class Timeout(Effect[A, Any]):
    source: Effect[A, Any]
    seconds: float

    def _requires(self) -> frozenset[str]:
        from faultline.clock import CLOCK

        return self.source.requires | {CLOCK}

    def _sources(self) -> tuple[Effect[Any, Any], ...]:
        return (self.source,)


# =========================================================
# Constructors
# =========================================================
_UNIT: Effect[None, NoReturn] = Pure(None)


def unit() -> Effect[None, NoReturn]:
    return _UNIT


def pure(value: A) -> Effect[A, NoReturn]:
    """Always succeeds with ``value``; requires nothing."""

    return Pure(value)


def fail(error: Fault) -> Effect[NoReturn, Fault]:
    """Always fails with ``error``; requires nothing."""

    if not isinstance(error, Fault):
        raise TypeError(
            f"fail expects a Fault instance, got {type(error).__name__}; "
            "use panic() for unrecoverable defects"
        )
    return Fail(error)


def panic(message: str, cause: BaseException | None = None) -> Effect[NoReturn, NoReturn]:
    """Abort the run with an unrecoverable :class:`Panic`."""

    return Die(Panic(message, cause, PanicKind.DEFECT))


def from_outcome(outcome: Outcome[A, Any]) -> Effect[A, Any]:
    if not isinstance(outcome, (Success, Failure)):
        raise TypeError(f"from_outcome expects an Outcome, got {type(outcome).__name__}")
    return FromOutcome(outcome)


def access(capability: str) -> Effect[Any, NoReturn]:
    """Produce the implementation bound to ``capability``."""

    return Access(capability)


def from_fallible_call(
    capability: str,
    call: Callable[[Any], Any],
    error_mapper: ErrorMapper,
    *,
    label: str = "",
) -> Effect[Any, Fault]:
    """Wrap one invocation of the capability named ``capability``.

    Any exception the capability raises is handed to ``error_mapper`` and lands
    in the error channel instead of propagating.
    """

    if not callable(call):
        raise TypeError("call must be callable")
    if not callable(error_mapper):
        raise TypeError("error_mapper must be callable")
    return FallibleCall(capability, call, error_mapper, label or getattr(call, "__name__", ""))


def suspend(
    thunk: Callable[[], Effect[A, Any]], *, requires: Requires | None = None
) -> Effect[A, Any]:
    """Defer building an effect until the runtime reaches it."""

    return Suspend(thunk, as_requirements(requires))


def acquire_release(
    acquire: Effect[A, Any],
    release: Callable[[A, Outcome[Any, Any]], Effect[Any, Any]],
    use: Callable[[A], Effect[B, Any]],
    *,
    requires: Requires | None = None,
) -> Effect[B, Any]:
    """Acquire a resource, use it, and always release it.

    ``release`` receives the resource and the exit ``Outcome`` of ``use``
    (``Failure(Cancelled())`` when interrupted, ``Failure(Panic(...))`` on a
    defect). Release handlers run in reverse order of registration and are not
    cancellable.
    """

    return AcquireRelease(acquire, release, use, as_requirements(requires))


def sequence(effects: Iterable[Effect[A, Any]]) -> Effect[list[A], Any]:
    """Run ``effects`` one after another, collecting their values."""

    items = tuple(effects)
    declared = frozenset().union(*(item.requires for item in items)) if items else frozenset()

    def factory() -> Generator[Effect[Any, Any], Any, list[A]]:
        values: list[A] = []
        for item in items:
            values.append((yield item))
        return values

    return GeneratorEffect(factory, declared, "sequence")


def traverse(
    items: Iterable[B],
    func: Callable[[B], Effect[A, Any]],
) -> Effect[list[A], Any]:
    return sequence(func(item) for item in items)


__all__ = [
    "AcquireRelease",
    "Access",
    "CatchAll",
    "Die",
    "Effect",
    "Either",
    "ErrorMapper",
    "Fail",
    "FallibleCall",
    "FlatMap",
    "FromOutcome",
    "GeneratorEffect",
    "Map",
    "MapError",
    "Provide",
    "Pure",
    "Suspend",
    "Timeout",
    "access",
    "acquire_release",
    "as_requirements",
    "fail",
    "from_fallible_call",
    "from_outcome",
    "panic",
    "pure",
    "sequence",
    "suspend",
    "traverse",
    "unit",
]
