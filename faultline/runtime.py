"""Cooperative scheduler that interprets :class:`~faultline.effect.Effect` trees.

Each run is one :class:`_Fiber`: a control register plus a continuation stack of
frames, stepped in a loop on the current event loop. The fiber only awaits at a
capability call that returned an awaitable (or at a ``timeout`` race); those
are the suspension points, and the only places the run's
:class:`CancellationSignal` is observed.

Unwinding is frame-driven. A failure pops frames until a catch frame takes it;
cancellation and panics pop every frame, stopping only to run registered
release handlers, innermost first.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Generator, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from frozendict import frozendict

from faultline.clock import CLOCK, ClockFault
from faultline.config import RuntimeConfig
from faultline.effect import (
    Access,
    AcquireRelease,
    CatchAll,
    Die,
    Effect,
    Either,
    Fail,
    FallibleCall,
    FlatMap,
    FromOutcome,
    GeneratorEffect,
    Map,
    MapError,
    Provide,
    Pure,
    Suspend,
    Timeout,
)
from faultline.environment import Environment, make_environment, missing, overlay
from faultline.errors import (
    Cancelled,
    Fault,
    MissingCapability,
    Panic,
    PanicKind,
    TimedOut,
)
from faultline.outcome import Failure, Outcome, Success

logger = logging.getLogger(__name__)

A = TypeVar("A")


class CancellationSignal:
    """Per-run flag, set at most once, observed only at suspension points."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def set(self, reason: str | None = None) -> bool:
        """Raise the signal. Returns ``False`` if it was already raised."""

        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        state = f"set, reason={self.reason!r}" if self.is_set() else "clear"
        return f"CancellationSignal({state})"


# =========================================================
# Control register
# =========================================================
@dataclass(frozen=True)
class Eval:
    effect: Effect[Any, Any]


@dataclass(frozen=True)
class Value:
    value: Any


@dataclass(frozen=True)
class Error:
    error: Fault


@dataclass(frozen=True)
class Abort:
    """Cancellation or panic: unwinds past every catch frame."""

    reason: Cancelled | Panic


Control = Eval | Value | Error | Abort


# =========================================================
# Continuation frames
# =========================================================
@dataclass(frozen=True)
class MapFrame:
    f: Callable[[Any], Any]


@dataclass(frozen=True)
class FlatMapFrame:
    f: Callable[[Any], Effect[Any, Any]]


@dataclass(frozen=True)
class MapErrorFrame:
    f: Callable[[Any], Fault]


@dataclass(frozen=True)
class CatchFrame:
    handler: Callable[[Any], Effect[Any, Any]]


@dataclass(frozen=True)
class EitherFrame:
    pass


@dataclass(frozen=True)
class EnvFrame:
    previous: Environment


@dataclass(frozen=True)
class GeneratorFrame:
    generator: Generator[Effect[Any, Any], Any, Any]
    name: str


@dataclass(frozen=True)
class UseFrame:
    """Waits for ``acquire`` to finish, then registers the release."""

    release: Callable[[Any, Outcome[Any, Any]], Effect[Any, Any]]
    use: Callable[[Any], Effect[Any, Any]]


@dataclass(frozen=True)
class ReleaseFrame:
    release: Callable[[Any, Outcome[Any, Any]], Effect[Any, Any]]
    resource: Any
    env: Environment


Frame = (
    MapFrame
    | FlatMapFrame
    | MapErrorFrame
    | CatchFrame
    | EitherFrame
    | EnvFrame
    | GeneratorFrame
    | UseFrame
    | ReleaseFrame
)


def _format_control(control: Control) -> str:
    if isinstance(control, Eval):
        return f"Eval({type(control.effect).__name__})"
    if isinstance(control, Value):
        return f"Value({control.value!r})"
    if isinstance(control, Error):
        return f"Error({type(control.error).__name__}: {control.error})"
    return f"Abort({type(control.reason).__name__})"


def _format_stack(stack: list[Frame]) -> str:
    return "[" + ", ".join(type(frame).__name__ for frame in reversed(stack)) + "]"


def _callable_name(f: Any) -> str:
    return getattr(f, "__qualname__", None) or type(f).__name__


def _close_generator(frame: GeneratorFrame) -> None:
    try:
        frame.generator.close()
    except Exception:  # pragma: no cover - generator misbehaving in finally
        logger.debug("generator %s raised while closing", frame.name, exc_info=True)


def _discard(awaitable: Awaitable[Any]) -> None:
    if inspect.iscoroutine(awaitable):
        awaitable.close()


async def _settle(*tasks: asyncio.Future[Any]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def _control_from_outcome(outcome: Outcome[Any, Any]) -> Control:
    if isinstance(outcome, Success):
        return Value(outcome.value)
    error = outcome.error
    if isinstance(error, Fault):
        return Error(error)
    if isinstance(error, Panic):
        return Abort(error)
    return Abort(
        Panic(
            f"Failure carried {type(error).__name__}, which is not a Fault",
            error if isinstance(error, BaseException) else None,
            PanicKind.CONTRACT,
        )
    )


class _Fiber:
    """State of a single run. Never shared between runs."""

    def __init__(
        self,
        runtime: Runtime,
        env: Environment,
        signal: CancellationSignal,
    ) -> None:
        self.runtime = runtime
        self.env = env
        self.signal = signal
        self.stack: list[Frame] = []
        self.host_cancelled = False
        self.final: Value | Error | Abort | None = None

    # -----------------------------------------------------------------
    # main loop
    # -----------------------------------------------------------------
    async def run(self, effect: Effect[Any, Any]) -> Outcome[Any, Any]:
        control: Control = Eval(effect)
        debug = self.runtime.config.debug

        while True:
            if debug:
                logger.debug(
                    "step C=%s K=%s", _format_control(control), _format_stack(self.stack)
                )

            if isinstance(control, Eval):
                control = await self._eval(control.effect)
                continue

            if not self.stack:
                return self._finish(control)

            frame = self.stack.pop()
            if isinstance(control, Value):
                control = await self._on_value(frame, control)
            elif isinstance(control, Error):
                control = await self._on_error(frame, control)
            else:
                control = await self._on_abort(frame, control)

    def _finish(self, control: Value | Error | Abort) -> Outcome[Any, Any]:
        self.final = control
        if isinstance(control, Value):
            outcome: Outcome[Any, Any] = Success(control.value)
        elif isinstance(control, Error):
            outcome = Failure(control.error)
        else:
            reason = control.reason
            if isinstance(reason, Panic):
                logger.error("run panicked\n%s", reason.format_full())
            else:
                logger.info("run cancelled: %s", reason)
            outcome = Failure(reason)

        if self.host_cancelled:
            raise asyncio.CancelledError()
        return outcome

    # -----------------------------------------------------------------
    # helpers
    # -----------------------------------------------------------------
    def _apply(self, f: Callable[..., Any], *args: Any) -> Control:
        """Call user code; a raised Fault is a failure, anything else a panic."""

        try:
            return Value(f(*args))
        except Fault as fault:
            return Error(fault)
        except Panic as exc:
            return Abort(exc)
        except Exception as exc:
            return Abort(
                Panic(f"{_callable_name(f)} raised {type(exc).__name__}", exc)
            )

    def _enter(self, candidate: Any) -> Control:
        """Start an effect produced at run time, checking its requirements."""

        if not isinstance(candidate, Effect):
            return Abort(
                Panic(
                    f"expected an Effect, got {type(candidate).__name__}",
                    kind=PanicKind.CONTRACT,
                )
            )
        absent = missing(candidate.requires, self.env)
        if absent:
            logger.warning("missing capabilities %s", sorted(absent))
            return Error(MissingCapability(absent))
        return Eval(candidate)

    def _translate(self, node: FallibleCall[Any], exc: BaseException) -> Control:
        try:
            fault = node.error_mapper(exc)
        except Exception as mapper_exc:
            return Abort(
                Panic(
                    f"error mapper for {node.label or node.capability!r} raised",
                    mapper_exc,
                    PanicKind.CONTRACT,
                )
            )
        if not isinstance(fault, Fault):
            return Abort(
                Panic(
                    f"error mapper for {node.label or node.capability!r} returned "
                    f"{type(fault).__name__}, not a Fault",
                    exc,
                    PanicKind.CONTRACT,
                )
            )
        logger.debug("%s failed: %s", node.label or node.capability, fault)
        return Error(fault)

    def _adopt(self, node: FallibleCall[Any], outcome: Outcome[Any, Any]) -> Control:
        if isinstance(outcome, Failure):
            error = outcome.error
            if isinstance(error, Exception) and not isinstance(error, (Fault, Panic)):
                return self._translate(node, error)
        return _control_from_outcome(outcome)

    # -----------------------------------------------------------------
    # Eval
    # -----------------------------------------------------------------
    async def _eval(self, effect: Effect[Any, Any]) -> Control:
        match effect:
            case Pure(value=value):
                return Value(value)
            case Fail(error=error):
                return Error(error)
            case Die(panic=exc):
                return Abort(exc)
            case FromOutcome(outcome=outcome):
                return _control_from_outcome(outcome)
            case Access(capability=name):
                if name not in self.env:
                    return Error(MissingCapability([name]))
                return Value(self.env[name])
            case FallibleCall():
                return await self._call(effect)
            case Suspend(thunk=thunk):
                produced = self._apply(thunk)
                if isinstance(produced, Value):
                    return self._enter(produced.value)
                return produced
            case GeneratorEffect(factory=factory, name=name):
                started = self._apply(factory)
                if not isinstance(started, Value):
                    return started
                gen = started.value
                if not inspect.isgenerator(gen):
                    if isinstance(gen, Effect):
                        return self._enter(gen)
                    return Value(gen)
                return self._advance(GeneratorFrame(gen, name), None, first=True)
            case Map(source=source, f=f):
                self.stack.append(MapFrame(f))
                return Eval(source)
            case FlatMap(source=source, f=f):
                self.stack.append(FlatMapFrame(f))
                return Eval(source)
            case MapError(source=source, f=f):
                self.stack.append(MapErrorFrame(f))
                return Eval(source)
            case CatchAll(source=source, handler=handler):
                self.stack.append(CatchFrame(handler))
                return Eval(source)
            case Either(source=source):
                self.stack.append(EitherFrame())
                return Eval(source)
            case Provide(source=source, env=env):
                self.stack.append(EnvFrame(self.env))
                self.env = overlay(self.env, env)
                return Eval(source)
            case AcquireRelease(acquire=acquire, release=release, use=use):
                self.stack.append(UseFrame(release, use))
                return Eval(acquire)
            case Timeout():
                return await self._timeout(effect)
        return Abort(
            Panic(
                f"unknown effect node {type(effect).__name__}",
                kind=PanicKind.CONTRACT,
            )
        )

    def _advance(
        self, frame: GeneratorFrame, sent: Any, *, first: bool = False
    ) -> Control:
        try:
            yielded = next(frame.generator) if first else frame.generator.send(sent)
        except StopIteration as stop:
            return Value(stop.value)
        except Fault as fault:
            return Error(fault)
        except Panic as exc:
            return Abort(exc)
        except Exception as exc:
            return Abort(Panic(f"{frame.name} raised {type(exc).__name__}", exc))
        self.stack.append(frame)
        return self._enter(yielded)

    # -----------------------------------------------------------------
    # suspension points
    # -----------------------------------------------------------------
    async def _call(self, node: FallibleCall[Any]) -> Control:
        if node.capability not in self.env:
            return Error(MissingCapability([node.capability]))
        implementation = self.env[node.capability]

        try:
            produced = node.call(implementation)
        except Panic as exc:
            return Abort(exc)
        except Exception as exc:
            return self._translate(node, exc)

        if isinstance(produced, Outcome):
            return self._adopt(node, produced)
        if inspect.isawaitable(produced):
            return await self._suspend(node, produced)
        return Value(produced)

    async def _suspend(self, node: FallibleCall[Any], awaitable: Awaitable[Any]) -> Control:
        label = node.label or node.capability
        if self.signal.is_set():
            _discard(awaitable)
            return Abort(Cancelled(self.signal.reason))

        logger.debug("suspending on %s", label)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.signal.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self.host_cancelled = True
            await _settle(task, waiter)
            logger.info("host cancelled the run while suspended on %s", label)
            return Abort(Cancelled("host task cancelled"))

        if not task.done():
            await _settle(task, waiter)
            logger.info("cancellation observed while suspended on %s", label)
            return Abort(Cancelled(self.signal.reason))

        await _settle(waiter)
        try:
            produced = task.result()
        except asyncio.CancelledError:
            return Abort(Cancelled(f"{label} was cancelled"))
        except Panic as exc:
            return Abort(exc)
        except Exception as exc:
            return self._translate(node, exc)

        logger.debug("resumed after %s", label)
        if isinstance(produced, Outcome):
            return self._adopt(node, produced)
        return Value(produced)

    async def _timeout(self, node: Timeout[Any]) -> Control:
        if CLOCK not in self.env:
            return Error(MissingCapability([CLOCK]))
        if self.signal.is_set():
            return Abort(Cancelled(self.signal.reason))

        clock = self.env[CLOCK]
        child_signal = CancellationSignal()
        child_fiber = _Fiber(self.runtime, self.env, child_signal)
        child = asyncio.ensure_future(child_fiber.run(node.source))
        try:
            timer = asyncio.ensure_future(clock.sleep(node.seconds))
        except Exception as exc:
            child_signal.set("clock failed")
            await self._await_uninterrupted(child)
            return Error(ClockFault(exc))
        waiter = asyncio.ensure_future(self.signal.wait())

        try:
            await asyncio.wait(
                {child, timer, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            self.host_cancelled = True
            child_signal.set("host task cancelled")
            await _settle(timer, waiter)
            await self._await_uninterrupted(child)
            return Abort(Cancelled("host task cancelled"))

        if child.done():
            await _settle(timer, waiter)
            outcome = child.result()
            if isinstance(child_fiber.final, Abort):
                return child_fiber.final
            return _control_from_outcome(outcome)

        if waiter.done():
            child_signal.set(self.signal.reason)
            await _settle(timer)
            await self._await_uninterrupted(child)
            return Abort(Cancelled(self.signal.reason))

        await _settle(waiter)
        timer_error = timer.exception()
        if timer_error is not None:
            child_signal.set("clock failed")
            await self._await_uninterrupted(child)
            return Error(ClockFault(timer_error))
        reason = f"timed out after {node.seconds:g}s"
        child_signal.set(reason)
        await self._await_uninterrupted(child)
        final = child_fiber.final
        if isinstance(final, Abort) and isinstance(final.reason, Panic):
            return final
        logger.info("%s", reason)
        return Error(TimedOut(node.seconds))

    async def _await_uninterrupted(
        self, task: asyncio.Future[Any], timeout: float | None = None
    ) -> Any:
        """Wait for ``task`` while refusing host cancellation.

        Returns the task's result, or ``None`` if ``timeout`` elapsed (the task
        is then cancelled).
        """

        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not task.done():
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            try:
                await asyncio.wait({task}, timeout=remaining)
            except asyncio.CancelledError:
                self.host_cancelled = True
                continue
            if deadline is not None and not task.done():
                await _settle(task)
                return None
        if task.cancelled():
            return None
        return task.result()

    # -----------------------------------------------------------------
    # cleanup
    # -----------------------------------------------------------------
    async def _release(self, frame: ReleaseFrame, exit: Outcome[Any, Any]) -> Panic | None:
        """Run one release handler. It cannot be cancelled; failures become panics."""

        try:
            finalizer = frame.release(frame.resource, exit)
        except Exception as exc:
            return Panic(
                f"release handler {_callable_name(frame.release)} raised",
                exc,
                PanicKind.CLEANUP,
            )
        if not isinstance(finalizer, Effect):
            return Panic(
                f"release handler returned {type(finalizer).__name__}, not an Effect",
                kind=PanicKind.CLEANUP,
            )
        absent = missing(finalizer.requires, frame.env)
        if absent:
            return Panic(
                "release handler needs capabilities the scope does not provide",
                MissingCapability(absent),
                PanicKind.CLEANUP,
            )

        logger.debug("running cleanup %s", _callable_name(frame.release))
        cleanup = asyncio.ensure_future(
            _Fiber(self.runtime, frame.env, CancellationSignal()).run(finalizer)
        )
        outcome = await self._await_uninterrupted(
            cleanup, self.runtime.config.cleanup_timeout
        )
        if outcome is None:
            return Panic(
                f"cleanup exceeded {self.runtime.config.cleanup_timeout}s",
                kind=PanicKind.CLEANUP,
            )
        if isinstance(outcome, Failure):
            error = outcome.error
            return Panic(
                f"cleanup failed: {error}",
                error if isinstance(error, BaseException) else None,
                PanicKind.CLEANUP,
            )
        return None

    # -----------------------------------------------------------------
    # frame handling
    # -----------------------------------------------------------------
    async def _on_value(self, frame: Frame, control: Value) -> Control:
        value = control.value
        match frame:
            case MapFrame(f=f):
                return self._apply(f, value)
            case FlatMapFrame(f=f):
                produced = self._apply(f, value)
                if isinstance(produced, Value):
                    return self._enter(produced.value)
                return produced
            case EitherFrame():
                return Value(Success(value))
            case EnvFrame(previous=previous):
                self.env = previous
                return control
            case GeneratorFrame():
                return self._advance(frame, value)
            case UseFrame(release=release, use=use):
                self.stack.append(ReleaseFrame(release, value, self.env))
                produced = self._apply(use, value)
                if isinstance(produced, Value):
                    return self._enter(produced.value)
                return produced
            case ReleaseFrame():
                failed = await self._release(frame, Success(value))
                return control if failed is None else Abort(failed)
        return control

    async def _on_error(self, frame: Frame, control: Error) -> Control:
        error = control.error
        match frame:
            case MapErrorFrame(f=f):
                mapped = self._apply(f, error)
                if isinstance(mapped, Value):
                    if isinstance(mapped.value, Fault):
                        return Error(mapped.value)
                    return Abort(
                        Panic(
                            f"map_error returned {type(mapped.value).__name__}, not a Fault",
                            kind=PanicKind.CONTRACT,
                        )
                    )
                return mapped
            case CatchFrame(handler=handler):
                produced = self._apply(handler, error)
                if isinstance(produced, Value):
                    return self._enter(produced.value)
                return produced
            case EitherFrame():
                return Value(Failure(error))
            case EnvFrame(previous=previous):
                self.env = previous
            case GeneratorFrame():
                _close_generator(frame)
            case ReleaseFrame():
                failed = await self._release(frame, Failure(error))
                if failed is not None:
                    return Abort(failed)
        return control

    async def _on_abort(self, frame: Frame, control: Abort) -> Control:
        match frame:
            case EnvFrame(previous=previous):
                self.env = previous
            case GeneratorFrame():
                _close_generator(frame)
            case ReleaseFrame():
                failed = await self._release(frame, Failure(control.reason))
                if failed is not None:
                    return Abort(failed)
        return control


class RunHandle(Generic[A]):
    """Handle to a run scheduled with :func:`spawn`."""

    def __init__(self, task: asyncio.Task[Outcome[A, Any]], signal: CancellationSignal) -> None:
        self._task = task
        self._signal = signal

    def cancel(self, reason: str | None = None) -> bool:
        """Raise the run's cancellation signal.

        Observed at the run's next suspension point; returns ``False`` when the
        signal had already been raised.
        """

        return self._signal.set(reason)

    @property
    def cancel_requested(self) -> bool:
        return self._signal.is_set()

    @property
    def signal(self) -> CancellationSignal:
        return self._signal

    def done(self) -> bool:
        return self._task.done()

    async def outcome(self) -> Outcome[A, Any]:
        return await self._task

    def __await__(self) -> Generator[Any, None, Outcome[A, Any]]:
        return self._task.__await__()


class Runtime:
    """Entry point for interpreting effects."""

    def __init__(self, config: RuntimeConfig | None = None) -> None:
        self.config = config or RuntimeConfig.from_env()

    def _bind(self, env: Mapping[str, Any] | None) -> Environment:
        if isinstance(env, frozendict):
            return env
        return make_environment(env)

    async def run(
        self,
        effect: Effect[A, Any],
        env: Mapping[str, Any] | None = None,
        *,
        signal: CancellationSignal | None = None,
    ) -> Outcome[A, Any]:
        """Drive ``effect`` to its terminal outcome.

        Fails with ``MissingCapability`` before any step executes when ``env``
        does not cover ``effect.requires``.
        """

        if not isinstance(effect, Effect):
            raise TypeError(f"run expects an Effect, got {type(effect).__name__}")
        bound = self._bind(env)
        absent = missing(effect.requires, bound)
        if absent:
            logger.warning("refusing to run: missing capabilities %s", sorted(absent))
            return Failure(MissingCapability(absent))
        fiber = _Fiber(self, bound, signal or CancellationSignal())
        return await fiber.run(effect)

    def spawn(
        self, effect: Effect[A, Any], env: Mapping[str, Any] | None = None
    ) -> RunHandle[A]:
        """Schedule an independent run as a task on the running loop."""

        signal = CancellationSignal()
        task = asyncio.get_running_loop().create_task(
            self.run(effect, env, signal=signal)
        )
        return RunHandle(task, signal)

    def run_sync(
        self, effect: Effect[A, Any], env: Mapping[str, Any] | None = None
    ) -> Outcome[A, Any]:
        """Run on a fresh event loop; for scripts and synchronous callers."""

        return asyncio.run(self.run(effect, env))


_default_runtime: Runtime | None = None


def default_runtime() -> Runtime:
    global _default_runtime
    if _default_runtime is None:
        _default_runtime = Runtime()
    return _default_runtime


async def run(
    effect: Effect[A, Any],
    env: Mapping[str, Any] | None = None,
    *,
    signal: CancellationSignal | None = None,
) -> Outcome[A, Any]:
    return await default_runtime().run(effect, env, signal=signal)


def spawn(effect: Effect[A, Any], env: Mapping[str, Any] | None = None) -> RunHandle[A]:
    return default_runtime().spawn(effect, env)


def run_sync(effect: Effect[A, Any], env: Mapping[str, Any] | None = None) -> Outcome[A, Any]:
    return default_runtime().run_sync(effect, env)


__all__ = [
    "CancellationSignal",
    "RunHandle",
    "Runtime",
    "default_runtime",
    "run",
    "run_sync",
    "spawn",
]
