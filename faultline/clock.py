"""Clock capability: delays and the time source used by ``timeout`` and ``retry``."""

from __future__ import annotations

import asyncio
import time
from typing import Protocol, runtime_checkable

from faultline.effect import Effect, from_fallible_call
from faultline.errors import Fault

CLOCK = "clock"


@runtime_checkable
class Clock(Protocol):
    """What the runtime needs from a time source."""

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Real time, backed by the running event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def __repr__(self) -> str:
        return "SystemClock()"


class ClockFault(Fault):
    """The clock capability itself failed."""

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(cause)
        self.__cause__ = cause


def sleep(seconds: float) -> Effect[None, ClockFault]:
    """Suspend for ``seconds`` on the ``clock`` capability."""

    if seconds < 0:
        raise ValueError("sleep duration must not be negative")
    return from_fallible_call(
        CLOCK,
        lambda clock: clock.sleep(seconds),
        ClockFault,
        label=f"sleep({seconds:g})",
    )


def now() -> Effect[float, ClockFault]:
    """Read the clock's monotonic time."""

    return from_fallible_call(CLOCK, lambda clock: clock.monotonic(), ClockFault, label="now")


__all__ = ["CLOCK", "Clock", "ClockFault", "SystemClock", "now", "sleep"]
