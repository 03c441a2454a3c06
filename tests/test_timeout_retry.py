from __future__ import annotations

import asyncio

import pytest

from faultline import (
    CLOCK,
    Cancelled,
    ClockFault,
    Failure,
    MissingCapability,
    StatusFault,
    Success,
    SystemClock,
    TimedOut,
    TransportFault,
    acquire_release,
    from_fallible_call,
    http,
    pure,
    run,
    spawn,
    suspend,
    unit,
)
from faultline.clock import now, sleep
from faultline.transport import TRANSPORT, RawResponse


class Flaky:
    """Fails with a connection reset ``failures`` times, then succeeds."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def fetch(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionResetError("reset by peer")
        return "payload"


class BrokenClock(SystemClock):
    async def sleep(self, seconds: float) -> None:
        raise RuntimeError("clock unavailable")


class Interrupted:
    async def fetch(self) -> None:
        raise asyncio.CancelledError()


def flaky_fetch():
    return from_fallible_call("svc", lambda s: s.fetch(), TransportFault.from_exception)


class TestTimeout:
    @pytest.mark.asyncio
    async def test_finishes_before_deadline(self):
        outcome = await run(pure("quick").timeout(1.0), {CLOCK: SystemClock()})
        assert outcome == Success("quick")

    @pytest.mark.asyncio
    async def test_deadline_elapses(self, make_transport):
        transport = make_transport(hang=True)
        events: list[str] = []

        def released():
            events.append("released")
            return unit()

        effect = http.request("/slow").ensuring(suspend(released)).timeout(0.02)
        outcome = await run(effect, {TRANSPORT: transport, CLOCK: SystemClock()})
        assert outcome == Failure(TimedOut(0.02))
        assert events == ["released"]

    @pytest.mark.asyncio
    async def test_timed_out_is_recoverable(self, make_transport):
        transport = make_transport(hang=True)
        effect = http.request("/slow").timeout(0.01).catch_all(lambda e: pure(str(e)))
        outcome = await run(effect, {TRANSPORT: transport, CLOCK: SystemClock()})
        assert outcome == Success("timed out after 0.01s")

    @pytest.mark.asyncio
    async def test_inner_failure_passes_through(self):
        outcome = await run(
            pure(1).flat_map(lambda _: http.expect_success(RawResponse(500))).timeout(1.0),
            {CLOCK: SystemClock()},
        )
        assert outcome == Failure(StatusFault(500))

    def test_requires_clock(self):
        assert CLOCK in pure(1).timeout(1.0).requires

    @pytest.mark.asyncio
    async def test_missing_clock_is_refused(self):
        outcome = await run(pure(1).timeout(1.0))
        assert outcome == Failure(MissingCapability([CLOCK]))

    @pytest.mark.asyncio
    async def test_broken_clock_is_a_clock_fault(self):
        outcome = await run(pure(1).flat_map(lambda _: sleep(0.5)), {CLOCK: BrokenClock()})
        assert isinstance(outcome.error, ClockFault)

    @pytest.mark.asyncio
    async def test_clock_failure_cancels_with_its_own_reason(self, make_transport):
        transport = make_transport(hang=True)
        exits = []

        def release(_resource, exit):
            exits.append(exit)
            return unit()

        effect = acquire_release(
            unit(), release, lambda _: http.request("/slow"), requires={TRANSPORT}
        ).timeout(1.0)
        outcome = await run(effect, {TRANSPORT: transport, CLOCK: BrokenClock()})
        assert isinstance(outcome.error, ClockFault)
        assert exits == [Failure(Cancelled("clock failed"))]

    @pytest.mark.asyncio
    async def test_cancellation_inside_is_not_recoverable(self):
        handled = []

        def handler(error):
            handled.append(error)
            return pure("recovered")

        call = from_fallible_call("svc", lambda s: s.fetch(), TransportFault.from_exception)
        env = {"svc": Interrupted(), CLOCK: SystemClock()}
        bare = await run(call.catch_all(handler), env)
        raced = await run(call.timeout(5.0).catch_all(handler), env)
        assert isinstance(raced.error, Cancelled)
        assert raced == bare
        assert handled == []

    @pytest.mark.asyncio
    async def test_cancelling_the_run_cancels_the_raced_effect(self, make_transport):
        transport = make_transport(hang=True)
        handle = spawn(
            http.request("/slow").timeout(10.0), {TRANSPORT: transport, CLOCK: SystemClock()}
        )
        await transport.started.wait()
        handle.cancel("stop")
        assert await handle == Failure(Cancelled("stop"))


class TestRetry:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        service = Flaky(failures=2)
        outcome = await run(flaky_fetch().retry(3), {"svc": service})
        assert outcome == Success("payload")
        assert service.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_with_last_failure(self):
        service = Flaky(failures=10)
        outcome = await run(flaky_fetch().retry(2), {"svc": service})
        assert isinstance(outcome.error, TransportFault)
        assert service.calls == 2

    @pytest.mark.asyncio
    async def test_when_predicate_limits_retries(self):
        service = Flaky(failures=10)
        effect = flaky_fetch().retry(5, when=lambda fault: isinstance(fault, StatusFault))
        await run(effect, {"svc": service})
        assert service.calls == 1

    @pytest.mark.asyncio
    async def test_delay_sleeps_on_the_clock(self):
        class CountingClock(SystemClock):
            def __init__(self) -> None:
                self.sleeps: list[float] = []

            async def sleep(self, seconds: float) -> None:
                self.sleeps.append(seconds)
                await asyncio.sleep(0)

        clock = CountingClock()
        service = Flaky(failures=2)
        effect = flaky_fetch().retry(3, delay=0.5)
        assert effect.requires == {"svc", CLOCK}
        outcome = await run(effect, {"svc": service, CLOCK: clock})
        assert outcome == Success("payload")
        assert clock.sleeps == [0.5, 0.5]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            pure(1).retry(0)


class TestClockEffects:
    @pytest.mark.asyncio
    async def test_now_reads_monotonic_time(self):
        outcome = await run(now(), {CLOCK: SystemClock()})
        assert isinstance(outcome.value, float)

    def test_negative_sleep_rejected(self):
        with pytest.raises(ValueError):
            sleep(-1)
