from __future__ import annotations

import asyncio

import pytest
from src.domain.errors import ValidationError
from src.libs.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Operation:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.fail:
            raise ConnectionError("store unavailable")
        return "ok"


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(
        "store",
        failure_threshold=3,
        reset_timeout=60.0,
        monitoring_period=10.0,
        ignored_exceptions=(ValidationError,),
        clock=clock,
    )


async def _fail_times(breaker: CircuitBreaker, op: Operation, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.execute(op)


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_fails_fast(self, breaker: CircuitBreaker) -> None:
        op = Operation(fail=True)
        await _fail_times(breaker, op, 3)

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.execute(op)
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_errors_propagate_unchanged(self, breaker: CircuitBreaker) -> None:
        with pytest.raises(ConnectionError, match="store unavailable"):
            await breaker.execute(Operation(fail=True))
        assert breaker.stats().failure_count == 1

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, breaker: CircuitBreaker) -> None:
        failing = Operation(fail=True)
        await _fail_times(breaker, failing, 2)
        assert await breaker.execute(Operation()) == "ok"
        await _fail_times(breaker, failing, 2)

        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failures_outside_window_do_not_count(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        op = Operation(fail=True)
        await _fail_times(breaker, op, 2)
        clock.advance(11)
        await _fail_times(breaker, op, 1)

        assert breaker.state is CircuitState.CLOSED
        assert breaker.stats().window_failures == 1

    @pytest.mark.asyncio
    async def test_trial_call_after_reset_timeout_closes(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        await _fail_times(breaker, Operation(fail=True), 3)
        clock.advance(60)

        op = Operation()
        assert await breaker.execute(op) == "ok"
        assert op.calls == 1
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self, breaker: CircuitBreaker, clock: FakeClock) -> None:
        op = Operation(fail=True)
        await _fail_times(breaker, op, 3)
        clock.advance(61)

        await _fail_times(breaker, op, 1)

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as excinfo:
            await breaker.execute(op)
        assert excinfo.value.retry_after == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_only_one_trial_call_while_half_open(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        await _fail_times(breaker, Operation(fail=True), 3)
        clock.advance(60)
        release = asyncio.Event()

        async def slow() -> str:
            await release.wait()
            return "ok"

        trial = asyncio.create_task(breaker.execute(slow))
        await asyncio.sleep(0)
        assert breaker.state is CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.execute(Operation())

        release.set()
        assert await trial == "ok"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_ignored_exceptions_do_not_trip(self, breaker: CircuitBreaker) -> None:
        async def invalid() -> None:
            raise ValidationError("missing auditor")

        for _ in range(5):
            with pytest.raises(ValidationError):
                await breaker.execute(invalid)

        assert breaker.state is CircuitState.CLOSED
        assert breaker.stats().failure_count == 0

    @pytest.mark.asyncio
    async def test_stats_and_reset(self, breaker: CircuitBreaker) -> None:
        await breaker.execute(Operation())
        await _fail_times(breaker, Operation(fail=True), 3)

        stats = breaker.stats()
        assert stats.success_count == 1
        assert stats.failure_count == 3
        assert stats.state == "open"

        breaker.reset()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.stats().failure_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_trial_admits_the_next_call(
        self, breaker: CircuitBreaker, clock: FakeClock
    ) -> None:
        await _fail_times(breaker, Operation(fail=True), 3)
        clock.advance(60)

        async def hang() -> str:
            await asyncio.Event().wait()
            return "never"

        trial = asyncio.create_task(breaker.execute(hang))
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        op = Operation()
        assert await breaker.execute(op) == "ok"
        assert op.calls == 1
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_clock_starting_at_zero_still_times_out(self) -> None:
        clock = FakeClock()
        clock.now = 0.0
        breaker = CircuitBreaker("store", failure_threshold=1, reset_timeout=5.0, clock=clock)
        await _fail_times(breaker, Operation(fail=True), 1)

        clock.advance(5)

        assert await breaker.execute(Operation()) == "ok"
        assert breaker.state is CircuitState.CLOSED
