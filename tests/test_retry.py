"""Tests for the backoff controller, cancellable waits and the tenant rate limiter."""

import asyncio
import time

import pytest

from syncward.connectors.base import FetchOutcome, OutcomeKind
from syncward.core.errors import FatalError, RunCancelledError, ThrottledError, TransientError
from syncward.engine.rate_limiter import TenantRateLimiter
from syncward.engine.retry import (
    BackoffController,
    RetryPolicy,
    cancellable_sleep,
    run_cancellable,
)

POLICY = RetryPolicy(max_attempts=3, base_delay=2.0, min_wait=1.0, max_wait=300.0, throttle_default=60.0)


def scripted(*outcomes):
    queue = list(outcomes)
    calls = []

    async def attempt():
        calls.append(len(calls) + 1)
        return queue.pop(0)

    return attempt, calls


class TestRetryPolicy:
    def test_throttle_wait_uses_hint_clamped(self):
        assert POLICY.throttle_wait(30) == 30
        assert POLICY.throttle_wait(0.1) == 1.0
        assert POLICY.throttle_wait(10_000) == 300.0
        assert POLICY.throttle_wait(None) == 60.0

    def test_transient_wait_doubles(self):
        assert [POLICY.transient_wait(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]
        assert POLICY.transient_wait(20) == 300.0


def test_outcomes_map_onto_error_taxonomy():
    throttled = FetchOutcome.throttled(30.0, "limit").as_error()
    assert isinstance(throttled, ThrottledError)
    assert throttled.retry_after == 30.0
    assert throttled.retryable
    assert isinstance(FetchOutcome.transient("HTTP 502").as_error(), TransientError)
    fatal = FetchOutcome.fatal("bad token").as_error()
    assert isinstance(fatal, FatalError)
    assert not fatal.retryable
    assert fatal.reason == "bad token"


class TestBackoffController:
    @pytest.mark.asyncio
    async def test_throttled_then_success(self, fake_sleep, sleeps):
        attempt, calls = scripted(FetchOutcome.throttled(30.0, "limit"), FetchOutcome.success([]))
        result = await BackoffController(POLICY, sleep=fake_sleep).execute(attempt)

        assert result.succeeded
        assert result.attempts == 2
        assert result.waited_seconds >= 30
        assert sleeps == [30.0]

    @pytest.mark.asyncio
    async def test_transient_exhausts_attempt_limit(self, fake_sleep, sleeps):
        attempt, calls = scripted(*[FetchOutcome.transient("HTTP 503")] * 3)
        result = await BackoffController(POLICY, sleep=fake_sleep).execute(attempt)

        assert not result.succeeded
        assert result.outcome.kind == OutcomeKind.TRANSIENT
        assert result.attempts == 3
        assert len(calls) == 3
        assert sleeps == [2.0, 4.0]
        assert len(result.errors) == 3

    @pytest.mark.asyncio
    async def test_fatal_is_never_retried(self, fake_sleep, sleeps):
        attempt, calls = scripted(FetchOutcome.fatal("Invalid OAuth access token"))
        result = await BackoffController(POLICY, sleep=fake_sleep).execute(attempt)

        assert result.attempts == 1
        assert result.outcome.error == "Invalid OAuth access token"
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_throttle_without_hint_uses_default(self, fake_sleep, sleeps):
        attempt, _ = scripted(FetchOutcome.throttled(None), FetchOutcome.success([]))
        await BackoffController(POLICY, sleep=fake_sleep).execute(attempt)
        assert sleeps == [60.0]

    @pytest.mark.asyncio
    async def test_cancel_during_wait(self):
        cancel = asyncio.Event()
        attempt, calls = scripted(FetchOutcome.transient("boom"), FetchOutcome.success([]))
        policy = POLICY.model_copy(update={"base_delay": 30.0})
        controller = BackoffController(policy)

        task = asyncio.create_task(controller.execute(attempt, cancel))
        await asyncio.sleep(0.05)
        cancel.set()
        started = time.monotonic()
        with pytest.raises(RunCancelledError):
            await task
        assert time.monotonic() - started < 1.0
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_before_first_attempt(self):
        cancel = asyncio.Event()
        cancel.set()
        attempt, calls = scripted(FetchOutcome.success([]))
        with pytest.raises(RunCancelledError):
            await BackoffController(POLICY).execute(attempt, cancel)
        assert calls == []


class TestCancellableWaits:
    @pytest.mark.asyncio
    async def test_sleep_returns_false_when_cancelled(self):
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.02, cancel.set)
        assert await cancellable_sleep(10, cancel) is False

    @pytest.mark.asyncio
    async def test_sleep_completes(self):
        assert await cancellable_sleep(0.01, asyncio.Event()) is True

    @pytest.mark.asyncio
    async def test_in_flight_call_is_abandoned_on_cancel(self):
        cancel = asyncio.Event()
        finished = []

        async def slow_call():
            await asyncio.sleep(10)
            finished.append(True)

        asyncio.get_running_loop().call_later(0.02, cancel.set)
        with pytest.raises(RunCancelledError):
            await run_cancellable(slow_call(), cancel)
        assert finished == []


class TestTenantRateLimiter:
    @pytest.mark.asyncio
    async def test_spacing_between_requests(self):
        limiter = TenantRateLimiter("brand-1", min_interval=0.05)
        started = time.monotonic()
        for _ in range(3):
            await limiter.acquire()
        assert time.monotonic() - started >= 0.09
        assert limiter.request_count == 3

    @pytest.mark.asyncio
    async def test_penalize_pushes_next_slot(self):
        clock = [100.0]
        limiter = TenantRateLimiter("brand-1", min_interval=0.0, clock=lambda: clock[0])
        limiter.penalize(30)
        assert limiter.snapshot()["next_slot_in"] == 30.0
        assert limiter.throttle_count == 1

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_slot(self):
        limiter = TenantRateLimiter("brand-1", min_interval=0.0)
        limiter.penalize(30)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.02, cancel.set)
        with pytest.raises(RunCancelledError):
            await limiter.acquire(cancel)

    @pytest.mark.asyncio
    async def test_tenants_do_not_share_limits(self):
        a = TenantRateLimiter("brand-a", min_interval=0.0)
        b = TenantRateLimiter("brand-b", min_interval=0.0)
        a.penalize(30)
        assert await asyncio.wait_for(b.acquire(), timeout=1.0) == 0.0
