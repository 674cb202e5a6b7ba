import logging
import time

import pytest

from src.sched.clock import SystemClock
from src.sched.cooldown import CooldownRegistry
from src.sched.errors import ModelCoolingDown, ProviderError, QuotaExhausted, RateLimited, TransientFailure
from src.sched.executor import MAX_BACKOFF_MS, RetryExecutor, RetryPolicy, backoff_delay_ms
from src.sched.quota import Quota, QuotaTable, UsageLedger
from src.sched.rate_limiter import ProviderGates
from src.sched.router import ModelRoute, SchedulerSettings
from src.sched.types import ProviderCompletion
from tests.helpers import FakeClock, ScriptedProvider, ZeroJitter, provider_def

ROUTE = ModelRoute(provider="alpha", model="m1")


def make_executor(quotas=None):
    clock = FakeClock()
    cooldowns = CooldownRegistry(clock)
    gates = ProviderGates(clock, cooldowns)
    gates.get("alpha", provider_def("alpha", ["m1"]))
    ledger = UsageLedger(clock, cooldowns, QuotaTable(quotas or {}, defaults={}))
    executor = RetryExecutor(gates, ledger, cooldowns, clock, rand=ZeroJitter())
    return clock, cooldowns, ledger, executor


def default_policy(**overrides) -> RetryPolicy:
    return RetryPolicy.for_provider(SchedulerSettings(**overrides))


def test_backoff_doubles_and_caps() -> None:
    assert backoff_delay_ms(0, 1500) == 1500
    assert backoff_delay_ms(1, 1500) == 3000
    assert backoff_delay_ms(2, 1500, 300) == 6300
    assert backoff_delay_ms(10, 1500, 300) == MAX_BACKOFF_MS


def test_retry_policy_applies_provider_overrides() -> None:
    settings = SchedulerSettings(max_retries=2, retry_base_delay_ms=1500, rate_limit_min_cooldown_ms=15000)
    defn = provider_def("alpha", ["m1"], max_retries=0, retry_base_delay_ms=250.0)

    policy = RetryPolicy.for_provider(settings, defn)

    assert policy.max_retries == 0
    assert policy.base_delay_ms == 250.0
    assert policy.rate_limit_min_cooldown_ms == 15000
    assert policy.quota_exhausted_cooldown_ms == settings.quota_exhausted_cooldown_ms


@pytest.mark.anyio
async def test_rate_limit_with_retry_after_waits_then_succeeds(anyio_backend: str) -> None:
    _ = anyio_backend
    clock, cooldowns, _ledger, executor = make_executor()
    start = clock.now_ms()
    provider = ScriptedProvider(
        "alpha",
        [RateLimited("slow down", status=429, retry_after_ms=5000), "alpha-ok"],
        clock=clock,
    )

    result = await executor.run(ROUTE, provider, "", "hello", default_policy())

    assert result.completion.content == "alpha-ok"
    assert result.attempts == 2
    assert clock.now_ms() - start >= 5000
    assert provider.dispatched_at[1] - provider.dispatched_at[0] >= 5000
    assert cooldowns.model_until(ROUTE.key) - start >= 5000
    assert cooldowns.provider_until("alpha") - start >= 5000


@pytest.mark.anyio
async def test_rate_limit_without_retry_after_uses_minimum_cooldown(anyio_backend: str) -> None:
    _ = anyio_backend
    clock, cooldowns, _ledger, executor = make_executor()
    start = clock.now_ms()
    provider = ScriptedProvider("alpha", [ProviderError("too many requests", status=429)], clock=clock)

    result = await executor.run(ROUTE, provider, "", "hello", default_policy())

    assert result.attempts == 2
    assert cooldowns.provider_until("alpha") == start + 15000
    assert provider.dispatched_at[1] - start == 15000


@pytest.mark.anyio
async def test_fatal_error_is_not_retried(anyio_backend: str) -> None:
    _ = anyio_backend
    clock, _cooldowns, _ledger, executor = make_executor()
    provider = ScriptedProvider("alpha", [ProviderError("bad request", status=400)], clock=clock)

    with pytest.raises(ProviderError):
        await executor.run(ROUTE, provider, "", "hello", default_policy())

    assert len(provider.calls) == 1
    assert clock.sleeps == []


@pytest.mark.anyio
async def test_transient_errors_back_off_then_give_up(anyio_backend: str) -> None:
    _ = anyio_backend
    clock, _cooldowns, _ledger, executor = make_executor()
    provider = ScriptedProvider(
        "alpha",
        [TransientFailure("timeout"), TransientFailure("timeout"), TransientFailure("network")],
        clock=clock,
    )

    with pytest.raises(TransientFailure) as excinfo:
        await executor.run(ROUTE, provider, "", "hello", default_policy())

    assert excinfo.value.message == "network"
    assert len(provider.calls) == 3
    assert clock.sleeps == [1500, 3000]


@pytest.mark.anyio
async def test_quota_exhaustion_cools_provider_and_model_without_retry(anyio_backend: str) -> None:
    _ = anyio_backend
    clock, cooldowns, _ledger, executor = make_executor()
    start = clock.now_ms()
    provider = ScriptedProvider("alpha", [QuotaExhausted("out of quota", status=429)], clock=clock)

    with pytest.raises(QuotaExhausted):
        await executor.run(ROUTE, provider, "", "hello", default_policy())

    assert len(provider.calls) == 1
    assert cooldowns.model_until(ROUTE.key) - start >= 900_000
    assert cooldowns.provider_until("alpha") - start >= 900_000
    assert clock.sleeps == []


@pytest.mark.anyio
async def test_near_limit_rejects_before_dispatch(anyio_backend: str) -> None:
    _ = anyio_backend
    clock, _cooldowns, _ledger, executor = make_executor({ROUTE.key: Quota(rpm=2)})
    provider = ScriptedProvider("alpha", clock=clock)

    with pytest.raises(ModelCoolingDown):
        await executor.run(ROUTE, provider, "", "hello", default_policy())

    assert provider.calls == []


@pytest.mark.anyio
async def test_success_reconciles_reported_token_counts(anyio_backend: str) -> None:
    _ = anyio_backend
    clock, _cooldowns, ledger, executor = make_executor()
    provider = ScriptedProvider(
        "alpha",
        [ProviderCompletion(content="ok", model="m1", prompt_tokens=7, completion_tokens=11)],
        clock=clock,
    )

    result = await executor.run(ROUTE, provider, "", "x" * 40, default_policy())

    assert (result.prompt_tokens, result.completion_tokens) == (7, 11)
    assert ledger.window(ROUTE).minute_tokens == 18
    assert ledger.window(ROUTE).minute_requests == 1


@pytest.mark.anyio
async def test_missing_token_counts_fall_back_to_estimates(anyio_backend: str) -> None:
    _ = anyio_backend
    clock, _cooldowns, ledger, executor = make_executor()
    provider = ScriptedProvider("alpha", ["abcdefgh"], clock=clock)

    result = await executor.run(ROUTE, provider, "sys!", "x" * 40, default_policy())

    assert (result.prompt_tokens, result.completion_tokens) == (11, 2)
    assert ledger.window(ROUTE).minute_tokens == 13


class SlowHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        _ = record
        time.sleep(0.01)


@pytest.mark.anyio
async def test_rate_limit_retry_survives_slow_logging_on_real_clock(anyio_backend: str) -> None:
    _ = anyio_backend
    clock = SystemClock()
    cooldowns = CooldownRegistry(clock)
    gates = ProviderGates(clock, cooldowns)
    gates.get("alpha", provider_def("alpha", ["m1"]))
    ledger = UsageLedger(clock, cooldowns, QuotaTable({}, defaults={}))
    executor = RetryExecutor(gates, ledger, cooldowns, clock, rand=ZeroJitter())
    provider = ScriptedProvider("alpha", [RateLimited("slow down", status=429, retry_after_ms=30), "ok"], clock=clock)
    cooldown_logger = logging.getLogger("src.sched.cooldown")
    handler = SlowHandler(logging.INFO)
    previous_level = cooldown_logger.level
    cooldown_logger.addHandler(handler)
    cooldown_logger.setLevel(logging.INFO)
    try:
        result = await executor.run(ROUTE, provider, "", "hello", default_policy(retry_base_delay_ms=1))
    finally:
        cooldown_logger.removeHandler(handler)
        cooldown_logger.setLevel(previous_level)

    assert result.completion.content == "ok"
    assert result.attempts == 2
    assert cooldowns.model_until(ROUTE.key) == cooldowns.provider_until("alpha")


@pytest.mark.anyio
async def test_rate_limit_cools_model_and_provider_to_the_same_instant(anyio_backend: str) -> None:
    _ = anyio_backend
    clock, cooldowns, _ledger, executor = make_executor()
    provider = ScriptedProvider("alpha", [RateLimited("slow down", status=429, retry_after_ms=2500)], clock=clock)

    await executor.run(ROUTE, provider, "", "hello", default_policy())

    assert cooldowns.model_until(ROUTE.key) == cooldowns.provider_until("alpha")
