"""Fakes shared by the scheduler tests."""

from __future__ import annotations

import asyncio
from typing import Any, Iterable

from src.sched.clock import Clock, SystemClock
from src.sched.router import ChainConfig, LoadedConfig, ProviderDef, SchedulerSettings
from src.sched.types import ProviderCompletion

# 2023-11-14T22:14:00Z, the start of a minute window
START_MS = 1_700_000_040_000.0


class FakeClock(Clock):
    """Virtual time for single-flow tests: sleeping advances the clock."""

    def __init__(self, start_ms: float = START_MS):
        self.now = start_ms
        self.sleeps: list[float] = []

    def now_ms(self) -> float:
        return self.now

    async def sleep_ms(self, ms: float) -> None:
        self.sleeps.append(ms)
        self.now += max(0.0, ms)
        await asyncio.sleep(0)

    def advance(self, ms: float) -> None:
        self.now += ms


class ZeroJitter:
    def uniform(self, a: float, b: float) -> float:
        _ = b
        return a


class ScriptedProvider:
    """Provider stub that replays outcomes and records dispatch timing.

    Each outcome is either an exception to raise, a ``ProviderCompletion`` or a
    content string. Once the script runs out the provider answers with
    ``"<name>:<model>"``.
    """

    def __init__(
        self,
        name: str,
        outcomes: Iterable[Any] = (),
        *,
        clock: Clock | None = None,
        delay_s: float = 0.0,
    ):
        self.name = name
        self.outcomes = list(outcomes)
        self.clock = clock or SystemClock()
        self.delay_s = delay_s
        self.calls: list[tuple[str, str, str]] = []
        self.dispatched_at: list[float] = []
        self.completed_at: list[float] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, model: str, system_prompt: str, user_prompt: str) -> ProviderCompletion:
        self.calls.append((model, system_prompt, user_prompt))
        self.dispatched_at.append(self.clock.now_ms())
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            outcome = self.outcomes.pop(0) if self.outcomes else f"{self.name}:{model}"
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, ProviderCompletion):
                return outcome
            return ProviderCompletion(content=str(outcome), model=model)
        finally:
            self.in_flight -= 1
            self.completed_at.append(self.clock.now_ms())


def provider_def(
    name: str,
    models: list[str],
    *,
    max_concurrent: int = 1,
    min_spacing_ms: float = 0.0,
    **overrides: Any,
) -> ProviderDef:
    return ProviderDef(
        name=name,
        type="dummy",
        base_url="",
        models=models,
        auth_env=None,
        max_concurrent=max_concurrent,
        min_spacing_ms=min_spacing_ms,
        **overrides,
    )


def make_config(
    providers: list[ProviderDef],
    *,
    primary: list[str] | None = None,
    fallback: list[str] | None = None,
    override: str | None = None,
    **settings: Any,
) -> LoadedConfig:
    base_settings = {
        "max_retries": 2,
        "retry_base_delay_ms": 1500.0,
        "rate_limit_min_cooldown_ms": 15_000.0,
        "quota_exhausted_cooldown_ms": 900_000.0,
    }
    base_settings.update(settings)
    return LoadedConfig(
        providers={defn.name: defn for defn in providers},
        settings=SchedulerSettings(**base_settings),
        chain=ChainConfig(
            primary=list(primary or []),
            fallback=list(fallback or []),
            override=override,
        ),
    )
