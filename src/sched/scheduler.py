"""Chain orchestration: the public entry point of the scheduler core.

A :class:`Scheduler` owns every piece of shared state (provider gates, usage
windows, cooldowns and the chain rotation offset), so several schedulers can
live side by side in one process. All state is mutated from a single event
loop; mutations between suspension points are atomic with respect to other
callers, which is what keeps the check-then-reserve quota step race free.
"""

from __future__ import annotations

import logging
import random
from typing import Mapping, Union

from .clock import Clock, SystemClock
from .cooldown import CooldownRegistry
from .errors import ChainExhausted, ConfigurationFailure
from .executor import RetryExecutor, RetryPolicy
from .providers import BaseProvider, ProviderRegistry
from .quota import QuotaTable, UsageLedger
from .rate_limiter import ProviderGates
from .router import ChainPlanner, ConfigWatcher, LoadedConfig, ModelRoute, normalize_provider_name
from .types import CompletionResult, CompletionUsage

logger = logging.getLogger(__name__)

ConfigSource = Union[LoadedConfig, ConfigWatcher]


def _log_route_event(
    level: int,
    *,
    event: str,
    route: ModelRoute | None,
    attempts: int,
    detail: str | None = None,
) -> None:
    route_value = str(route) if route is not None else "none"
    message = f"{event} route={route_value} attempts={attempts}"
    if detail:
        message = f"{message} detail={detail[:160]}"
    logger.log(level, message)


class Scheduler:
    def __init__(
        self,
        config: ConfigSource,
        *,
        providers: Mapping[str, BaseProvider] | None = None,
        clock: Clock | None = None,
        rand: random.Random | None = None,
        planner: ChainPlanner | None = None,
    ):
        self._config_source = config
        self.clock = clock or SystemClock()
        self.cooldowns = CooldownRegistry(self.clock)
        self.gates = ProviderGates(self.clock, self.cooldowns)
        self.ledger = UsageLedger(self.clock, self.cooldowns)
        self.executor = RetryExecutor(self.gates, self.ledger, self.cooldowns, self.clock, rand=rand)
        self.planner = planner or ChainPlanner()
        self._static_providers = (
            {normalize_provider_name(name): provider for name, provider in providers.items()}
            if providers is not None
            else None
        )
        self._registry: ProviderRegistry | None = None
        self._synced: LoadedConfig | None = None

    def current_config(self) -> LoadedConfig:
        source = self._config_source
        if isinstance(source, LoadedConfig):
            return source
        return source.current()

    def _sync(self, config: LoadedConfig) -> None:
        if config is self._synced:
            return
        self.ledger.quotas = QuotaTable(config.quotas)
        self.ledger.near_limit_threshold = config.settings.near_limit_threshold
        if self._static_providers is None:
            self._registry = ProviderRegistry(config.providers)
        for name, defn in config.providers.items():
            if normalize_provider_name(name) in self.gates.gates:
                self.gates.get(name, defn)
        self._synced = config

    def _provider(self, route: ModelRoute) -> BaseProvider:
        if self._static_providers is not None:
            provider = self._static_providers.get(normalize_provider_name(route.provider))
        elif self._registry is not None and route.provider in self._registry:
            provider = self._registry.get(route.provider)
        else:
            provider = None
        if provider is None:
            raise ConfigurationFailure(
                f"provider '{route.provider}' is not configured",
                provider=route.provider,
                model=route.model,
            )
        return provider

    def plan(self) -> list[ModelRoute]:
        config = self.current_config()
        self._sync(config)
        return self.planner.plan(config)

    async def complete(self, system_prompt: str, user_prompt: str) -> CompletionResult:
        config = self.current_config()
        self._sync(config)
        chain = self.planner.plan(config)
        last_error: Exception | None = None
        attempted = 0
        skipped = 0
        for route in chain:
            if self.cooldowns.model_active(route.key):
                skipped += 1
                _log_route_event(
                    logging.INFO,
                    event="route skipped",
                    route=route,
                    attempts=attempted,
                    detail=f"cooldown_ms={int(self.cooldowns.model_remaining_ms(route.key))}",
                )
                continue
            attempted += 1
            defn = config.provider(route.provider)
            try:
                provider = self._provider(route)
                self.gates.get(route.provider, defn)
                policy = RetryPolicy.for_provider(config.settings, defn)
                result = await self.executor.run(route, provider, system_prompt, user_prompt, policy)
            except Exception as exc:
                last_error = exc
                _log_route_event(
                    logging.WARNING,
                    event="route failed",
                    route=route,
                    attempts=attempted,
                    detail=str(exc),
                )
                continue
            _log_route_event(
                logging.WARNING if attempted > 1 or result.attempts > 1 else logging.INFO,
                event="completion success",
                route=route,
                attempts=attempted,
            )
            return CompletionResult(
                content=result.completion.content,
                provider=route.provider,
                model=route.model,
                attempts=attempted,
                usage=CompletionUsage(
                    prompt_tokens=result.prompt_tokens,
                    completion_tokens=result.completion_tokens,
                    total_tokens=result.prompt_tokens + result.completion_tokens,
                ),
            )
        _log_route_event(
            logging.ERROR,
            event="completion failure",
            route=None,
            attempts=attempted,
            detail=str(last_error) if last_error is not None else f"chain exhausted skipped={skipped}",
        )
        raise ChainExhausted(last_error, attempted=attempted, skipped=skipped) from last_error

    async def get_completion(self, system_prompt: str, user_prompt: str) -> str:
        result = await self.complete(system_prompt, user_prompt)
        return result.content

    def snapshot(self) -> dict[str, object]:
        return {
            "providers": self.gates.snapshot(),
            "cooldowns": self.cooldowns.active_models(),
            "usage": self.ledger.snapshot(),
            "rotation_offset": self.planner.offset,
        }
