from __future__ import annotations

import logging
import random
from dataclasses import dataclass

from .clock import Clock
from .cooldown import CooldownRegistry
from .errors import FailureKind, classify_failure, is_retryable
from .providers import BaseProvider
from .quota import UsageLedger, estimate_tokens
from .rate_limiter import ProviderGate, ProviderGates
from .router import ModelRoute, ProviderDef, SchedulerSettings
from .types import ProviderCompletion

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 30_000.0
MAX_JITTER_MS = 300.0


def backoff_delay_ms(attempt: int, base_delay_ms: float, jitter_ms: float = 0.0) -> float:
    return min(base_delay_ms * (2 ** attempt) + jitter_ms, MAX_BACKOFF_MS)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    base_delay_ms: float
    rate_limit_min_cooldown_ms: float
    quota_exhausted_cooldown_ms: float

    @classmethod
    def for_provider(cls, settings: SchedulerSettings, defn: ProviderDef | None = None) -> "RetryPolicy":
        max_retries = settings.max_retries
        base_delay_ms = settings.retry_base_delay_ms
        min_cooldown_ms = settings.rate_limit_min_cooldown_ms
        if defn is not None:
            if defn.max_retries is not None:
                max_retries = defn.max_retries
            if defn.retry_base_delay_ms is not None:
                base_delay_ms = defn.retry_base_delay_ms
            if defn.rate_limit_min_cooldown_ms is not None:
                min_cooldown_ms = defn.rate_limit_min_cooldown_ms
        return cls(
            max_retries=max(0, int(max_retries)),
            base_delay_ms=max(0.0, float(base_delay_ms)),
            rate_limit_min_cooldown_ms=max(0.0, float(min_cooldown_ms)),
            quota_exhausted_cooldown_ms=max(0.0, float(settings.quota_exhausted_cooldown_ms)),
        )


@dataclass
class ExecutionResult:
    completion: ProviderCompletion
    attempts: int
    prompt_tokens: int
    completion_tokens: int


class RetryExecutor:
    """Runs one route with slot, cooldown and pacing waits plus bounded retries.

    The executor never moves on to another route; it raises the last error
    and leaves the decision to the chain walk.
    """

    def __init__(
        self,
        gates: ProviderGates,
        ledger: UsageLedger,
        cooldowns: CooldownRegistry,
        clock: Clock,
        *,
        rand: random.Random | None = None,
    ):
        self._gates = gates
        self._ledger = ledger
        self._cooldowns = cooldowns
        self._clock = clock
        self._rand = rand or random.Random()

    async def run(
        self,
        route: ModelRoute,
        provider: BaseProvider,
        system_prompt: str,
        user_prompt: str,
        policy: RetryPolicy,
    ) -> ExecutionResult:
        gate = self._gates.get(route.provider)
        estimated = estimate_tokens(system_prompt) + estimate_tokens(user_prompt)
        attempt = 0
        while True:
            try:
                completion = await self._attempt(gate, route, provider, system_prompt, user_prompt, estimated)
            except Exception as exc:
                kind = classify_failure(exc)
                if kind is FailureKind.QUOTA_EXHAUSTED:
                    cooldown_ms = policy.quota_exhausted_cooldown_ms
                    until = gate.set_rate_limit_cooldown(cooldown_ms, reason="quota exhausted")
                    self._cooldowns.cool_model_until(route.key, until, reason="quota exhausted")
                    raise
                if kind is FailureKind.RATE_LIMITED:
                    retry_after_ms = getattr(exc, "retry_after_ms", None)
                    if retry_after_ms is not None:
                        cooldown_ms = float(retry_after_ms)
                    else:
                        cooldown_ms = max(
                            policy.rate_limit_min_cooldown_ms,
                            backoff_delay_ms(attempt, policy.base_delay_ms),
                        )
                    # model and provider cooldowns end at the same instant
                    until = gate.set_rate_limit_cooldown(cooldown_ms, reason="rate limited")
                    self._cooldowns.cool_model_until(route.key, until, reason="rate limited")
                if not is_retryable(kind) or attempt >= policy.max_retries:
                    raise
                delay_ms = backoff_delay_ms(
                    attempt,
                    policy.base_delay_ms,
                    self._rand.uniform(0.0, MAX_JITTER_MS),
                )
                if attempt == 0:
                    logger.warning(
                        "%s failed, retrying kind=%s delay_ms=%d detail=%s",
                        route,
                        kind.value,
                        int(delay_ms),
                        str(exc)[:160],
                    )
                attempt += 1
                await self._clock.sleep_ms(delay_ms)
                continue
            prompt_tokens, completion_tokens = self._reconcile(route, estimated, completion)
            return ExecutionResult(
                completion=completion,
                attempts=attempt + 1,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            )

    async def _attempt(
        self,
        gate: ProviderGate,
        route: ModelRoute,
        provider: BaseProvider,
        system_prompt: str,
        user_prompt: str,
        estimated: int,
    ) -> ProviderCompletion:
        async with gate.slot():
            await gate.wait_rate_limit()
            self._ledger.admit(route, estimated)
            await gate.wait_pacing()
            return await provider.send(route.model, system_prompt, user_prompt)

    def _reconcile(self, route: ModelRoute, estimated: int, completion: ProviderCompletion) -> tuple[int, int]:
        prompt_tokens = completion.prompt_tokens if completion.prompt_tokens is not None else estimated
        if completion.completion_tokens is not None:
            completion_tokens = completion.completion_tokens
        else:
            completion_tokens = estimate_tokens(completion.content)
        self._ledger.reconcile(route, estimated, prompt_tokens, completion_tokens)
        return prompt_tokens, completion_tokens
