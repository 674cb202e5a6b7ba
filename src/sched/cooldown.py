from __future__ import annotations

import logging
from typing import Dict

from .clock import Clock

logger = logging.getLogger(__name__)


class CooldownRegistry:
    """Blocked-until timestamps for models and providers.

    Cooldowns only ever move forward: a shorter cooldown never shortens an
    active one. Model cooldowns reject attempts; provider cooldowns are waited
    out by the provider gate.
    """

    def __init__(self, clock: Clock):
        self._clock = clock
        self._models: Dict[str, float] = {}
        self._providers: Dict[str, float] = {}

    @staticmethod
    def _raise(table: Dict[str, float], key: str, until_ms: float) -> bool:
        if until_ms > table.get(key, 0.0):
            table[key] = until_ms
            return True
        return False

    def cool_model(self, key: str, duration_ms: float, *, reason: str = "") -> float:
        until = self._clock.now_ms() + max(0.0, duration_ms)
        return self.cool_model_until(key, until, reason=reason)

    def cool_model_until(self, key: str, until_ms: float, *, reason: str = "") -> float:
        """Block ``key`` until the absolute ``until_ms``; returns the effective end."""
        if self._raise(self._models, key, until_ms):
            logger.info(
                "model cooldown set model=%s until_ms=%d reason=%s",
                key,
                int(until_ms),
                reason or "unspecified",
            )
        return self._models.get(key, 0.0)

    def cool_provider(self, provider: str, duration_ms: float, *, reason: str = "") -> float:
        until = self._clock.now_ms() + max(0.0, duration_ms)
        if self._raise(self._providers, provider, until):
            logger.warning(
                "provider cooldown set provider=%s duration_ms=%d reason=%s",
                provider,
                int(duration_ms),
                reason or "unspecified",
            )
        return self._providers.get(provider, 0.0)

    def model_until(self, key: str) -> float:
        return self._models.get(key, 0.0)

    def provider_until(self, provider: str) -> float:
        return self._providers.get(provider, 0.0)

    def model_remaining_ms(self, key: str) -> float:
        return max(0.0, self.model_until(key) - self._clock.now_ms())

    def provider_remaining_ms(self, provider: str) -> float:
        return max(0.0, self.provider_until(provider) - self._clock.now_ms())

    def model_active(self, key: str) -> bool:
        return self.model_until(key) > self._clock.now_ms()

    def active_models(self) -> dict[str, float]:
        now = self._clock.now_ms()
        return {key: until for key, until in self._models.items() if until > now}
