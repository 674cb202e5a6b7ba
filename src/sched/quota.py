"""Per-model quota lookup and sliding minute/day usage accounting.

The ledger is a proactive circuit breaker: before a request is dispatched it
checks the model's usage against ``near_limit_threshold`` of each configured
quota dimension and, when admitting the request would reach that threshold,
cools the model down for the rest of the window instead of letting the
upstream provider reject (and possibly ban) the caller.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Mapping

from .clock import DAY_MS, MINUTE_MS, Clock, day_index, minute_index
from .cooldown import CooldownRegistry
from .errors import ModelCoolingDown

if TYPE_CHECKING:  # pragma: no cover
    from .router import ModelRoute

logger = logging.getLogger(__name__)

DEFAULT_NEAR_LIMIT_THRESHOLD = 0.85


@dataclass(frozen=True)
class Quota:
    rpm: int | None = None
    tpm: int | None = None
    rpd: int | None = None


# Free-tier limits published for the Gemini API; keyed by bare model name.
DEFAULT_QUOTAS: Dict[str, Quota] = {
    "gemini-2.5-pro": Quota(rpm=5, tpm=250_000, rpd=100),
    "gemini-2.5-flash": Quota(rpm=10, tpm=250_000, rpd=250),
    "gemini-2.5-flash-lite": Quota(rpm=15, tpm=250_000, rpd=1000),
    "gemini-2.0-flash": Quota(rpm=15, tpm=1_000_000, rpd=200),
    "gemini-2.0-flash-lite": Quota(rpm=30, tpm=1_000_000, rpd=200),
    "gemini-3-flash-preview": Quota(rpm=10, tpm=250_000, rpd=250),
}


def estimate_tokens(text: str | None) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def _normalize_quota_key(key: str) -> str:
    return "-".join(key.strip().lower().split())


class QuotaTable:
    def __init__(self, overrides: Mapping[str, Quota] | None = None, *, defaults: Mapping[str, Quota] | None = None):
        base = DEFAULT_QUOTAS if defaults is None else defaults
        self._quotas: Dict[str, Quota] = {_normalize_quota_key(k): v for k, v in base.items()}
        for key, quota in (overrides or {}).items():
            self._quotas[_normalize_quota_key(key)] = quota

    def lookup(self, route: "ModelRoute") -> Quota | None:
        quota = self._quotas.get(route.key)
        if quota is not None:
            return quota
        return self._quotas.get(_normalize_quota_key(route.model))


@dataclass
class UsageWindow:
    minute_window_start: int = 0
    minute_requests: int = 0
    minute_tokens: int = 0
    day_window_start: int = 0
    day_requests: int = 0
    day_tokens: int = 0

    def roll(self, now_ms: float) -> None:
        minute = minute_index(now_ms)
        if minute != self.minute_window_start:
            self.minute_window_start = minute
            self.minute_requests = 0
            self.minute_tokens = 0
        day = day_index(now_ms)
        if day != self.day_window_start:
            self.day_window_start = day
            self.day_requests = 0
            self.day_tokens = 0

    def add(self, *, requests: int = 0, tokens: int = 0) -> None:
        self.minute_requests = max(0, self.minute_requests + requests)
        self.day_requests = max(0, self.day_requests + requests)
        self.minute_tokens = max(0, self.minute_tokens + tokens)
        self.day_tokens = max(0, self.day_tokens + tokens)


def near_limit(limit: int, fraction: float) -> int:
    return max(1, math.floor(limit * fraction))


class UsageLedger:
    def __init__(
        self,
        clock: Clock,
        cooldowns: CooldownRegistry,
        quotas: QuotaTable | None = None,
        *,
        near_limit_threshold: float = DEFAULT_NEAR_LIMIT_THRESHOLD,
    ):
        self._clock = clock
        self._cooldowns = cooldowns
        self.quotas = quotas or QuotaTable()
        self.near_limit_threshold = near_limit_threshold
        self._windows: Dict[str, UsageWindow] = {}

    def window(self, route: "ModelRoute") -> UsageWindow:
        window = self._windows.get(route.key)
        if window is None:
            window = UsageWindow()
            self._windows[route.key] = window
        window.roll(self._clock.now_ms())
        return window

    def enforce_near_limit_budget(self, route: "ModelRoute", estimated_input_tokens: int) -> None:
        key = route.key
        remaining = self._cooldowns.model_remaining_ms(key)
        if remaining > 0:
            raise ModelCoolingDown(key, remaining, "cooling down")
        quota = self.quotas.lookup(route)
        if quota is None:
            return
        now = self._clock.now_ms()
        window = self.window(route)
        fraction = self.near_limit_threshold
        minute_end = (window.minute_window_start + 1) * MINUTE_MS
        day_end = (window.day_window_start + 1) * DAY_MS
        if quota.rpm is not None and window.minute_requests + 1 >= near_limit(quota.rpm, fraction):
            self._trip(key, minute_end, now, "rpm")
        if quota.tpm is not None and window.minute_tokens + estimated_input_tokens >= near_limit(quota.tpm, fraction):
            self._trip(key, minute_end, now, "tpm")
        if quota.rpd is not None and window.day_requests + 1 >= near_limit(quota.rpd, fraction):
            self._trip(key, day_end, now, "rpd")

    def _trip(self, key: str, until_ms: float, now_ms: float, dimension: str) -> None:
        reason = f"near {dimension} limit"
        until = self._cooldowns.cool_model_until(key, until_ms, reason=reason)
        raise ModelCoolingDown(key, max(0.0, until - now_ms), reason)

    def reserve_model_usage(self, route: "ModelRoute", estimated_input_tokens: int) -> None:
        self.window(route).add(requests=1, tokens=max(0, estimated_input_tokens))

    def admit(self, route: "ModelRoute", estimated_input_tokens: int) -> None:
        """Check and reserve in one step; no suspension point in between."""
        self.enforce_near_limit_budget(route, estimated_input_tokens)
        self.reserve_model_usage(route, estimated_input_tokens)

    def reconcile(
        self,
        route: "ModelRoute",
        estimated_input_tokens: int,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> None:
        delta = (prompt_tokens - estimated_input_tokens) + completion_tokens
        self.window(route).add(tokens=delta)

    def snapshot(self) -> dict[str, dict[str, int]]:
        return {
            key: {
                "minute_requests": window.minute_requests,
                "minute_tokens": window.minute_tokens,
                "day_requests": window.day_requests,
                "day_tokens": window.day_tokens,
            }
            for key, window in self._windows.items()
        }
