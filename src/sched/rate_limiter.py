import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Deque, Dict

from .clock import Clock
from .cooldown import CooldownRegistry
from .router import normalize_provider_name

if TYPE_CHECKING:  # pragma: no cover
  from .router import ProviderDef

logger = logging.getLogger(__name__)


class ProviderGate:
  """Concurrency slots, request pacing and rate-limit cooldown for one provider.

  Slots are handed to waiters in arrival order: ``release`` passes the freed
  slot straight to the oldest waiter before returning, so a caller arriving
  between release and wake-up cannot take it. ``in_flight`` never exceeds
  ``max_concurrent``, even after a live reconfiguration lowers it.
  """

  def __init__(
    self,
    name: str,
    clock: Clock,
    cooldowns: CooldownRegistry,
    *,
    max_concurrent: int = 1,
    min_spacing_ms: float = 0.0,
  ):
    self.name = name
    self._clock = clock
    self._cooldowns = cooldowns
    self.max_concurrent = max(1, int(max_concurrent))
    self.min_spacing_ms = max(0.0, float(min_spacing_ms))
    self.in_flight = 0
    self.next_not_before_ms = 0.0
    self._waiters: Deque[asyncio.Future[None]] = deque()
    self._pace_lock = asyncio.Lock()

  @property
  def rate_limited_until_ms(self) -> float:
    return self._cooldowns.provider_until(self.name)

  @property
  def waiting(self) -> int:
    return sum(1 for fut in self._waiters if not fut.done())

  def configure(self, *, max_concurrent: int, min_spacing_ms: float) -> None:
    self.max_concurrent = max(1, int(max_concurrent))
    self.min_spacing_ms = max(0.0, float(min_spacing_ms))
    while self.in_flight < self.max_concurrent and self._wake_next():
      self.in_flight += 1

  def _wake_next(self) -> bool:
    while self._waiters:
      fut = self._waiters.popleft()
      if not fut.done():
        fut.set_result(None)
        return True
    return False

  async def acquire(self) -> None:
    if self.in_flight < self.max_concurrent and not self.waiting:
      self.in_flight += 1
      return
    fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
    self._waiters.append(fut)
    try:
      await fut
    except asyncio.CancelledError:
      if fut.done() and not fut.cancelled():
        # the slot was handed over before cancellation landed
        self.release()
      else:
        try:
          self._waiters.remove(fut)
        except ValueError:
          pass
      raise

  def release(self) -> None:
    self.in_flight = max(0, self.in_flight - 1)
    # hand over without yielding; capacity may have shrunk via configure()
    if self.in_flight < self.max_concurrent and self._wake_next():
      self.in_flight += 1

  @asynccontextmanager
  async def slot(self) -> AsyncIterator["ProviderGate"]:
    await self.acquire()
    try:
      yield self
    finally:
      self.release()

  async def wait_rate_limit(self) -> float:
    waited = 0.0
    while True:
      remaining = self.rate_limited_until_ms - self._clock.now_ms()
      if remaining <= 0:
        return waited
      await self._clock.sleep_ms(remaining)
      waited += remaining

  async def wait_pacing(self) -> float:
    async with self._pace_lock:
      waited = 0.0
      while True:
        remaining = self.next_not_before_ms - self._clock.now_ms()
        if remaining <= 0:
          break
        await self._clock.sleep_ms(remaining)
        waited += remaining
      self.next_not_before_ms = self._clock.now_ms() + self.min_spacing_ms
      return waited

  def set_rate_limit_cooldown(self, duration_ms: float, *, reason: str = "rate limited") -> float:
    return self._cooldowns.cool_provider(self.name, duration_ms, reason=reason)

  def snapshot(self) -> dict[str, object]:
    return {
      "in_flight": self.in_flight,
      "max_concurrent": self.max_concurrent,
      "waiting": self.waiting,
      "min_spacing_ms": self.min_spacing_ms,
      "next_not_before_ms": self.next_not_before_ms,
      "rate_limited_until_ms": self.rate_limited_until_ms,
    }


class ProviderGates:
  def __init__(self, clock: Clock, cooldowns: CooldownRegistry):
    self._clock = clock
    self._cooldowns = cooldowns
    self.gates: Dict[str, ProviderGate] = {}

  def get(self, name: str, defn: "ProviderDef | None" = None) -> ProviderGate:
    name = normalize_provider_name(name)
    gate = self.gates.get(name)
    if gate is None:
      gate = ProviderGate(
        name,
        self._clock,
        self._cooldowns,
        max_concurrent=defn.max_concurrent if defn is not None else 1,
        min_spacing_ms=defn.min_spacing_ms if defn is not None else 0.0,
      )
      self.gates[name] = gate
    elif defn is not None and (
      gate.max_concurrent != defn.max_concurrent or gate.min_spacing_ms != defn.min_spacing_ms
    ):
      logger.info(
        "provider gate reconfigured provider=%s max_concurrent=%d min_spacing_ms=%d",
        name,
        defn.max_concurrent,
        int(defn.min_spacing_ms),
      )
      gate.configure(max_concurrent=defn.max_concurrent, min_spacing_ms=defn.min_spacing_ms)
    return gate

  def snapshot(self) -> dict[str, dict[str, object]]:
    return {name: gate.snapshot() for name, gate in sorted(self.gates.items())}
