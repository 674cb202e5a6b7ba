import asyncio
import time
from abc import ABC, abstractmethod


class Clock(ABC):
    """Epoch-millisecond clock shared by every scheduler component."""

    @abstractmethod
    def now_ms(self) -> float:
        pass

    @abstractmethod
    async def sleep_ms(self, ms: float) -> None:
        pass


class SystemClock(Clock):
    def now_ms(self) -> float:
        return time.time() * 1000.0

    async def sleep_ms(self, ms: float) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return
        await asyncio.sleep(ms / 1000.0)


MINUTE_MS = 60_000
DAY_MS = 86_400_000


def minute_index(now_ms: float) -> int:
    return int(now_ms // MINUTE_MS)


def day_index(now_ms: float) -> int:
    return int(now_ms // DAY_MS)
