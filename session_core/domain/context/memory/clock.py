from typing import Protocol
import time


class Clock(Protocol):
    """Source of wall-clock seconds used by every expiring structure"""

    def now(self) -> float:
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()
