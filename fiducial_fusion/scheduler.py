import time
from typing import Callable, Optional


class MaintenanceScheduler:
    """Fixed-rate tick driven from the main loop.

    The scheduler never sleeps on its own; the loop asks :meth:`run_pending`
    after each batch (or each idle poll) and the callback fires once per
    elapsed period. Missed periods are collapsed into a single tick.
    """

    def __init__(
        self,
        callback: Callable[[], None],
        rate_hz: float = 20.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if rate_hz <= 0:
            raise ValueError("rate_hz must be positive")
        self.callback = callback
        self.period = 1.0 / rate_hz
        self.clock = clock
        self._next: Optional[float] = None
        self.ticks = 0

    def start(self) -> None:
        self._next = self.clock() + self.period

    def time_until_due(self) -> float:
        if self._next is None:
            return 0.0
        return max(0.0, self._next - self.clock())

    def run_pending(self) -> bool:
        """Fire the callback if a period has elapsed. Returns True if it did."""
        now = self.clock()
        if self._next is None:
            self._next = now + self.period
            return False
        if now < self._next:
            return False

        self.callback()
        self.ticks += 1
        self._next += self.period
        if self._next <= now:
            self._next = now + self.period
        return True
