import heapq
import itertools
from typing import Callable, List, Optional, Tuple


# events within this much of the stop time still fire, so k*dt landing on stop_time
# is not lost to float rounding (3 * 0.1 > 0.3)
STOP_TOLERANCE = 1e-9


class EventScheduler:
    """Single-threaded discrete-event loop.

    Events are ``(time, seq, callback)`` entries in a heap. Ties on time fire in
    insertion order. Nothing scheduled after ``stop_time`` (beyond
    ``STOP_TOLERANCE``) ever fires, so a callback that keeps rescheduling itself
    ends with the run.
    """

    def __init__(self, stop_time: Optional[float] = None):
        self.now = 0.0
        self.stop_time = stop_time
        self._queue: List[Tuple[float, int, Callable[[], None]]] = []
        self._seq = itertools.count()

    def schedule_at(self, time: float, callback: Callable[[], None]) -> None:
        """Schedule ``callback`` at absolute simulated time ``time``."""
        if time < self.now:
            raise ValueError(f"cannot schedule in the past (t={time} < now={self.now})")
        heapq.heappush(self._queue, (time, next(self._seq), callback))

    def schedule(self, delay: float, callback: Callable[[], None]) -> None:
        """Schedule ``callback`` ``delay`` seconds from now."""
        if delay < 0:
            raise ValueError(f"negative delay: {delay}")
        self.schedule_at(self.now + delay, callback)

    def pending(self) -> int:
        return len(self._queue)

    def run(self) -> float:
        """Fire events in time order until the queue drains or stop time is passed."""
        while self._queue:
            t, _, callback = self._queue[0]
            if self.stop_time is not None and t > self.stop_time + STOP_TOLERANCE:
                break
            heapq.heappop(self._queue)
            self.now = t
            callback()
        if self.stop_time is not None:
            self.now = max(self.now, self.stop_time)
        return self.now
