from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(order=True)
class _Event:
    time_ms: float
    priority: int
    seq: int
    callback: Callable[[], None] = field(compare=False)
    label: str = field(compare=False, default="")
    cancelled: bool = field(compare=False, default=False)

    def cancel(self) -> None:
        self.cancelled = True


class RepeatingTimer:
    """Re-arms itself every ``interval_ms`` until cancelled."""

    def __init__(
        self,
        clock: DiscreteEventClock,
        interval_ms: float,
        callback: Callable[[], None],
        label: str = "",
    ) -> None:
        self.clock = clock
        self.interval_ms = float(interval_ms)
        self.callback = callback
        self.label = label
        self.cancelled = False
        self.fired = 0
        self._event: Optional[_Event] = None
        self._arm()

    def _arm(self) -> None:
        self._event = self.clock.schedule(self.interval_ms, self._fire, label=self.label)

    def _fire(self) -> None:
        if self.cancelled:
            return
        # Re-arm before the callback so the callback may cancel us.
        self._arm()
        self.fired += 1
        self.callback()

    def cancel(self) -> None:
        self.cancelled = True
        if self._event is not None:
            self._event.cancel()


class DiscreteEventClock:
    """
    Logical clock driving every timed action of a run.

    Events fire in ``(time_ms, priority, seq)`` order, so callbacks scheduled
    for the same instant run in the order they were scheduled. A paused clock
    does not advance; ``invalidate`` drops every pending callback at once.
    """

    def __init__(self) -> None:
        self.now_ms = 0.0
        self.events: List[_Event] = []
        self.paused = False
        self.events_processed = 0
        self.generation = 0
        self._event_seq = 0

    def schedule(
        self,
        delay_ms: float,
        callback: Callable[[], None],
        *,
        priority: int = 0,
        label: str = "",
    ) -> _Event:
        if delay_ms < 0:
            raise ValueError(f"Cannot schedule event in the past: delay={delay_ms}ms")
        self._event_seq += 1
        event = _Event(
            time_ms=self.now_ms + float(delay_ms),
            priority=priority,
            seq=self._event_seq,
            callback=callback,
            label=label,
        )
        heapq.heappush(self.events, event)
        return event

    def schedule_repeating(
        self, interval_ms: float, callback: Callable[[], None], *, label: str = ""
    ) -> RepeatingTimer:
        if interval_ms <= 0:
            raise ValueError(f"Repeating interval must be positive, got {interval_ms}")
        return RepeatingTimer(self, interval_ms, callback, label=label)

    # ------------------------------------------------------------ lifecycle

    def pause(self) -> bool:
        if self.paused:
            return False
        self.paused = True
        return True

    def resume(self) -> bool:
        if not self.paused:
            return False
        self.paused = False
        return True

    def invalidate(self) -> int:
        """Drop all pending events. Returns how many were discarded."""
        dropped = self.pending()
        for event in self.events:
            event.cancel()
        self.events.clear()
        self.generation += 1
        if dropped:
            logger.debug(f"Clock invalidated, {dropped} pending events discarded")
        return dropped

    def reset(self) -> None:
        self.invalidate()
        self.now_ms = 0.0
        self.paused = False
        self.events_processed = 0

    # ------------------------------------------------------------ execution

    def advance(self, duration_ms: float) -> int:
        if duration_ms < 0:
            raise ValueError(f"Cannot advance by a negative duration: {duration_ms}")
        return self.run_until(self.now_ms + float(duration_ms))

    def run_until(self, until_ms: float) -> int:
        """
        Fire every event due at or before ``until_ms``.

        Returns the number of callbacks executed. Time stands still while
        paused, including when a callback pauses the clock mid-run.
        """
        if self.paused:
            return 0
        processed = 0
        while self.events and not self.paused:
            event = self.events[0]
            if event.time_ms > until_ms:
                break
            heapq.heappop(self.events)
            if event.cancelled:
                continue
            self.now_ms = event.time_ms
            event.callback()
            processed += 1
        if not self.paused:
            self.now_ms = max(self.now_ms, float(until_ms))
        self.events_processed += processed
        return processed

    def run(self, max_events: Optional[int] = None) -> int:
        """Fire events until none remain, the clock pauses, or ``max_events`` is hit."""
        processed = 0
        while self.events and not self.paused:
            if max_events is not None and processed >= max_events:
                break
            event = heapq.heappop(self.events)
            if event.cancelled:
                continue
            self.now_ms = event.time_ms
            event.callback()
            processed += 1
        self.events_processed += processed
        return processed

    def pending(self) -> int:
        return sum(1 for event in self.events if not event.cancelled)
