"""Background thread that drives the logical clock from wall time."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RealtimePump:
	"""
	Advances a driver's clock in step with wall time.

	Each tick advances the clock by the wall time elapsed since the previous
	tick, multiplied by ``speed``. A paused driver does not advance, so
	pausing the simulation also freezes the pump's effect.
	"""

	def __init__(
		self,
		driver,
		tick_s: float = 0.05,
		speed: float = 1.0,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		"""
		Initialize realtime pump.

		Args:
			driver: SimulationDriver to advance
			tick_s: Wall-clock seconds between ticks (default 50ms)
			speed: Logical milliseconds per wall millisecond (default 1.0)
			clock: Monotonic time source in seconds
		"""
		if tick_s <= 0:
			raise ValueError(f"tick_s must be positive, got {tick_s}")
		if speed <= 0:
			raise ValueError(f"speed must be positive, got {speed}")
		self.driver = driver
		self.tick_s = tick_s
		self.speed = speed
		self._clock = clock
		self._last: Optional[float] = None
		self.ticks = 0

		self._running = False
		self._thread: Optional[threading.Thread] = None
		self._stop_event = threading.Event()

		logger.info(f"RealtimePump initialized: tick={tick_s * 1000:.0f}ms, speed={speed:.2f}x")

	@property
	def running(self) -> bool:
		return self._running

	def start(self) -> None:
		if self._running:
			logger.warning("RealtimePump already running")
			return
		self._running = True
		self._stop_event.clear()
		self._last = self._clock()
		self._thread = threading.Thread(target=self._loop, name="scalesim-pump", daemon=True)
		self._thread.start()
		logger.info("RealtimePump started")

	def stop(self) -> None:
		if not self._running:
			return
		self._running = False
		self._stop_event.set()
		if self._thread:
			self._thread.join(timeout=5.0)
		logger.info("RealtimePump stopped")

	def tick(self) -> int:
		"""Advance by the wall time elapsed since the last tick. Returns events fired."""
		now = self._clock()
		if self._last is None:
			self._last = now
		elapsed_ms = max(0.0, (now - self._last) * 1000.0 * self.speed)
		self._last = now
		self.ticks += 1
		if elapsed_ms == 0.0:
			return 0
		return self.driver.advance(elapsed_ms)

	def _loop(self) -> None:
		while not self._stop_event.is_set():
			try:
				self.tick()
			except Exception as e:
				logger.error(f"Error in realtime pump loop: {e}")
			self._stop_event.wait(self.tick_s)
