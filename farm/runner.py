"""Background run loop driving the stage controller."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, TypeVar

from farm.errors import FarmError, NoStageAvailableError, SchedulerInvariantError
from farm.host.base import HostEnvironment
from farm.scheduler import TickResult
from farm.stages import StageController

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SchedulerLoop:
	"""
	Repeats ``controller.run()`` every ``tick_interval_ms``.

	Invariant violations stop the loop and are kept in ``fault``; a restart
	rebuilds the ledger from the running processes. Any other error is logged
	and the next tick is tried after the usual interval.
	"""

	def __init__(
		self,
		controller: StageController,
		host: HostEnvironment,
		tick_interval_ms: int = 500,
	) -> None:
		self.controller = controller
		self.host = host
		self.tick_interval_ms = tick_interval_ms

		self.ticks = 0
		self.errors = 0
		self.last_error: Optional[str] = None
		self.last_result: Optional[TickResult] = None
		self.fault: Optional[FarmError] = None
		# Set between start() and stop(); a dead thread in between is unhealthy
		self.started = False

		self._lock = threading.Lock()
		self._thread: Optional[threading.Thread] = None
		self._stop_event = threading.Event()

	@property
	def running(self) -> bool:
		return self._thread is not None and self._thread.is_alive()

	@property
	def stalled(self) -> bool:
		return self.started and not self.running

	def start(self) -> None:
		if self.running:
			logger.warning("SchedulerLoop already running")
			return
		self._stop_event.clear()
		self.fault = None
		self._thread = threading.Thread(target=self.run_forever, name="farm-scheduler", daemon=True)
		self.started = True
		self._thread.start()
		logger.info("SchedulerLoop started")

	def stop(self, timeout: float = 5.0) -> None:
		self._stop_event.set()
		self.started = False
		if self._thread is not None and self._thread is not threading.current_thread():
			self._thread.join(timeout=timeout)
		self._thread = None
		logger.info("SchedulerLoop stopped")

	def step(self) -> TickResult:
		"""Run a single tick; serialized with the background thread."""
		with self._lock:
			result = self.controller.run()
			self.ticks += 1
			self.last_result = result
			return result

	def read(self, fn: Callable[[], T]) -> T:
		"""Call ``fn`` between ticks, so it never sees the ledger mid-update."""
		with self._lock:
			return fn()

	def run_forever(self, max_ticks: Optional[int] = None) -> None:
		attempts = 0
		while not self._stop_event.is_set():
			attempts += 1
			wait_ms = float(self.tick_interval_ms)
			try:
				result = self.step()
				wait_ms = max(wait_ms, result.wait_ms)
			except (SchedulerInvariantError, NoStageAvailableError) as e:
				logger.error(f"Scheduler stopped: {e}")
				self.fault = e
				self._stop_event.set()
				break
			except Exception as e:
				self.errors += 1
				self.last_error = f"{type(e).__name__}: {e}"
				logger.error(f"Tick failed, retrying: {self.last_error}")
			if max_ticks is not None and attempts >= max_ticks:
				break
			self.host.sleep(wait_ms)
