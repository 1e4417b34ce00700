from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Callable

from fund_tracker.portfolio import AssetBook
from fund_tracker.reconcile import ReconciliationEngine
from fund_tracker.services.history_data import ChartPeriod

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
CycleCallback = Callable[[list[str]], None]


class RefreshScheduler:
	"""Drive reconciliation cycles on an interval or on manual triggers.

	Cycles are serialized through a lock, so a trigger that arrives while one is
	in flight queues behind it instead of interleaving merges. An interval of
	zero makes the loop manual-only.
	"""

	def __init__(
		self,
		engine: ReconciliationEngine,
		book: AssetBook,
		interval_seconds: float = 5.0,
		chart_period: ChartPeriod = ChartPeriod.INTRADAY,
		clock: Clock | None = None,
		on_cycle: CycleCallback | None = None,
	) -> None:
		self.engine = engine
		self.book = book
		self.interval_seconds = interval_seconds
		self.chart_period = chart_period
		self.clock = clock or datetime.now
		self.on_cycle = on_cycle
		self.busy = False
		self.manual_trigger_count = 0
		self.cycle_id = 0
		self.completed_cycles = 0
		self._lock = asyncio.Lock()
		self._timer: asyncio.TimerHandle | None = None
		self._tasks: set[asyncio.Task[None]] = set()
		self._closed = False
		self._started = False

	@property
	def is_running(self) -> bool:
		return self._started and not self._closed

	def start(self) -> None:
		if self._closed:
			raise RuntimeError("Scheduler has been closed.")
		self._started = True
		self._restart()

	def trigger(self) -> None:
		self.manual_trigger_count += 1
		self._restart()

	def set_interval(self, interval_seconds: float) -> None:
		if interval_seconds < 0:
			raise ValueError("Refresh interval cannot be negative.")
		self.interval_seconds = interval_seconds
		self._restart()

	def set_chart_period(self, chart_period: ChartPeriod) -> None:
		self.chart_period = chart_period
		self._restart()

	def _cancel_timer(self) -> None:
		if self._timer is not None:
			self._timer.cancel()
			self._timer = None

	def _restart(self) -> None:
		if not self.is_running:
			return
		self._cancel_timer()
		task = asyncio.get_running_loop().create_task(self._run_and_reschedule())
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)

	async def _run_and_reschedule(self) -> None:
		await self.run_cycle()
		if not self.is_running or self.interval_seconds <= 0:
			return
		self._cancel_timer()
		self._timer = asyncio.get_running_loop().call_later(self.interval_seconds, self._restart)

	async def run_cycle(self) -> list[str]:
		"""Run one reconciliation cycle against the book; returns the ids that changed."""
		async with self._lock:
			if self._closed:
				return []

			self.cycle_id += 1
			cycle_id = self.cycle_id
			self.busy = True
			try:
				updates = await self.engine.collect_updates(self.book.snapshot())
				if self._closed:
					logger.debug("Discarding results of cycle %d after close.", cycle_id)
					return []

				applied = self.engine.apply_updates(
					self.book.assets,
					updates,
					update_history=self.chart_period is ChartPeriod.INTRADAY,
					now=self.clock(),
				)
				if applied:
					self.book.mark_changed()
			except Exception:
				logger.exception("Refresh cycle %d failed.", cycle_id)
				return []
			finally:
				self.busy = False

			self.completed_cycles += 1

		if self.on_cycle is not None:
			self.on_cycle(applied)
		return applied

	async def close(self) -> None:
		self._closed = True
		self._cancel_timer()
		tasks = list(self._tasks)
		for task in tasks:
			task.cancel()
		await asyncio.gather(*tasks, return_exceptions=True)
