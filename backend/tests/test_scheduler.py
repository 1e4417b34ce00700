import asyncio
from datetime import datetime
from typing import Sequence

from fund_tracker.assets import build_asset
from fund_tracker.portfolio import AssetBook
from fund_tracker.reconcile import ReconciliationEngine
from fund_tracker.scheduler import RefreshScheduler
from fund_tracker.services.history_data import ChartPeriod
from fund_tracker.services.market_data import MARKET_TIMEZONE, QuoteUpdate

TRADING_NOW = datetime(2026, 10, 16, 10, 15, tzinfo=MARKET_TIMEZONE)


class CountingBatchProvider:
	def __init__(self, price: float = 11.0, delay: float = 0.0) -> None:
		self.price = price
		self.delay = delay
		self.calls = 0
		self.in_flight = 0
		self.max_in_flight = 0

	async def fetch_batch(self, requests: Sequence[tuple[str, str]]) -> dict[str, QuoteUpdate]:
		self.calls += 1
		self.in_flight += 1
		self.max_in_flight = max(self.max_in_flight, self.in_flight)
		try:
			if self.delay:
				await asyncio.sleep(self.delay)
			return {asset_id: QuoteUpdate(current_value=self.price + self.calls) for asset_id, _ in requests}
		finally:
			self.in_flight -= 1


class EmptyQuoteProvider:
	async def fetch_quote(self, routing_code: str) -> QuoteUpdate | None:
		return None


class EmptyFundProvider:
	async def fetch_estimate(self, fund_code: str) -> QuoteUpdate | None:
		return None


def _book(*codes: str, on_change=None) -> AssetBook:
	return AssetBook(
		[
			build_asset({"id": code, "code": code, "api_code": f"sh{code}", "category": "stock", "current_value": 10.0})
			for code in codes
		],
		on_change=on_change,
	)


def _scheduler(book: AssetBook, provider: CountingBatchProvider, interval: float = 0, **kwargs) -> RefreshScheduler:
	engine = ReconciliationEngine(EmptyFundProvider(), provider, EmptyQuoteProvider(), call_timeout=1.0)
	return RefreshScheduler(engine, book, interval_seconds=interval, clock=lambda: TRADING_NOW, **kwargs)


def test_start_runs_one_cycle_and_manual_mode_waits_for_triggers() -> None:
	async def scenario() -> tuple[int, int, int]:
		book = _book("600519")
		provider = CountingBatchProvider()
		scheduler = _scheduler(book, provider)
		scheduler.start()
		await asyncio.sleep(0.05)
		first = scheduler.completed_cycles
		scheduler.trigger()
		await asyncio.sleep(0.05)
		await scheduler.close()
		return first, scheduler.completed_cycles, scheduler.manual_trigger_count

	assert asyncio.run(scenario()) == (1, 2, 1)


def test_positive_interval_keeps_refreshing() -> None:
	async def scenario() -> int:
		scheduler = _scheduler(_book("600519"), CountingBatchProvider(), interval=0.02)
		scheduler.start()
		await asyncio.sleep(0.15)
		await scheduler.close()
		return scheduler.completed_cycles

	assert asyncio.run(scenario()) >= 3


def test_overlapping_triggers_are_serialized() -> None:
	async def scenario() -> CountingBatchProvider:
		provider = CountingBatchProvider(delay=0.03)
		scheduler = _scheduler(_book("600519", "600520"), provider)
		scheduler.start()
		await asyncio.sleep(0)
		scheduler.trigger()
		scheduler.trigger()
		await asyncio.sleep(0.2)
		await scheduler.close()
		return provider

	provider = asyncio.run(scenario())

	assert provider.calls == 3
	assert provider.max_in_flight == 1


def test_cycle_records_intraday_history_only_for_the_intraday_chart() -> None:
	async def scenario(period: ChartPeriod) -> AssetBook:
		book = _book("600519")
		scheduler = _scheduler(book, CountingBatchProvider(), chart_period=period)
		await scheduler.run_cycle()
		await scheduler.close()
		return book

	assert len(asyncio.run(scenario(ChartPeriod.INTRADAY)).assets[0].history) == 1
	assert asyncio.run(scenario(ChartPeriod.DAY_K)).assets[0].history == []


def test_asset_removed_mid_cycle_stays_removed() -> None:
	async def scenario() -> AssetBook:
		book = _book("600519", "600520")
		scheduler = _scheduler(book, CountingBatchProvider(delay=0.03))
		cycle = asyncio.create_task(scheduler.run_cycle())
		await asyncio.sleep(0.01)
		assert scheduler.busy is True
		book.remove("600519")
		await cycle
		await scheduler.close()
		return book

	book = asyncio.run(scenario())

	assert [asset.id for asset in book.assets] == ["600520"]
	assert book.assets[0].current_value == 12.0


def test_results_are_discarded_after_close() -> None:
	async def scenario() -> AssetBook:
		book = _book("600519")
		scheduler = _scheduler(book, CountingBatchProvider(delay=0.05))
		scheduler.start()
		await asyncio.sleep(0.01)
		await scheduler.close()
		await asyncio.sleep(0.08)
		return book

	book = asyncio.run(scenario())

	assert book.assets[0].current_value == 10.0


def test_cycles_notify_the_book_listener() -> None:
	changes: list[int] = []

	async def scenario() -> list[str]:
		book = _book("600519", on_change=lambda assets: changes.append(len(assets)))
		scheduler = _scheduler(book, CountingBatchProvider())
		applied = await scheduler.run_cycle()
		await scheduler.close()
		return applied

	assert asyncio.run(scenario()) == ["600519"]
	assert changes == [1]
