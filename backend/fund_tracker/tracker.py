from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Callable

from fund_tracker.assets import Asset, FundHolding, HistoryPoint
from fund_tracker.history import seed_history
from fund_tracker.portfolio import AssetBook, needs_holdings, needs_sparkline
from fund_tracker.reconcile import ReconciliationEngine
from fund_tracker.scheduler import RefreshScheduler
from fund_tracker.services.fund_profile import (
	EastMoneyHoldingsProvider,
	EastMoneySearchProvider,
	SearchResult,
	build_asset_from_search,
)
from fund_tracker.services.history_data import ChartPeriod, HistoryService
from fund_tracker.services.market_data import MARKET_TIMEZONE
from fund_tracker.session_clock import SessionState, session_state
from fund_tracker.settings import Settings
from fund_tracker.storage import KeyValueStore
from fund_tracker.sync import WriteBehindSync
from fund_tracker.valuation import BuyMode, PortfolioTotals, PositionStats, portfolio_totals, position_stats

logger = logging.getLogger(__name__)


def market_clock(settings: Settings | None = None) -> Callable[[], datetime]:
	zone = settings.market_zone() if settings is not None else MARKET_TIMEZONE
	return lambda: datetime.now(zone)


class PortfolioTracker:
	"""One user's live session: the asset book, its refresh loop and its persistence."""

	def __init__(
		self,
		sync: WriteBehindSync,
		engine: ReconciliationEngine | None = None,
		history_service: HistoryService | None = None,
		holdings_provider: EastMoneyHoldingsProvider | None = None,
		search_provider: EastMoneySearchProvider | None = None,
		interval_seconds: float = 5.0,
		clock: Callable[[], datetime] | None = None,
	) -> None:
		self.sync = sync
		self.engine = engine or ReconciliationEngine()
		self.search_provider = search_provider or EastMoneySearchProvider()
		self.history_service = history_service or HistoryService(search_provider=self.search_provider)
		self.holdings_provider = holdings_provider or EastMoneyHoldingsProvider()
		self.clock = clock or market_clock()
		self.book = AssetBook(on_change=self.sync.schedule)
		self.scheduler = RefreshScheduler(
			self.engine,
			self.book,
			interval_seconds=interval_seconds,
			clock=self.clock,
		)
		self._background: set[asyncio.Task[None]] = set()

	@classmethod
	def from_settings(
		cls,
		settings: Settings,
		remote: KeyValueStore,
		user_id: str,
		local: KeyValueStore | None = None,
	) -> PortfolioTracker:
		sync = WriteBehindSync(
			remote,
			user_id,
			local=local,
			flush_interval_seconds=settings.sync_debounce_seconds,
		)
		return cls(
			sync,
			engine=ReconciliationEngine.from_settings(settings),
			interval_seconds=settings.refresh_interval_seconds,
			clock=market_clock(settings),
		)

	@property
	def assets(self) -> list[Asset]:
		return self.book.assets

	async def open(self, enrich: bool = True) -> list[Asset]:
		"""Load the stored list, drop stale intraday series and start refreshing."""
		assets = await self.sync.load()
		self.book.load(assets, self.clock().date())
		logger.info("Loaded %d assets for %s.", len(self.book), self.sync.user_id)
		self.scheduler.start()
		if enrich:
			self._spawn(self.enrich())
		return self.book.assets

	def _spawn(self, coroutine) -> None:
		task = asyncio.get_running_loop().create_task(coroutine)
		self._background.add(task)
		task.add_done_callback(self._background.discard)

	async def enrich(self) -> None:
		await self.load_sparklines()
		for asset in self.book.snapshot():
			if needs_holdings(asset):
				await self.load_holdings(asset.id)

	async def search(self, query: str) -> list[SearchResult]:
		return await self.search_provider.search(query)

	async def add_asset(self, candidate: SearchResult | Asset) -> Asset:
		asset = build_asset_from_search(candidate) if isinstance(candidate, SearchResult) else candidate
		self.book.add(asset)
		logger.info("Added %s (%s).", asset.name, asset.code)

		now = self.clock()
		await self.engine.reconcile([asset], update_history=False, now=now)

		points = await self.history_service.fetch_intraday(asset)
		if not points:
			points = await self.history_service.fetch_history(asset, ChartPeriod.DAY_K)

		if self.book.find(asset.id) is None:
			return asset

		if points:
			self.book.set_history(asset.id, points, now.date())
		else:
			seed_history(asset, now)
			self.book.mark_changed()
		return asset

	def remove_asset(self, asset_id: str) -> Asset:
		asset = self.book.remove(asset_id)
		logger.info("Removed %s.", asset.name or asset.id)
		return asset

	def buy(
		self,
		asset_id: str,
		buy_amount: float,
		buy_price: float,
		fee_rate_percent: float = 0.0,
		mode: BuyMode = BuyMode.ADD,
	) -> Asset:
		return self.book.buy(asset_id, buy_amount, buy_price, fee_rate_percent, mode)

	def set_position(self, asset_id: str, shares: float, cost_price: float) -> Asset:
		return self.book.set_position(asset_id, shares, cost_price)

	def set_position_by_amount(self, asset_id: str, amount: float, cost_price: float) -> Asset:
		return self.book.set_position_by_amount(asset_id, amount, cost_price)

	def remove_position(self, asset_id: str) -> Asset:
		return self.book.remove_position(asset_id)

	def refresh(self) -> None:
		self.scheduler.trigger()

	def set_interval(self, interval_seconds: float) -> None:
		self.scheduler.set_interval(interval_seconds)

	async def load_holdings(self, asset_id: str) -> list[FundHolding]:
		asset = self.book.get(asset_id)
		if not needs_holdings(asset):
			return list(getattr(asset, "holdings", []))

		holdings = await self.holdings_provider.fetch_holdings(asset.code)
		if holdings:
			self.book.set_holdings(asset_id, holdings)
		return holdings

	async def load_sparklines(self) -> int:
		pending = [asset for asset in self.book.snapshot() if needs_sparkline(asset)]
		if not pending:
			return 0

		results = await asyncio.gather(
			*(self.history_service.fetch_sparkline(asset) for asset in pending),
			return_exceptions=True,
		)
		loaded = 0
		for asset, sparkline in zip(pending, results):
			if isinstance(sparkline, BaseException):
				logger.warning("Sparkline failed for %s: %s", asset.id, sparkline)
				continue
			if sparkline is not None:
				self.book.set_sparkline(asset.id, sparkline)
				loaded += 1
		return loaded

	async def load_chart(self, asset_id: str, period: ChartPeriod) -> list[HistoryPoint]:
		"""Switch the active chart period and return its series.

		Only the intraday series is kept on the asset; longer periods are returned as-is.
		"""
		asset = self.book.get(asset_id)
		if period is not self.scheduler.chart_period:
			self.scheduler.set_chart_period(period)

		points = await self.history_service.fetch_history(asset, period)
		if period is not ChartPeriod.INTRADAY:
			return points

		if points and self.book.find(asset_id) is not None:
			self.book.set_history(asset_id, points, self.clock().date())
		return list(asset.history)

	def status(self, asset_id: str, now: datetime | None = None) -> SessionState:
		return session_state(self.book.get(asset_id), now or self.clock())

	def totals(self) -> PortfolioTotals:
		return portfolio_totals(self.book.assets)

	def position(self, asset_id: str) -> PositionStats | None:
		return position_stats(self.book.get(asset_id))

	async def close(self) -> None:
		await self.scheduler.close()
		tasks = list(self._background)
		for task in tasks:
			task.cancel()
		await asyncio.gather(*tasks, return_exceptions=True)
		await self.sync.close(flush=True)
