from __future__ import annotations

import asyncio
from datetime import datetime
import logging
import math
from typing import Awaitable, Iterable, Sequence, TypeVar

from fund_tracker.assets import AssetBase, HistoryPoint
from fund_tracker.history import append_or_replace, format_time_label
from fund_tracker.services.market_data import (
	EastMoneyBatchQuoteProvider,
	EastMoneyFundEstimateProvider,
	EastMoneyQuoteProvider,
	QuoteUpdate,
)
from fund_tracker.session_clock import is_trading
from fund_tracker.settings import Settings

logger = logging.getLogger(__name__)

CallResult = TypeVar("CallResult")
Item = TypeVar("Item")


def merge_update(asset: AssetBase, update: QuoteUpdate) -> list[str]:
	"""Overwrite only the fields the update carries; returns the names written."""
	written: list[str] = []
	for name, value in update.present_fields().items():
		if not hasattr(asset, name):
			continue
		if isinstance(value, float) and (not math.isfinite(value) or value == 0):
			continue
		setattr(asset, name, value)
		written.append(name)
	return written


def derive_secondary_gold(
	primary: AssetBase,
	secondary: AssetBase,
	primary_update: QuoteUpdate | None,
) -> QuoteUpdate | None:
	"""Scale the secondary gold quote by the primary's intraday price ratio."""
	current = (primary_update.current_value if primary_update else None) or primary.current_value
	previous = (primary_update.yesterday_value if primary_update else None) or primary.yesterday_value
	if not current or not previous or secondary.yesterday_value <= 0:
		return None

	return QuoteUpdate(
		current_value=secondary.yesterday_value * (current / previous),
		time=(primary_update.time if primary_update else None) or secondary.time,
	)


def _chunks(items: Sequence[Item], size: int) -> Iterable[Sequence[Item]]:
	for start in range(0, len(items), size):
		yield items[start : start + size]


class ReconciliationEngine:
	"""Fan quote lookups out across providers and fold the results into assets."""

	def __init__(
		self,
		fund_provider: EastMoneyFundEstimateProvider | None = None,
		batch_provider: EastMoneyBatchQuoteProvider | None = None,
		quote_provider: EastMoneyQuoteProvider | None = None,
		batch_size: int = 20,
		fallback_concurrency: int = 10,
		call_timeout: float = 8.0,
		primary_gold_id: str | None = "g1",
		secondary_gold_id: str | None = "g2",
	) -> None:
		self.fund_provider = fund_provider or EastMoneyFundEstimateProvider(timeout=call_timeout)
		self.batch_provider = batch_provider or EastMoneyBatchQuoteProvider(timeout=call_timeout)
		self.quote_provider = quote_provider or EastMoneyQuoteProvider(timeout=call_timeout)
		self.batch_size = batch_size
		self.fallback_concurrency = fallback_concurrency
		self.call_timeout = call_timeout
		self.primary_gold_id = primary_gold_id
		self.secondary_gold_id = secondary_gold_id

	@classmethod
	def from_settings(cls, settings: Settings) -> ReconciliationEngine:
		return cls(
			batch_size=settings.quote_batch_size,
			fallback_concurrency=settings.fallback_concurrency,
			call_timeout=settings.provider_timeout_seconds,
			primary_gold_id=settings.primary_gold_id,
			secondary_gold_id=settings.secondary_gold_id,
		)

	async def _guarded(
		self,
		call: Awaitable[CallResult],
		description: str,
	) -> CallResult | None:
		try:
			return await asyncio.wait_for(call, timeout=self.call_timeout)
		except asyncio.TimeoutError:
			logger.debug("%s timed out after %.1fs.", description, self.call_timeout)
		except Exception:
			logger.warning("%s failed.", description, exc_info=True)
		return None

	async def _collect_funds(self, funds: Sequence[AssetBase]) -> dict[str, QuoteUpdate]:
		async def fetch(fund: AssetBase) -> tuple[str, QuoteUpdate | None]:
			update = await self._guarded(
				self.fund_provider.fetch_estimate(fund.routing_code),
				f"Fund estimate for {fund.id}",
			)
			return fund.id, update

		results = await asyncio.gather(*(fetch(fund) for fund in funds))
		return {asset_id: update for asset_id, update in results if update is not None}

	async def _collect_market(self, instruments: Sequence[AssetBase]) -> dict[str, QuoteUpdate]:
		requested_ids = {asset.id for asset in instruments}
		requests = [(asset.id, asset.routing_code) for asset in instruments]
		batch_results = await asyncio.gather(
			*(
				self._guarded(self.batch_provider.fetch_batch(chunk), f"Batch quote of {len(chunk)}")
				for chunk in _chunks(requests, self.batch_size)
			),
		)

		updates: dict[str, QuoteUpdate] = {}
		for batch in batch_results:
			for asset_id, update in (batch or {}).items():
				if asset_id in requested_ids:
					updates[asset_id] = update

		missing = [asset for asset in instruments if asset.id not in updates]
		if missing:
			logger.info(
				"Fallback fetch for %d assets: %s",
				len(missing),
				", ".join(asset.name or asset.id for asset in missing),
			)
			semaphore = asyncio.Semaphore(self.fallback_concurrency)

			async def fetch_single(asset: AssetBase) -> tuple[str, QuoteUpdate | None]:
				async with semaphore:
					update = await self._guarded(
						self.quote_provider.fetch_quote(asset.routing_code),
						f"Single quote for {asset.id}",
					)
				return asset.id, update

			for asset_id, update in await asyncio.gather(*(fetch_single(asset) for asset in missing)):
				if update is not None:
					updates[asset_id] = update

		return updates

	def _gold_pair(self, assets: Sequence[AssetBase]) -> tuple[AssetBase | None, AssetBase | None]:
		by_id = {asset.id: asset for asset in assets}
		primary = by_id.get(self.primary_gold_id) if self.primary_gold_id else None
		secondary = by_id.get(self.secondary_gold_id) if self.secondary_gold_id else None
		return primary, secondary

	async def collect_updates(self, assets: Sequence[AssetBase]) -> dict[str, QuoteUpdate]:
		"""Fetch one cycle's worth of updates, at most one per asset id."""
		primary_gold, secondary_gold = self._gold_pair(assets)
		derived_id = secondary_gold.id if primary_gold and secondary_gold else None

		funds = [asset for asset in assets if getattr(asset, "category", None) == "fund"]
		instruments = [
			asset
			for asset in assets
			if getattr(asset, "category", None) != "fund" and asset.id != derived_id
		]

		fund_updates, market_updates = await asyncio.gather(
			self._collect_funds(funds),
			self._collect_market(instruments),
		)
		updates = {**fund_updates, **market_updates}

		if primary_gold is not None and secondary_gold is not None:
			derived = derive_secondary_gold(primary_gold, secondary_gold, updates.get(primary_gold.id))
			if derived is not None:
				updates[secondary_gold.id] = derived

		return updates

	def apply_updates(
		self,
		assets: Sequence[AssetBase],
		updates: dict[str, QuoteUpdate],
		update_history: bool,
		now: datetime,
	) -> list[str]:
		"""Merge updates into the live asset objects; returns ids that received a write."""
		label = format_time_label(now)
		applied: list[str] = []
		seen: set[str] = set()

		for asset in assets:
			update = updates.get(asset.id)
			if update is None or asset.id in seen:
				continue
			seen.add(asset.id)

			try:
				merge_update(asset, update)
				if update_history and update.current_value is not None and is_trading(asset, now):
					append_or_replace(
						asset,
						HistoryPoint(time=label, value=asset.current_value),
						now.date(),
					)
			except Exception:
				logger.exception("Failed to merge quote update for %s.", asset.id)
				continue
			applied.append(asset.id)

		return applied

	async def reconcile(
		self,
		assets: Sequence[AssetBase],
		update_history: bool = True,
		now: datetime | None = None,
	) -> Sequence[AssetBase]:
		"""Run one full cycle against ``assets`` and return them with updates applied."""
		updates = await self.collect_updates(assets)
		self.apply_updates(assets, updates, update_history, now or datetime.now())
		return assets
