from __future__ import annotations

from datetime import date
import logging
from typing import Callable, Iterable, Sequence

from fund_tracker.assets import Asset, AssetBase, FundHolding, HistoryPoint
from fund_tracker.history import clear_stale_history, history_date
from fund_tracker.services.history_data import Sparkline
from fund_tracker.valuation import (
	BuyMode,
	apply_buy,
	clear_position,
	override_position,
	override_position_by_amount,
)

logger = logging.getLogger(__name__)


class AssetNotFoundError(KeyError):
	"""Raised when an action targets an asset id that is no longer tracked."""


class AssetBook:
	"""The session's single in-memory asset list.

	User actions mutate it synchronously; refresh cycles only write through
	``ReconciliationEngine.apply_updates`` on the live objects, so an asset
	deleted mid-cycle is simply skipped. Every change bumps ``revision`` and
	notifies ``on_change`` (the write-behind sync hook).
	"""

	def __init__(
		self,
		assets: Iterable[Asset] | None = None,
		on_change: Callable[[Sequence[Asset]], None] | None = None,
	) -> None:
		self._assets: list[Asset] = list(assets or [])
		self.on_change = on_change
		self.revision = 0

	def __len__(self) -> int:
		return len(self._assets)

	@property
	def assets(self) -> list[Asset]:
		return self._assets

	def snapshot(self) -> list[Asset]:
		return list(self._assets)

	def find(self, asset_id: str) -> Asset | None:
		return next((asset for asset in self._assets if asset.id == asset_id), None)

	def get(self, asset_id: str) -> Asset:
		asset = self.find(asset_id)
		if asset is None:
			raise AssetNotFoundError(asset_id)
		return asset

	def mark_changed(self) -> None:
		self.revision += 1
		if self.on_change is not None:
			self.on_change(self._assets)

	def load(self, assets: Iterable[Asset], today: date) -> list[str]:
		"""Replace the list with a stored snapshot, clearing intraday series from other days."""
		self._assets = list(assets)
		cleared = clear_stale_history(self._assets, today)
		if cleared:
			self.mark_changed()
		return cleared

	def add(self, asset: Asset) -> Asset:
		if any(existing.code == asset.code for existing in self._assets):
			raise ValueError(f"{asset.code} 已在自选列表中。")
		self._assets.append(asset)
		self.mark_changed()
		return asset

	def remove(self, asset_id: str) -> Asset:
		asset = self.get(asset_id)
		self._assets = [existing for existing in self._assets if existing.id != asset_id]
		self.mark_changed()
		return asset

	def clear(self) -> None:
		self._assets = []
		self.mark_changed()

	def buy(
		self,
		asset_id: str,
		buy_amount: float,
		buy_price: float,
		fee_rate_percent: float = 0.0,
		mode: BuyMode = BuyMode.ADD,
	) -> Asset:
		asset = self.get(asset_id)
		apply_buy(asset, buy_amount, buy_price, fee_rate_percent, mode)
		logger.info("Added position for %s", asset.name or asset.id)
		self.mark_changed()
		return asset

	def set_position(self, asset_id: str, shares: float, cost_price: float) -> Asset:
		asset = self.get(asset_id)
		override_position(asset, shares, cost_price)
		self.mark_changed()
		return asset

	def set_position_by_amount(self, asset_id: str, amount: float, cost_price: float) -> Asset:
		asset = self.get(asset_id)
		override_position_by_amount(asset, amount, cost_price)
		self.mark_changed()
		return asset

	def remove_position(self, asset_id: str) -> Asset:
		asset = self.get(asset_id)
		clear_position(asset)
		self.mark_changed()
		return asset

	def set_holdings(self, asset_id: str, holdings: list[FundHolding]) -> None:
		asset = self.find(asset_id)
		if asset is None or not hasattr(asset, "holdings"):
			return
		asset.holdings = holdings
		self.mark_changed()

	def set_sparkline(self, asset_id: str, sparkline: Sparkline) -> None:
		asset = self.find(asset_id)
		if asset is None:
			return
		asset.sparkline = sparkline.values
		asset.month_change_percent = sparkline.percent
		self.mark_changed()

	def set_history(self, asset_id: str, points: list[HistoryPoint], today: date) -> None:
		asset = self.find(asset_id)
		if asset is None:
			return
		asset.history = points
		asset.last_history_date = history_date(today)
		self.mark_changed()


def needs_holdings(asset: AssetBase) -> bool:
	return getattr(asset, "category", None) == "fund" and not getattr(asset, "holdings", None)


def needs_sparkline(asset: AssetBase) -> bool:
	return asset.sparkline is None and getattr(asset, "category", None) in {"fund", "index", "stock"}
