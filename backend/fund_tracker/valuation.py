from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
from typing import Iterable

from fund_tracker.assets import AssetBase


class BuyMode(str, Enum):
	ADD = "add"
	OVERRIDE = "override"


class PositionInputError(ValueError):
	"""Raised before any mutation when a position edit carries unusable numbers."""


@dataclass(frozen=True, slots=True)
class PortfolioTotals:
	market_value: float
	cost_basis: float
	pnl: float
	pnl_percent: float


@dataclass(frozen=True, slots=True)
class PositionStats:
	market_value: float
	cost_basis: float
	pnl: float
	pnl_percent: float
	day_pnl: float


def _pnl_percent(pnl: float, cost_basis: float) -> float:
	return (pnl / cost_basis) * 100 if cost_basis > 0 else 0.0


def portfolio_totals(assets: Iterable[AssetBase]) -> PortfolioTotals:
	"""Sum market value and cost basis over assets that carry a full position."""
	market_value = 0.0
	cost_basis = 0.0
	for asset in assets:
		if asset.shares is None or asset.cost_price is None:
			continue
		market_value += asset.shares * asset.current_value
		cost_basis += asset.shares * asset.cost_price

	pnl = market_value - cost_basis
	return PortfolioTotals(
		market_value=market_value,
		cost_basis=cost_basis,
		pnl=pnl,
		pnl_percent=_pnl_percent(pnl, cost_basis),
	)


def position_stats(asset: AssetBase) -> PositionStats | None:
	if asset.shares is None or asset.cost_price is None:
		return None

	market_value = asset.shares * asset.current_value
	cost_basis = asset.shares * asset.cost_price
	pnl = market_value - cost_basis
	day_pnl = (
		asset.shares * (asset.current_value - asset.yesterday_value)
		if asset.yesterday_value > 0 and asset.current_value > 0
		else 0.0
	)
	return PositionStats(
		market_value=market_value,
		cost_basis=cost_basis,
		pnl=pnl,
		pnl_percent=_pnl_percent(pnl, cost_basis),
		day_pnl=day_pnl,
	)


def _require_positive(field_name: str, value: float) -> float:
	if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
		raise PositionInputError(f"{field_name} 必须是大于 0 的有效数字。")
	return float(value)


def _require_fee_rate(value: float) -> float:
	if not isinstance(value, (int, float)) or not math.isfinite(value) or not 0 <= value < 100:
		raise PositionInputError("费率必须在 0 到 100 之间。")
	return float(value)


def override_position(asset: AssetBase, shares: float, cost_price: float) -> AssetBase:
	"""Replace the position outright, used to correct earlier entries."""
	checked_shares = _require_positive("份额", shares)
	checked_cost = _require_positive("成本价", cost_price)
	asset.shares = checked_shares
	asset.cost_price = checked_cost
	return asset


def apply_buy(
	asset: AssetBase,
	buy_amount: float,
	buy_price: float,
	fee_rate_percent: float = 0.0,
	mode: BuyMode = BuyMode.ADD,
) -> AssetBase:
	"""Record a purchase.

	``ADD`` folds the purchase into a weighted-average cost: the fee shrinks the
	shares received while the gross amount counts toward cost. ``OVERRIDE``
	treats ``buy_amount`` as the whole position bought at ``buy_price``.
	"""
	amount = _require_positive("买入金额", buy_amount)
	price = _require_positive("买入价格", buy_price)
	fee_rate = _require_fee_rate(fee_rate_percent)

	if BuyMode(mode) is BuyMode.OVERRIDE:
		return override_position(asset, amount / price, price)

	current_shares = asset.shares or 0.0
	current_cost = asset.cost_price or 0.0
	new_shares = (amount * (1 - fee_rate / 100)) / price
	total_shares = current_shares + new_shares
	total_cost = current_shares * current_cost + amount

	asset.shares = total_shares
	asset.cost_price = total_cost / total_shares
	return asset


def clear_position(asset: AssetBase) -> AssetBase:
	asset.shares = None
	asset.cost_price = None
	return asset


def override_position_by_amount(asset: AssetBase, amount: float, cost_price: float) -> AssetBase:
	"""Replace the position from a held amount, deriving shares at ``cost_price``."""
	checked_amount = _require_positive("持有金额", amount)
	checked_cost = _require_positive("成本价", cost_price)
	return override_position(asset, checked_amount / checked_cost, checked_cost)
