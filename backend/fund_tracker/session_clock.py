"""Trading-session state derived from wall-clock time and instrument tags.

All comparisons use minutes since midnight of the supplied ``now``; the caller
chooses the clock (the API uses the configured market timezone). Holidays are
not modelled.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from fund_tracker.assets import AssetBase

US_MARKET_TAGS = ("美股", "NASDAQ", "NYSE", "US")
HK_MARKET_TAGS = ("港股", "HK")

MORNING_OPEN = 9 * 60 + 30
MORNING_CLOSE = 11 * 60 + 30
AFTERNOON_OPEN = 13 * 60
CN_CLOSE = 15 * 60
HK_CLOSE = 16 * 60
US_OPEN = 21 * 60 + 30
US_CLOSE = 4 * 60


class SessionPhase(str, Enum):
	TRADING = "trading"
	LUNCH_BREAK = "lunch_break"
	PRE_OPEN = "pre_open"
	CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class SessionState:
	label: str
	phase: SessionPhase
	market: str

	@property
	def is_trading(self) -> bool:
		return self.phase is SessionPhase.TRADING


def _minutes_since_midnight(now: datetime) -> int:
	return now.hour * 60 + now.minute


def is_us_instrument(asset: AssetBase) -> bool:
	return any(tag in asset.tags for tag in US_MARKET_TAGS) or (
		asset.api_code is not None and asset.api_code.lower().startswith("us")
	)


def is_hk_instrument(asset: AssetBase) -> bool:
	return any(tag in asset.tags for tag in HK_MARKET_TAGS) or (
		asset.api_code is not None and asset.api_code.lower().startswith("hk")
	)


def session_state(asset: AssetBase, now: datetime) -> SessionState:
	category = getattr(asset, "category", None)
	minutes = _minutes_since_midnight(now)

	# gold keeps quoting across the weekend
	if category == "gold":
		return SessionState("行情波动", SessionPhase.TRADING, "GOLD")

	if now.weekday() >= 5:
		return SessionState("已休市", SessionPhase.CLOSED, "US" if is_us_instrument(asset) else "CN")

	if is_us_instrument(asset):
		if minutes >= US_OPEN or minutes <= US_CLOSE:
			return SessionState("美股交易中", SessionPhase.TRADING, "US")
		return SessionState("美股休市", SessionPhase.CLOSED, "US")

	if category in ("fund", "index", "sector", "stock"):
		is_hk = is_hk_instrument(asset)
		market = "HK" if is_hk else "CN"
		close_time = HK_CLOSE if is_hk else CN_CLOSE

		if MORNING_OPEN <= minutes <= MORNING_CLOSE:
			return SessionState("实时交易中", SessionPhase.TRADING, market)
		if AFTERNOON_OPEN <= minutes <= close_time:
			return SessionState("实时交易中", SessionPhase.TRADING, market)
		if MORNING_CLOSE < minutes < AFTERNOON_OPEN:
			return SessionState("午间休市", SessionPhase.LUNCH_BREAK, market)
		if minutes < MORNING_OPEN:
			return SessionState("盘前等待", SessionPhase.PRE_OPEN, market)
		return SessionState("已收盘", SessionPhase.CLOSED, market)

	return SessionState("已休市", SessionPhase.CLOSED, "OTHER")


def is_trading(asset: AssetBase, now: datetime) -> bool:
	return session_state(asset, now).is_trading
