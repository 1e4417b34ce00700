from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import json
import logging
import re
from typing import Any

import httpx

from fund_tracker.assets import AssetBase, HistoryPoint
from fund_tracker.services.fund_profile import EastMoneySearchProvider
from fund_tracker.services.market_data import (
	MARKET_TIMEZONE,
	EastMoneyProvider,
	QuoteLookupError,
	build_eastmoney_secid,
	coerce_number,
)

logger = logging.getLogger(__name__)

NET_WORTH_TREND_PATTERN = re.compile(r"Data_netWorthTrend\s*=\s*(\[.*?\])\s*;", re.DOTALL)
EXCHANGE_ROUTING_PATTERN = re.compile(r"^(sh|sz|1\.|0\.)", re.IGNORECASE)
MIN_OTC_INTRADAY_POINTS = 5


class ChartPeriod(str, Enum):
	INTRADAY = "分时"
	DAY_K = "日K"
	WEEK_K = "周K"
	MONTH_K = "月K"
	ONE_MONTH = "1月"
	THREE_MONTHS = "3月"
	SIX_MONTHS = "6月"
	ONE_YEAR = "1年"


class CandlePeriod(int, Enum):
	DAY = 101
	WEEK = 102
	MONTH = 103


PERIOD_LOOKBACK: dict[ChartPeriod, tuple[CandlePeriod, int]] = {
	ChartPeriod.DAY_K: (CandlePeriod.DAY, 120),
	ChartPeriod.WEEK_K: (CandlePeriod.WEEK, 100),
	ChartPeriod.MONTH_K: (CandlePeriod.MONTH, 60),
	ChartPeriod.ONE_MONTH: (CandlePeriod.DAY, 22),
	ChartPeriod.THREE_MONTHS: (CandlePeriod.DAY, 65),
	ChartPeriod.SIX_MONTHS: (CandlePeriod.DAY, 130),
	ChartPeriod.ONE_YEAR: (CandlePeriod.DAY, 250),
}


@dataclass(frozen=True, slots=True)
class Sparkline:
	values: list[float]
	percent: float


def _parse_series_row(row: Any, time_slice: slice | None = None) -> HistoryPoint | None:
	if not isinstance(row, str):
		return None
	parts = row.split(",")
	if len(parts) < 2:
		return None
	value = coerce_number(parts[1])
	if value is None:
		return None
	label = parts[0]
	if time_slice is not None:
		_, _, clock = label.partition(" ")
		label = clock[time_slice]
	return HistoryPoint(time=label, value=value)


def parse_trends_payload(payload: Any) -> list[HistoryPoint]:
	"""Parse ``trends2`` rows such as ``"2024-02-02 09:30,12.34"`` into HH:MM points."""
	data = payload.get("data") if isinstance(payload, dict) else None
	trends = data.get("trends") if isinstance(data, dict) else None
	if not isinstance(trends, list):
		return []
	points = (_parse_series_row(row, slice(0, 5)) for row in trends)
	return [point for point in points if point is not None and point.time]


def parse_kline_payload(payload: Any) -> list[HistoryPoint]:
	"""Parse ``kline`` rows such as ``"2024-02-02,12.34"`` (date, close)."""
	data = payload.get("data") if isinstance(payload, dict) else None
	klines = data.get("klines") if isinstance(data, dict) else None
	if not isinstance(klines, list):
		return []
	points = (_parse_series_row(row) for row in klines)
	return [point for point in points if point is not None]


def parse_net_worth_trend(text: str, count: int | None = None) -> list[HistoryPoint]:
	match = NET_WORTH_TREND_PATTERN.search(text)
	if match is None:
		return []
	try:
		rows = json.loads(match.group(1))
	except json.JSONDecodeError:
		return []

	points: list[HistoryPoint] = []
	for row in rows:
		if not isinstance(row, dict):
			continue
		timestamp_ms = coerce_number(row.get("x"))
		value = coerce_number(row.get("y"))
		if timestamp_ms is None or value is None:
			continue
		day = datetime.fromtimestamp(timestamp_ms / 1000, tz=MARKET_TIMEZONE).strftime("%Y-%m-%d")
		points.append(HistoryPoint(time=day, value=value))

	return points[-count:] if count else points


class EastMoneyTrendsProvider(EastMoneyProvider):
	TRENDS_URL = "https://push2.eastmoney.com/api/qt/stock/trends2/get"

	def __init__(self, timeout: float = 3.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
		super().__init__(timeout=timeout, transport=transport)

	async def fetch_intraday(self, routing_code: str) -> list[HistoryPoint]:
		"""Return today's ordered tick series for an exchange instrument."""
		secid = build_eastmoney_secid(routing_code)
		if secid is None:
			return []
		try:
			payload = await self._get_json(
				self.TRENDS_URL,
				params={
					"secid": secid,
					"fields1": "f1,f2,f3,f4,f5,f6,f7,f8,f9,f10,f11,f12,f13",
					"fields2": "f51,f53",
					"iscr": 0,
					"ndays": 1,
				},
			)
		except QuoteLookupError as exc:
			logger.debug("Intraday ticks unavailable for %s: %s", routing_code, exc)
			return []
		return parse_trends_payload(payload)


class EastMoneyCandleProvider(EastMoneyProvider):
	KLINE_URL = "https://push2his.eastmoney.com/api/qt/stock/kline/get"

	def __init__(self, timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
		super().__init__(timeout=timeout, transport=transport)

	async def fetch_candles(
		self,
		routing_code: str,
		period: CandlePeriod,
		count: int,
	) -> list[HistoryPoint]:
		"""Return forward-adjusted closes for the last ``count`` candles."""
		secid = build_eastmoney_secid(routing_code)
		if secid is None:
			return []
		try:
			payload = await self._get_json(
				self.KLINE_URL,
				params={
					"secid": secid,
					"fields1": "f1,f2,f3,f4,f5,f6",
					"fields2": "f51,f53",
					"klt": int(period),
					"fqt": 1,
					"end": "20500101",
					"lmt": count,
				},
			)
		except QuoteLookupError as exc:
			logger.debug("Candles unavailable for %s: %s", routing_code, exc)
			return []
		return parse_kline_payload(payload)


class EastMoneyFundNavProvider(EastMoneyProvider):
	NAV_HISTORY_URL = "https://fund.eastmoney.com/pingzhongdata/{code}.js"

	async def fetch_nav_history(self, fund_code: str, count: int) -> list[HistoryPoint]:
		"""Return the last ``count`` official daily NAVs for an open-end fund."""
		try:
			text = await self._get_text(self.NAV_HISTORY_URL.format(code=fund_code))
		except QuoteLookupError as exc:
			logger.debug("NAV history unavailable for %s: %s", fund_code, exc)
			return []
		return parse_net_worth_trend(text, count)


def is_otc_fund(asset: AssetBase) -> bool:
	return getattr(asset, "category", None) == "fund" and not EXCHANGE_ROUTING_PATTERN.match(
		asset.routing_code,
	)


def looks_like_index_tracker(asset: AssetBase) -> bool:
	return any(marker in asset.name for marker in ("ETF", "联接", "指数")) or "指数" in asset.type


def proxy_search_name(name: str) -> str:
	stripped = re.sub(r"联接[A-Z]?", "", name)
	stripped = re.sub(r"(?<![A-Z])[A-Z]$", "", stripped)
	return stripped.replace("发起式", "").strip()


class HistoryService:
	"""Route chart-period requests to the right feed for each asset category."""

	def __init__(
		self,
		trends_provider: EastMoneyTrendsProvider | None = None,
		candle_provider: EastMoneyCandleProvider | None = None,
		nav_provider: EastMoneyFundNavProvider | None = None,
		search_provider: EastMoneySearchProvider | None = None,
	) -> None:
		self.trends_provider = trends_provider or EastMoneyTrendsProvider()
		self.candle_provider = candle_provider or EastMoneyCandleProvider()
		self.nav_provider = nav_provider or EastMoneyFundNavProvider()
		self.search_provider = search_provider or EastMoneySearchProvider()

	async def fetch_history(self, asset: AssetBase, period: ChartPeriod) -> list[HistoryPoint]:
		if period is ChartPeriod.INTRADAY:
			return await self.fetch_intraday(asset)

		candle_period, count = PERIOD_LOOKBACK[period]
		if getattr(asset, "category", None) == "fund":
			return await self.nav_provider.fetch_nav_history(asset.code, count)
		return await self.candle_provider.fetch_candles(asset.routing_code, candle_period, count)

	async def fetch_intraday(self, asset: AssetBase) -> list[HistoryPoint]:
		otc = is_otc_fund(asset)
		points: list[HistoryPoint] = []
		if otc and looks_like_index_tracker(asset):
			points = await self._fetch_proxy_intraday(asset)

		if not points:
			points = await self.trends_provider.fetch_intraday(asset.routing_code)

		# OTC funds tend to come back as a lone placeholder point
		if otc and len(points) < MIN_OTC_INTRADAY_POINTS:
			return []
		return points

	async def _fetch_proxy_intraday(self, asset: AssetBase) -> list[HistoryPoint]:
		search_name = proxy_search_name(asset.name)
		if len(search_name) < 2:
			return []

		results = await self.search_provider.search(search_name)
		target = next(
			(
				result
				for result in results
				if result.code != asset.code
				and result.api_code.lower().startswith(("sh", "sz"))
				and (result.category == "stock" or "ETF" in result.type or "指数" in result.type)
			),
			None,
		)
		if target is None:
			return []

		proxy_points = await self.trends_provider.fetch_intraday(target.api_code)
		if len(proxy_points) < MIN_OTC_INTRADAY_POINTS:
			return []

		fund_base = asset.yesterday_value if asset.yesterday_value > 0 else asset.current_value
		proxy_start = proxy_points[0].value
		if fund_base <= 0 or proxy_start <= 0:
			return []

		logger.info("Charting %s (%s) through proxy %s (%s).", asset.name, asset.code, target.name, target.api_code)
		scale = fund_base / proxy_start
		return [HistoryPoint(time=point.time, value=point.value * scale) for point in proxy_points]

	async def fetch_sparkline(self, asset: AssetBase) -> Sparkline | None:
		"""One-month trend values plus the change between first and last point."""
		history = await self.fetch_history(asset, ChartPeriod.ONE_MONTH)
		if len(history) < 2:
			return None
		values = [point.value for point in history]
		start, end = values[0], values[-1]
		percent = ((end - start) / start) * 100 if start != 0 else 0.0
		return Sparkline(values=values, percent=percent)
