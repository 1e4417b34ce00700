import asyncio
from datetime import datetime
import json

import httpx
import pytest

from fund_tracker.assets import HistoryPoint, build_asset
from fund_tracker.services.fund_profile import SearchResult
from fund_tracker.services.history_data import (
	CandlePeriod,
	ChartPeriod,
	EastMoneyCandleProvider,
	HistoryService,
	is_otc_fund,
	looks_like_index_tracker,
	parse_kline_payload,
	parse_net_worth_trend,
	parse_trends_payload,
	proxy_search_name,
)
from fund_tracker.services.market_data import MARKET_TIMEZONE


def _ticks(count: int, start: float = 4.0) -> list[HistoryPoint]:
	return [HistoryPoint(time=f"09:{30 + index:02d}", value=start + index * 0.01) for index in range(count)]


class RecordingTrendsProvider:
	def __init__(self, outcomes: dict[str, list[HistoryPoint]]) -> None:
		self._outcomes = outcomes
		self.routing_codes: list[str] = []

	async def fetch_intraday(self, routing_code: str) -> list[HistoryPoint]:
		self.routing_codes.append(routing_code)
		return self._outcomes.get(routing_code, [])


class RecordingCandleProvider:
	def __init__(self) -> None:
		self.calls: list[tuple[str, CandlePeriod, int]] = []

	async def fetch_candles(self, routing_code: str, period: CandlePeriod, count: int) -> list[HistoryPoint]:
		self.calls.append((routing_code, period, count))
		return [HistoryPoint(time="2026-10-15", value=10.0), HistoryPoint(time="2026-10-16", value=11.0)]


class RecordingNavProvider:
	def __init__(self) -> None:
		self.calls: list[tuple[str, int]] = []

	async def fetch_nav_history(self, fund_code: str, count: int) -> list[HistoryPoint]:
		self.calls.append((fund_code, count))
		return [HistoryPoint(time="2026-09-16", value=1.0), HistoryPoint(time="2026-10-16", value=1.1)]


class StaticSearchProvider:
	def __init__(self, results: list[SearchResult]) -> None:
		self.results = results
		self.queries: list[str] = []

	async def search(self, query: str) -> list[SearchResult]:
		self.queries.append(query)
		return self.results


def _service(trends=None, search_results=None) -> tuple[HistoryService, RecordingCandleProvider, RecordingNavProvider, StaticSearchProvider]:
	candles = RecordingCandleProvider()
	navs = RecordingNavProvider()
	search = StaticSearchProvider(search_results or [])
	service = HistoryService(RecordingTrendsProvider(trends or {}), candles, navs, search)
	return service, candles, navs, search


def _tracker_fund():
	return build_asset(
		{
			"id": "000051",
			"code": "000051",
			"category": "fund",
			"name": "华夏沪深300ETF联接A",
			"type": "指数型",
			"yesterdayValue": 2.0,
		},
	)


def test_parse_trends_payload_keeps_hour_minute_labels() -> None:
	points = parse_trends_payload({"data": {"trends": ["2026-10-16 09:30,12.34", "2026-10-16 09:31,-", "bad"]}})

	assert points == [HistoryPoint(time="09:30", value=12.34)]
	assert parse_trends_payload({"data": None}) == []


def test_parse_kline_payload_reads_date_and_close() -> None:
	points = parse_kline_payload({"data": {"klines": ["2026-10-15,3900.1", "2026-10-16,3920.5"]}})

	assert [point.time for point in points] == ["2026-10-15", "2026-10-16"]
	assert points[-1].value == 3920.5


def test_parse_net_worth_trend_returns_the_last_points_in_market_dates() -> None:
	rows = [
		{"x": int(datetime(2026, 10, day, tzinfo=MARKET_TIMEZONE).timestamp() * 1000), "y": 1 + day / 100}
		for day in (14, 15, 16)
	]
	text = f"var fS_code = \"000001\";var Data_netWorthTrend = {json.dumps(rows)};var Data_ACWorthTrend = [];"

	points = parse_net_worth_trend(text, 2)

	assert [point.time for point in points] == ["2026-10-15", "2026-10-16"]
	assert parse_net_worth_trend("var nothing = 1;") == []


def test_candle_provider_requests_the_period_granularity() -> None:
	recorded: list[httpx.Request] = []

	def handler(request: httpx.Request) -> httpx.Response:
		recorded.append(request)
		return httpx.Response(200, json={"data": {"klines": ["2026-10-16,3920.5"]}})

	provider = EastMoneyCandleProvider(transport=httpx.MockTransport(handler))
	points = asyncio.run(provider.fetch_candles("sh000300", CandlePeriod.WEEK, 100))

	assert len(points) == 1
	assert recorded[0].url.params["klt"] == "102"
	assert recorded[0].url.params["lmt"] == "100"
	assert recorded[0].url.params["secid"] == "1.000300"


@pytest.mark.parametrize(
	("period", "expected"),
	[
		(ChartPeriod.DAY_K, (CandlePeriod.DAY, 120)),
		(ChartPeriod.WEEK_K, (CandlePeriod.WEEK, 100)),
		(ChartPeriod.MONTH_K, (CandlePeriod.MONTH, 60)),
		(ChartPeriod.ONE_YEAR, (CandlePeriod.DAY, 250)),
	],
)
def test_exchange_instruments_use_candles_for_long_periods(period: ChartPeriod, expected: tuple[CandlePeriod, int]) -> None:
	service, candles, navs, _ = _service()
	stock = build_asset({"id": "600519", "code": "600519", "apiCode": "sh600519", "category": "stock"})

	asyncio.run(service.fetch_history(stock, period))

	assert candles.calls == [("sh600519", *expected)]
	assert navs.calls == []


def test_funds_use_nav_history_for_long_periods() -> None:
	service, candles, navs, _ = _service()

	asyncio.run(service.fetch_history(_tracker_fund(), ChartPeriod.THREE_MONTHS))

	assert navs.calls == [("000051", 65)]
	assert candles.calls == []


def test_index_tracking_fund_intraday_is_proxied_and_rescaled() -> None:
	proxy = SearchResult(code="510300", name="沪深300ETF", type="ETF", category="fund", api_code="sh510300")
	service, _, _, search = _service(trends={"sh510300": _ticks(6)}, search_results=[proxy])

	points = asyncio.run(service.fetch_intraday(_tracker_fund()))

	assert search.queries == ["华夏沪深300ETF"]
	assert len(points) == 6
	assert points[0].value == pytest.approx(2.0)
	assert points[1].value == pytest.approx(4.01 * 2.0 / 4.0)


def test_otc_fund_with_sparse_intraday_series_gets_nothing() -> None:
	service, _, _, _ = _service(trends={"000051": _ticks(2)})

	assert asyncio.run(service.fetch_intraday(_tracker_fund())) == []


def test_sparkline_reports_month_change() -> None:
	service, _, navs, _ = _service()

	sparkline = asyncio.run(service.fetch_sparkline(_tracker_fund()))

	assert sparkline is not None
	assert sparkline.values == [1.0, 1.1]
	assert sparkline.percent == pytest.approx(10.0)
	assert navs.calls == [("000051", 22)]


def test_fund_classification_helpers() -> None:
	exchange_fund = build_asset({"id": "510300", "code": "510300", "apiCode": "sh510300", "category": "fund"})

	assert is_otc_fund(_tracker_fund()) is True
	assert is_otc_fund(exchange_fund) is False
	assert looks_like_index_tracker(_tracker_fund()) is True
	assert proxy_search_name("易方达蓝筹精选混合发起式C") == "易方达蓝筹精选混合"
