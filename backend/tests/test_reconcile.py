import asyncio
from datetime import datetime
from typing import Sequence

import pytest

from fund_tracker.assets import build_asset
from fund_tracker.reconcile import ReconciliationEngine, derive_secondary_gold, merge_update
from fund_tracker.services.market_data import MARKET_TIMEZONE, QuoteUpdate

TRADING_NOW = datetime(2026, 10, 16, 10, 15, tzinfo=MARKET_TIMEZONE)
CLOSED_NOW = datetime(2026, 10, 16, 20, 0, tzinfo=MARKET_TIMEZONE)


class RecordingFundProvider:
	def __init__(self, outcomes: dict[str, object]) -> None:
		self._outcomes = outcomes
		self.codes: list[str] = []

	async def fetch_estimate(self, fund_code: str) -> QuoteUpdate | None:
		self.codes.append(fund_code)
		outcome = self._outcomes.get(fund_code)
		if isinstance(outcome, Exception):
			raise outcome
		return outcome


class RecordingBatchProvider:
	def __init__(self, outcomes: dict[str, QuoteUpdate], delay: float = 0.0) -> None:
		self._outcomes = outcomes
		self.delay = delay
		self.batches: list[list[tuple[str, str]]] = []

	async def fetch_batch(self, requests: Sequence[tuple[str, str]]) -> dict[str, QuoteUpdate]:
		self.batches.append(list(requests))
		if self.delay:
			await asyncio.sleep(self.delay)
		return {asset_id: self._outcomes[asset_id] for asset_id, _ in requests if asset_id in self._outcomes}


class RecordingQuoteProvider:
	def __init__(self, outcomes: dict[str, QuoteUpdate]) -> None:
		self._outcomes = outcomes
		self.routing_codes: list[str] = []

	async def fetch_quote(self, routing_code: str) -> QuoteUpdate | None:
		self.routing_codes.append(routing_code)
		return self._outcomes.get(routing_code)


def _engine(
	fund_outcomes: dict[str, object] | None = None,
	batch_outcomes: dict[str, QuoteUpdate] | None = None,
	single_outcomes: dict[str, QuoteUpdate] | None = None,
	**kwargs,
) -> tuple[ReconciliationEngine, RecordingFundProvider, RecordingBatchProvider, RecordingQuoteProvider]:
	funds = RecordingFundProvider(fund_outcomes or {})
	batch = RecordingBatchProvider(batch_outcomes or {})
	single = RecordingQuoteProvider(single_outcomes or {})
	engine = ReconciliationEngine(funds, batch, single, **kwargs)
	return engine, funds, batch, single


def _stock(asset_id: str, code: str, **overrides):
	payload = {"id": asset_id, "code": code, "api_code": f"sh{code}", "category": "stock", "current_value": 10.0}
	payload.update(overrides)
	return build_asset(payload)


def test_merge_update_never_regresses_existing_fields() -> None:
	asset = _stock("a", "600519", yesterday_value=9.5, high=10.4, time="2026-10-16 10:00:00")

	written = merge_update(asset, QuoteUpdate(current_value=10.2, high=0.0, low=float("nan")))

	assert written == ["current_value"]
	assert asset.current_value == 10.2
	assert asset.yesterday_value == 9.5
	assert asset.high == 10.4
	assert asset.time == "2026-10-16 10:00:00"


def test_batch_miss_triggers_exactly_one_single_fetch() -> None:
	assets = [_stock(f"s{index}", f"6000{index:02d}") for index in range(20)]
	batch_outcomes = {asset.id: QuoteUpdate(current_value=11.0) for asset in assets if asset.id != "s7"}
	engine, _, batch, single = _engine(
		batch_outcomes=batch_outcomes,
		single_outcomes={"sh600007": QuoteUpdate(current_value=12.0)},
	)

	asyncio.run(engine.reconcile(assets, now=CLOSED_NOW))

	assert len(batch.batches) == 1
	assert single.routing_codes == ["sh600007"]
	assert assets[7].current_value == 12.0
	assert all(asset.current_value == 11.0 for asset in assets if asset.id != "s7")


def test_instruments_are_split_into_batches() -> None:
	assets = [_stock(f"s{index}", f"6000{index:02d}") for index in range(45)]
	engine, _, batch, _ = _engine(
		batch_outcomes={asset.id: QuoteUpdate(current_value=11.0) for asset in assets},
		batch_size=20,
	)

	asyncio.run(engine.collect_updates(assets))

	assert [len(requests) for requests in batch.batches] == [20, 20, 5]


def test_failed_fetches_leave_assets_unchanged_and_present() -> None:
	fund = build_asset({"id": "161725", "code": "161725", "category": "fund", "current_value": 1.5})
	stock = _stock("a", "600519")
	engine, funds, _, single = _engine(fund_outcomes={"161725": RuntimeError("upstream down")})

	result = asyncio.run(engine.reconcile([fund, stock], now=TRADING_NOW))

	assert list(result) == [fund, stock]
	assert fund.current_value == 1.5
	assert stock.current_value == 10.0
	assert funds.codes == ["161725"]
	assert single.routing_codes == ["sh600519"]


def test_slow_provider_times_out_without_blocking_others() -> None:
	fund = build_asset({"id": "161725", "code": "161725", "category": "fund"})
	stock = _stock("a", "600519")
	funds = RecordingFundProvider({"161725": QuoteUpdate(current_value=1.3)})
	batch = RecordingBatchProvider({"a": QuoteUpdate(current_value=99.0)}, delay=1.0)
	engine = ReconciliationEngine(funds, batch, RecordingQuoteProvider({}), call_timeout=0.05)

	updates = asyncio.run(engine.collect_updates([fund, stock]))

	assert set(updates) == {"161725"}


def test_apply_updates_writes_each_asset_once_and_records_history_while_trading() -> None:
	stock = _stock("a", "600519")
	engine, *_ = _engine()

	applied = engine.apply_updates([stock, stock], {"a": QuoteUpdate(current_value=10.5)}, True, TRADING_NOW)

	assert applied == ["a"]
	assert [(point.time, point.value) for point in stock.history] == [("10:15", 10.5)]
	assert stock.last_history_date == "2026-10-16"


def test_apply_updates_skips_history_outside_session_or_when_disabled() -> None:
	closed = _stock("a", "600519")
	disabled = _stock("b", "600520")
	engine, *_ = _engine()

	engine.apply_updates([closed], {"a": QuoteUpdate(current_value=10.5)}, True, CLOSED_NOW)
	engine.apply_updates([disabled], {"b": QuoteUpdate(current_value=10.5)}, False, TRADING_NOW)

	assert closed.history == [] and closed.current_value == 10.5
	assert disabled.history == [] and disabled.current_value == 10.5


def test_secondary_gold_is_derived_from_primary_ratio() -> None:
	primary = build_asset({"id": "g1", "code": "AU9999", "api_code": "118.AU9999", "category": "gold", "yesterday_value": 500.0})
	secondary = build_asset({"id": "g2", "code": "XAU", "api_code": "122.XAU", "category": "gold", "yesterday_value": 2000.0})
	engine, _, batch, single = _engine(
		batch_outcomes={"g1": QuoteUpdate(current_value=510.0, yesterday_value=500.0, time="2026-10-16 10:15:00")},
	)

	asyncio.run(engine.reconcile([primary, secondary], now=TRADING_NOW))

	assert [asset_id for asset_id, _ in batch.batches[0]] == ["g1"]
	assert single.routing_codes == []
	assert secondary.current_value == pytest.approx(2040.0)
	assert secondary.time == "2026-10-16 10:15:00"
	assert len(secondary.history) == 1


def test_derive_secondary_gold_needs_a_reference_price() -> None:
	primary = build_asset({"id": "g1", "code": "AU9999", "category": "gold"})
	secondary = build_asset({"id": "g2", "code": "XAU", "category": "gold"})

	assert derive_secondary_gold(primary, secondary, QuoteUpdate(current_value=510.0)) is None
