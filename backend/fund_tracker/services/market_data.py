from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime
import json
import logging
import math
import re
from typing import Any, Iterable, Sequence
from zoneinfo import ZoneInfo

import httpx

logger = logging.getLogger(__name__)

MARKET_TIMEZONE = ZoneInfo("Asia/Shanghai")
EASTMONEY_HEADERS = {
	"User-Agent": (
		"Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
		"(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
	),
	"Accept": "application/json, text/javascript, */*",
	"Referer": "https://quote.eastmoney.com/",
}
MISSING_VALUES = (None, "", "-", "--")
JSONP_PATTERN = re.compile(r"^\s*[\w$.]+\((?P<body>.*)\)\s*;?\s*$", re.DOTALL)
SECID_PATTERN = re.compile(r"^\d{1,3}\.[A-Za-z0-9]+$")


class QuoteLookupError(RuntimeError):
	"""Raised inside providers when an upstream response is unusable."""


@dataclass(frozen=True, slots=True)
class QuoteUpdate:
	"""Partial asset update; ``None`` means the provider had nothing for that field."""

	current_value: float | None = None
	yesterday_value: float | None = None
	open: float | None = None
	high: float | None = None
	low: float | None = None
	unit_nav: float | None = None
	time: str | None = None

	def present_fields(self) -> dict[str, float | str]:
		return {
			field.name: getattr(self, field.name)
			for field in fields(self)
			if getattr(self, field.name) is not None
		}

	def is_empty(self) -> bool:
		return not self.present_fields()


def coerce_number(value: Any) -> float | None:
	if value in MISSING_VALUES:
		return None
	try:
		number = float(value)
	except (TypeError, ValueError):
		return None
	return number if math.isfinite(number) else None


def coerce_price(value: Any) -> float | None:
	number = coerce_number(value)
	if number is None or number <= 0:
		return None
	return number


def format_timestamp(value: Any, tz: ZoneInfo = MARKET_TIMEZONE) -> str | None:
	"""Render a Unix-seconds provider timestamp as ``YYYY-MM-DD HH:MM:SS``."""
	seconds = coerce_number(value)
	if seconds is None or seconds <= 0:
		return None
	return datetime.fromtimestamp(int(seconds), tz=tz).strftime("%Y-%m-%d %H:%M:%S")


def format_fund_time(value: str | None) -> str | None:
	if not value:
		return None
	text = value.strip()
	if re.fullmatch(r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}", text):
		return f"{text}:00"
	return text or None


def strip_jsonp(text: str) -> str:
	"""Return the JSON body of a ``callback({...});`` response, or the text unchanged."""
	match = JSONP_PATTERN.match(text)
	if match is None:
		return text.strip()
	return match.group("body")


def build_eastmoney_secid(routing_code: str) -> str | None:
	"""Translate a routing code (``sh600519``, ``hk00700``, ``100.XAU``) into an EastMoney secid."""
	code = routing_code.strip()
	if not code:
		return None

	if SECID_PATTERN.fullmatch(code):
		return code

	lowered = code.lower()
	if lowered.startswith("sh"):
		return f"1.{code[2:]}"
	if lowered.startswith("sz"):
		return f"0.{code[2:]}"
	if lowered.startswith("hk"):
		return f"116.{code[2:].zfill(5)}"

	if re.fullmatch(r"\d{6}", code):
		if code[0] in {"5", "6", "9"}:
			return f"1.{code}"
		if code[0] in {"0", "1", "3"}:
			return f"0.{code}"

	return None


class EastMoneyProvider:
	"""Shared HTTP plumbing: one short-lived client per call, bounded by ``timeout``."""

	def __init__(
		self,
		timeout: float = 8.0,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self.timeout = timeout
		self.transport = transport

	async def _get_text(self, url: str, params: dict[str, Any] | None = None) -> str:
		try:
			async with httpx.AsyncClient(
				timeout=self.timeout,
				transport=self.transport,
				headers=EASTMONEY_HEADERS,
			) as client:
				response = await client.get(url, params=params)
				response.raise_for_status()
				return response.text
		except httpx.HTTPError as exc:
			raise QuoteLookupError(f"Request to {url} failed: {exc!r}") from exc

	async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
		text = await self._get_text(url, params)
		try:
			return json.loads(strip_jsonp(text))
		except json.JSONDecodeError as exc:
			raise QuoteLookupError(f"Malformed JSON returned by {url}.") from exc


def parse_fund_estimate(text: str) -> QuoteUpdate | None:
	"""Parse a ``jsonpgz({...});`` fund estimation payload."""
	try:
		payload = json.loads(strip_jsonp(text))
	except json.JSONDecodeError:
		return None
	if not isinstance(payload, dict):
		return None

	price = coerce_price(payload.get("gsz"))
	if price is None:
		return None

	growth = coerce_number(payload.get("gszzl"))
	unit_nav = coerce_price(payload.get("dwjz"))
	yesterday_value = unit_nav
	if growth is not None and growth > -100:
		yesterday_value = price / (1 + growth / 100)

	return QuoteUpdate(
		current_value=price,
		yesterday_value=yesterday_value,
		unit_nav=unit_nav,
		time=format_fund_time(payload.get("gztime")),
	)


def parse_quote_payload(payload: Any) -> QuoteUpdate | None:
	"""Parse a single-instrument ``stock/get`` response."""
	if not isinstance(payload, dict):
		return None
	data = payload.get("data")
	if not isinstance(data, dict):
		return None

	price = coerce_price(data.get("f43")) or coerce_price(data.get("f2"))
	previous_close = coerce_price(data.get("f60")) or coerce_price(data.get("f18"))
	update = QuoteUpdate(
		current_value=price,
		yesterday_value=previous_close,
		open=coerce_price(data.get("f46")),
		high=coerce_price(data.get("f44")),
		low=coerce_price(data.get("f45")),
		time=format_timestamp(data.get("f86")),
	)
	return None if update.current_value is None and update.yesterday_value is None else update


def parse_batch_item(item: dict[str, Any]) -> QuoteUpdate | None:
	update = QuoteUpdate(
		current_value=coerce_price(item.get("f2")),
		yesterday_value=coerce_price(item.get("f18")),
		open=coerce_price(item.get("f17")),
		high=coerce_price(item.get("f15")),
		low=coerce_price(item.get("f16")),
		time=format_timestamp(item.get("f124")),
	)
	return None if update.current_value is None and update.yesterday_value is None else update


def iter_batch_items(payload: Any) -> Iterable[dict[str, Any]]:
	if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
		return []
	diff = payload["data"].get("diff")
	if isinstance(diff, dict):
		diff = list(diff.values())
	if not isinstance(diff, list):
		return []
	return [item for item in diff if isinstance(item, dict)]


def _same_code(left: str, right: str) -> bool:
	if left.upper() == right.upper():
		return True
	return left.isdigit() and right.isdigit() and int(left) == int(right)


def resolve_batch_secid(item: dict[str, Any], requested: Iterable[str]) -> str | None:
	"""Map a batch row back to a requested secid.

	Exact ``market.code`` wins. When the row lacks a usable market field or the
	market does not line up, fall back to the code alone, but only when a single
	requested secid carries that code.
	"""
	code = str(item.get("f12") or "").strip()
	if not code:
		return None

	requested_secids = list(requested)
	market = item.get("f13")
	if market not in MISSING_VALUES:
		exact = f"{market}.{code}"
		for secid in requested_secids:
			if secid == exact or (
				secid.split(".", 1)[0] == str(market) and _same_code(secid.split(".", 1)[1], code)
			):
				return secid

	candidates = [secid for secid in requested_secids if _same_code(secid.split(".", 1)[1], code)]
	if len(candidates) == 1:
		logger.info("Batch row %s (market %r) matched %s by code only.", code, market, candidates[0])
		return candidates[0]
	if len(candidates) > 1:
		logger.warning(
			"Batch row %s (market %r) is ambiguous between %s; leaving it to single fetch.",
			code,
			market,
			", ".join(candidates),
		)
	return None


class EastMoneyFundEstimateProvider(EastMoneyProvider):
	FUND_ESTIMATE_URL = "https://fundgz.1234567.com.cn/js/{code}.js"

	async def fetch_estimate(self, fund_code: str) -> QuoteUpdate | None:
		"""Fetch the intraday estimated NAV for an open-end fund."""
		try:
			text = await self._get_text(
				self.FUND_ESTIMATE_URL.format(code=fund_code),
				params={"rt": int(datetime.now().timestamp() * 1000)},
			)
		except QuoteLookupError as exc:
			logger.debug("Fund estimate unavailable for %s: %s", fund_code, exc)
			return None
		return parse_fund_estimate(text)


class EastMoneyBatchQuoteProvider(EastMoneyProvider):
	BATCH_QUOTE_URL = "https://push2.eastmoney.com/api/qt/ulist.np/get"
	BATCH_FIELDS = "f12,f13,f14,f2,f3,f4,f18,f17,f15,f16,f124"

	async def fetch_batch(self, requests: Sequence[tuple[str, str]]) -> dict[str, QuoteUpdate]:
		"""Fetch quotes for ``(asset_id, routing_code)`` pairs in one request, keyed by asset id."""
		by_secid: dict[str, list[str]] = {}
		for asset_id, routing_code in requests:
			secid = build_eastmoney_secid(routing_code)
			if secid is None:
				logger.debug("No EastMoney secid for %s (%s); skipping batch.", asset_id, routing_code)
				continue
			by_secid.setdefault(secid, []).append(asset_id)

		if not by_secid:
			return {}

		try:
			payload = await self._get_json(
				self.BATCH_QUOTE_URL,
				params={
					"secids": ",".join(by_secid),
					"fields": self.BATCH_FIELDS,
					"fltt": 2,
					"invt": 2,
				},
			)
		except QuoteLookupError as exc:
			logger.debug("Batch quote request failed for %d instruments: %s", len(by_secid), exc)
			return {}

		results: dict[str, QuoteUpdate] = {}
		for item in iter_batch_items(payload):
			secid = resolve_batch_secid(item, by_secid)
			if secid is None:
				continue
			update = parse_batch_item(item)
			if update is None:
				continue
			for asset_id in by_secid[secid]:
				results[asset_id] = update
		return results


class EastMoneyQuoteProvider(EastMoneyProvider):
	QUOTE_URL = "https://push2.eastmoney.com/api/qt/stock/get"
	QUOTE_FIELDS = "f2,f18,f43,f44,f45,f46,f60,f86"

	async def fetch_quote(self, routing_code: str) -> QuoteUpdate | None:
		"""Fetch one exchange instrument; the fallback for batch misses."""
		secid = build_eastmoney_secid(routing_code)
		if secid is None:
			return None

		try:
			payload = await self._get_json(
				self.QUOTE_URL,
				params={"secid": secid, "fields": self.QUOTE_FIELDS, "fltt": 2, "invt": 2},
			)
		except QuoteLookupError as exc:
			logger.debug("Single quote unavailable for %s: %s", routing_code, exc)
			return None
		return parse_quote_payload(payload)
