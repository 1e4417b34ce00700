from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Any

from bs4 import BeautifulSoup
import httpx

from fund_tracker.assets import HOLDING_PERCENT_PLACEHOLDER, Asset, FundHolding, build_asset
from fund_tracker.services.cache import TTLCache
from fund_tracker.services.market_data import EastMoneyProvider, QuoteLookupError

logger = logging.getLogger(__name__)

MAX_HOLDINGS = 10
APIDATA_CONTENT_PATTERN = re.compile(r'content\s*:\s*"(?P<content>.*?)"\s*,\s*arryear', re.DOTALL)


@dataclass(frozen=True, slots=True)
class SearchResult:
	code: str
	name: str
	type: str
	category: str
	api_code: str


def parse_holdings_html(content: str, limit: int = MAX_HOLDINGS) -> list[FundHolding]:
	"""Extract the top constituents from the holdings table, deduplicated by code."""
	soup = BeautifulSoup(content, "html.parser")
	holdings: list[FundHolding] = []
	seen_codes: set[str] = set()

	for row in soup.select("tbody tr"):
		if len(holdings) >= limit:
			break

		cells = [cell.get_text(strip=True) for cell in row.find_all("td")]
		if len(cells) < 3:
			continue

		code, name = cells[1], cells[2]
		if not code or not name or code in seen_codes:
			continue
		seen_codes.add(code)

		percent = next(
			(cell.replace("%", "").strip() for cell in cells[3:] if "%" in cell),
			"",
		)
		holdings.append(
			FundHolding(code=code, name=name, percent=percent or HOLDING_PERCENT_PLACEHOLDER),
		)

	return holdings


def parse_holdings_response(text: str) -> list[FundHolding]:
	match = APIDATA_CONTENT_PATTERN.search(text)
	if match is None:
		return []
	return parse_holdings_html(match.group("content"))


def parse_search_item(item: dict[str, Any]) -> SearchResult | None:
	"""Classify one search hit and derive its routing code."""
	code = str(item.get("CODE") or "").strip()
	name = str(item.get("NAME") or "").strip()
	if not code or not name:
		return None

	category_text = str(item.get("CATEGORYDESC") or item.get("AssetType") or "基金")
	category = "fund"
	if "股票" in category_text or "A股" in category_text:
		category = "stock"
	elif "指数" in category_text and "基金" not in category_text:
		category = "index"

	api_code = code
	if category in {"stock", "index"}:
		market = str(item.get("MKT") or "")
		prefix = "sh" if market == "1" or code.startswith("6") else "sz"
		api_code = f"{prefix}{code}"

	return SearchResult(code=code, name=name, type=category_text, category=category, api_code=api_code)


def build_asset_from_search(result: SearchResult) -> Asset:
	"""Create the zero-valued skeleton that is force-fetched right after adding."""
	return build_asset(
		{
			"id": result.code,
			"category": result.category,
			"code": result.code,
			"api_code": result.api_code,
			"name": result.name,
			"type": result.type,
			"time": "--",
		},
	)


class EastMoneyHoldingsProvider(EastMoneyProvider):
	HOLDINGS_URL = "https://fundf10.eastmoney.com/FundArchivesDatas.aspx"

	async def fetch_holdings(self, fund_code: str) -> list[FundHolding]:
		try:
			text = await self._get_text(
				self.HOLDINGS_URL,
				params={"type": "jjcc", "code": fund_code, "topline": MAX_HOLDINGS, "year": "", "month": ""},
			)
		except QuoteLookupError as exc:
			logger.debug("Holdings unavailable for %s: %s", fund_code, exc)
			return []

		try:
			return parse_holdings_response(text)
		except Exception:
			logger.warning("Could not parse holdings table for %s.", fund_code, exc_info=True)
			return []


class EastMoneySearchProvider(EastMoneyProvider):
	SEARCH_URL = "https://fundsuggest.eastmoney.com/FundSearch/api/FundSearchAPI.ashx"

	def __init__(
		self,
		timeout: float = 5.0,
		transport: httpx.AsyncBaseTransport | None = None,
		cache: TTLCache[list[SearchResult]] | None = None,
		cache_ttl_seconds: float = 300,
	) -> None:
		super().__init__(timeout=timeout, transport=transport)
		self.cache = cache or TTLCache[list[SearchResult]]()
		self.cache_ttl_seconds = cache_ttl_seconds

	async def search(self, query: str) -> list[SearchResult]:
		normalized_query = query.strip()
		if not normalized_query:
			return []

		cached = self.cache.get(normalized_query)
		if cached is not None:
			return cached

		try:
			payload = await self._get_json(self.SEARCH_URL, params={"m": 1, "key": normalized_query})
		except QuoteLookupError as exc:
			logger.debug("Instrument search failed for %r: %s", normalized_query, exc)
			return []

		items: list[Any] = []
		if isinstance(payload, dict):
			items = payload.get("Datas") or payload.get("data") or []

		results = [
			result
			for result in (parse_search_item(item) for item in items if isinstance(item, dict))
			if result is not None
		]
		return self.cache.set(normalized_query, results, ttl_seconds=self.cache_ttl_seconds)
