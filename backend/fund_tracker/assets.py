from __future__ import annotations

import json
import logging
import math
from typing import Annotated, Iterable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

ASSET_CATEGORIES = ("fund", "index", "gold", "sector", "stock")
MARKET_CATEGORIES = ("index", "sector", "stock")
HOLDING_PERCENT_PLACEHOLDER = "--"


class CamelModel(BaseModel):
	model_config = ConfigDict(
		alias_generator=to_camel,
		populate_by_name=True,
		extra="ignore",
	)


class HistoryPoint(CamelModel):
	time: str
	value: float


class FundHolding(CamelModel):
	code: str
	name: str
	percent: str = HOLDING_PERCENT_PLACEHOLDER


class AssetBase(CamelModel):
	id: str
	code: str
	api_code: str | None = None
	name: str = ""
	tags: list[str] = Field(default_factory=list)
	type: str = ""

	current_value: float = 0.0
	yesterday_value: float = 0.0
	open: float | None = None
	high: float | None = None
	low: float | None = None
	time: str | None = None

	history: list[HistoryPoint] = Field(default_factory=list)
	last_history_date: str | None = None

	sparkline: list[float] | None = None
	month_change_percent: float | None = None

	shares: float | None = None
	cost_price: float | None = None

	@model_validator(mode="after")
	def drop_incomplete_position(self) -> AssetBase:
		if not has_valid_position(self.shares, self.cost_price):
			self.shares = None
			self.cost_price = None
		return self

	@property
	def routing_code(self) -> str:
		return self.api_code or self.code

	@property
	def has_position(self) -> bool:
		return has_valid_position(self.shares, self.cost_price)


class FundAsset(AssetBase):
	category: Literal["fund"] = "fund"
	unit_nav: float | None = None
	holdings: list[FundHolding] = Field(default_factory=list)


class MarketAsset(AssetBase):
	category: Literal["index", "sector", "stock"] = "stock"


class GoldAsset(AssetBase):
	category: Literal["gold"] = "gold"


Asset = Annotated[Union[FundAsset, MarketAsset, GoldAsset], Field(discriminator="category")]
ASSET_ADAPTER: TypeAdapter[Asset] = TypeAdapter(Asset)
ASSET_LIST_ADAPTER: TypeAdapter[list[Asset]] = TypeAdapter(list[Asset])


def has_valid_position(shares: float | None, cost_price: float | None) -> bool:
	if shares is None or cost_price is None:
		return False
	if not (math.isfinite(shares) and math.isfinite(cost_price)):
		return False
	return shares > 0 and cost_price > 0


def build_asset(payload: dict) -> Asset:
	"""Validate one raw asset mapping into its category-specific model."""
	return ASSET_ADAPTER.validate_python(payload)


def dump_asset_snapshot(assets: Iterable[AssetBase]) -> str:
	"""Serialize an asset list with the camelCase keys stored in the key-value snapshot."""
	return json.dumps(
		[asset.model_dump(mode="json", by_alias=True, exclude_none=True) for asset in assets],
		ensure_ascii=False,
	)


def load_asset_snapshot(raw: str | None) -> list[Asset]:
	"""Parse a stored snapshot, skipping entries whose shape no longer validates."""
	if not raw:
		return []

	try:
		payload = json.loads(raw)
	except json.JSONDecodeError:
		logger.warning("Stored asset snapshot is not valid JSON; treating it as empty.")
		return []

	if not isinstance(payload, list):
		logger.warning("Stored asset snapshot is not a list; treating it as empty.")
		return []

	assets: list[Asset] = []
	for item in payload:
		try:
			assets.append(build_asset(item))
		except ValidationError as exc:
			item_id = item.get("id") if isinstance(item, dict) else None
			logger.warning("Skipping stored asset %r: %s", item_id, exc.errors()[0]["msg"])
	return assets
