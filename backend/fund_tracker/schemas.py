from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from fund_tracker.assets import Asset, CamelModel, HistoryPoint
from fund_tracker.security import normalize_username, validate_password_strength
from fund_tracker.services.history_data import ChartPeriod
from fund_tracker.valuation import BuyMode


class AssetSnapshotWrite(BaseModel):
	assets: list[Asset] = Field(default_factory=list)


class SyncResult(BaseModel):
	success: bool
	count: int = 0


class AdminLogin(BaseModel):
	password: str = Field(min_length=1, max_length=128)


class UserCredentials(BaseModel):
	username: str = Field(min_length=3, max_length=32)
	password: str = Field(min_length=1, max_length=128)

	@field_validator("username", mode="before")
	@classmethod
	def normalize_name(cls, value: str) -> str:
		return normalize_username(value)


class UserRegistration(UserCredentials):
	@field_validator("password")
	@classmethod
	def validate_password(cls, value: str) -> str:
		return validate_password_strength(value)


class SessionRead(BaseModel):
	username: str
	role: str


class AdminSettingsRead(BaseModel):
	registration_enabled: bool


class AdminSettingsUpdate(BaseModel):
	registration_enabled: bool


class StorageStatusRead(CamelModel):
	storage_type: str
	upstash_configured: bool
	kv_configured: bool
	refresh_interval_options: list[int]


class TotalsRead(CamelModel):
	market_value: float
	cost_basis: float
	pnl: float
	pnl_percent: float


class PositionRead(TotalsRead):
	day_pnl: float


class SessionStateRead(CamelModel):
	label: str
	phase: str
	is_trading: bool


class PortfolioRefreshRead(CamelModel):
	assets: list[Asset]
	totals: TotalsRead
	sessions: dict[str, SessionStateRead]
	positions: dict[str, PositionRead]
	updated_ids: list[str]


class BuyRequest(CamelModel):
	buy_amount: float
	buy_price: float
	fee_rate_percent: float = 0.0
	mode: BuyMode = BuyMode.ADD


class SearchResultRead(CamelModel):
	code: str
	name: str
	type: str
	category: str
	api_code: str


class HistoryRead(CamelModel):
	id: str
	period: ChartPeriod
	points: list[HistoryPoint]


class ActivityEntryRead(BaseModel):
	time: str
	level: str
	message: str
