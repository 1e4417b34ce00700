from __future__ import annotations

from contextlib import asynccontextmanager
import json
import logging
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from starlette.middleware.sessions import SessionMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from fund_tracker.activity_log import install_activity_log
from fund_tracker.assets import Asset, dump_asset_snapshot, load_asset_snapshot
from fund_tracker.database import init_db
from fund_tracker.history import clear_stale_history
from fund_tracker.models import utc_now
from fund_tracker.portfolio import AssetBook, AssetNotFoundError
from fund_tracker.reconcile import ReconciliationEngine
from fund_tracker.schemas import (
	ActivityEntryRead,
	AdminLogin,
	AdminSettingsRead,
	AdminSettingsUpdate,
	AssetSnapshotWrite,
	BuyRequest,
	HistoryRead,
	PortfolioRefreshRead,
	PositionRead,
	SearchResultRead,
	SessionRead,
	SessionStateRead,
	StorageStatusRead,
	SyncResult,
	TotalsRead,
	UserCredentials,
	UserRegistration,
)
from fund_tracker.security import (
	get_session_username,
	hash_password,
	require_admin,
	storage_user_id,
	verify_admin_password,
	verify_api_token,
	verify_password,
)
from fund_tracker.services.fund_profile import EastMoneySearchProvider
from fund_tracker.services.history_data import ChartPeriod, HistoryService
from fund_tracker.session_clock import session_state
from fund_tracker.settings import REFRESH_INTERVAL_OPTIONS, get_settings
from fund_tracker.storage import (
	REGISTRATION_ENABLED_KEY,
	ConfigurationError,
	KeyValueStore,
	StorageError,
	create_store,
	snapshot_key,
	user_record_key,
)
from fund_tracker.tracker import market_clock
from fund_tracker.valuation import PositionInputError, portfolio_totals, position_stats

settings = get_settings()
logger = logging.getLogger(__name__)
activity_log = install_activity_log()
search_provider = EastMoneySearchProvider()
history_service = HistoryService(search_provider=search_provider)
reconciliation_engine = ReconciliationEngine.from_settings(settings)
market_now = market_clock(settings)
key_value_store: KeyValueStore | None = None


def get_store() -> KeyValueStore:
	global key_value_store
	if key_value_store is None:
		try:
			key_value_store = create_store(get_settings())
		except ConfigurationError as exc:
			raise HTTPException(status_code=500, detail=str(exc)) from exc
	return key_value_store


StoreDependency = Annotated[KeyValueStore, Depends(get_store)]
TokenDependency = Annotated[None, Depends(verify_api_token)]
AdminDependency = Annotated[str, Depends(require_admin)]


@asynccontextmanager
async def lifespan(_: FastAPI):
	settings.validate_runtime()
	if settings.normalized_storage_type == "kv":
		init_db()
	logger.info("Storage mode: %s", settings.normalized_storage_type)
	yield


app = FastAPI(
	title="Fund Tracker API",
	version="0.1.0",
	lifespan=lifespan,
)

app.add_middleware(
	SessionMiddleware,
	secret_key=settings.session_secret_value() or "",
	session_cookie="fund_tracker_session",
	same_site="lax",
	https_only=settings.is_production,
)

app.add_middleware(
	TrustedHostMiddleware,
	allowed_hosts=settings.trusted_hosts() or ["localhost", "127.0.0.1"],
)

app.add_middleware(
	CORSMiddleware,
	allow_origins=settings.cors_origins(),
	allow_credentials=True,
	allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
	allow_headers=["Content-Type", "X-API-Key"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
	response: Response = await call_next(request)
	response.headers["Cache-Control"] = "no-store"
	response.headers["Pragma"] = "no-cache"
	response.headers["Referrer-Policy"] = "same-origin"
	response.headers["X-Content-Type-Options"] = "nosniff"
	response.headers["X-Frame-Options"] = "DENY"
	if request.headers.get("x-forwarded-proto", request.url.scheme) == "https":
		response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
	return response


async def _read_assets(store: KeyValueStore, user_id: str) -> list[Asset]:
	try:
		return load_asset_snapshot(await store.get(snapshot_key(user_id)))
	except StorageError as exc:
		logger.error("Failed to load assets for %s: %s", user_id, exc)
		raise HTTPException(status_code=503, detail="读取云端数据失败。") from exc


async def _write_assets(store: KeyValueStore, user_id: str, assets: list[Asset]) -> None:
	try:
		await store.put(snapshot_key(user_id), dump_asset_snapshot(assets))
	except StorageError as exc:
		logger.error("Failed to sync assets for %s: %s", user_id, exc)
		raise HTTPException(status_code=503, detail="同步失败") from exc


async def _registration_enabled(store: KeyValueStore) -> bool:
	try:
		return await store.get(REGISTRATION_ENABLED_KEY) == "true"
	except StorageError as exc:
		raise HTTPException(status_code=503, detail="读取配置失败。") from exc


def _start_session(request: Request, username: str, role: str) -> SessionRead:
	request.session.clear()
	request.session["username"] = username
	request.session["role"] = role
	return SessionRead(username=username, role=role)


def _totals_read(assets: list[Asset]) -> TotalsRead:
	totals = portfolio_totals(assets)
	return TotalsRead(
		market_value=totals.market_value,
		cost_basis=totals.cost_basis,
		pnl=totals.pnl,
		pnl_percent=totals.pnl_percent,
	)


@app.get("/api/health")
def healthcheck() -> dict[str, str]:
	return {"status": "ok"}


@app.get("/api/status", response_model=StorageStatusRead)
def storage_status() -> StorageStatusRead:
	current = get_settings()
	return StorageStatusRead(
		storage_type=current.normalized_storage_type,
		upstash_configured=bool(current.upstash_url and current.upstash_token_value()),
		kv_configured=current.normalized_storage_type == "kv",
		refresh_interval_options=list(REFRESH_INTERVAL_OPTIONS),
	)


@app.get("/api/assets", response_model=list[Asset])
async def list_assets(
	_: TokenDependency,
	store: StoreDependency,
	user: str | None = None,
) -> list[Asset]:
	return await _read_assets(store, storage_user_id(user))


@app.post("/api/assets", response_model=SyncResult)
async def save_assets(
	payload: AssetSnapshotWrite,
	_: TokenDependency,
	store: StoreDependency,
	user: str | None = None,
) -> SyncResult:
	user_id = storage_user_id(user)
	await _write_assets(store, user_id, payload.assets)
	logger.info("Assets automatically synced to cloud storage for %s.", user_id)
	return SyncResult(success=True, count=len(payload.assets))


@app.post("/api/portfolio/refresh", response_model=PortfolioRefreshRead)
async def refresh_portfolio(
	_: TokenDependency,
	store: StoreDependency,
	user: str | None = None,
) -> PortfolioRefreshRead:
	user_id = storage_user_id(user)
	now = market_now()
	updates = await reconciliation_engine.collect_updates(await _read_assets(store, user_id))

	# merge into the list as stored now; edits saved during the fetch win
	assets = await _read_assets(store, user_id)
	clear_stale_history(assets, now.date())
	updated_ids = reconciliation_engine.apply_updates(assets, updates, update_history=True, now=now)
	await _write_assets(store, user_id, assets)

	sessions: dict[str, SessionStateRead] = {}
	positions: dict[str, PositionRead] = {}
	for asset in assets:
		state = session_state(asset, now)
		sessions[asset.id] = SessionStateRead(label=state.label, phase=state.phase.value, is_trading=state.is_trading)
		stats = position_stats(asset)
		if stats is not None:
			positions[asset.id] = PositionRead(
				market_value=stats.market_value,
				cost_basis=stats.cost_basis,
				pnl=stats.pnl,
				pnl_percent=stats.pnl_percent,
				day_pnl=stats.day_pnl,
			)

	return PortfolioRefreshRead(
		assets=assets,
		totals=_totals_read(assets),
		sessions=sessions,
		positions=positions,
		updated_ids=updated_ids,
	)


@app.post("/api/assets/{asset_id}/buy", response_model=Asset)
async def buy_asset(
	asset_id: str,
	payload: BuyRequest,
	_: TokenDependency,
	store: StoreDependency,
	user: str | None = None,
) -> Asset:
	user_id = storage_user_id(user)
	book = AssetBook(await _read_assets(store, user_id))
	try:
		asset = book.buy(
			asset_id,
			payload.buy_amount,
			payload.buy_price,
			payload.fee_rate_percent,
			payload.mode,
		)
	except AssetNotFoundError as exc:
		raise HTTPException(status_code=404, detail="资产不存在。") from exc
	except PositionInputError as exc:
		raise HTTPException(status_code=422, detail=str(exc)) from exc

	await _write_assets(store, user_id, book.assets)
	return asset


@app.get("/api/search", response_model=list[SearchResultRead])
async def search_instruments(q: str, _: TokenDependency) -> list[SearchResultRead]:
	query = q.strip()
	if not query:
		return []

	results = await search_provider.search(query)
	return [
		SearchResultRead(
			code=result.code,
			name=result.name,
			type=result.type,
			category=result.category,
			api_code=result.api_code,
		)
		for result in results
	]


@app.get("/api/assets/{asset_id}/history", response_model=HistoryRead)
async def asset_history(
	asset_id: str,
	_: TokenDependency,
	store: StoreDependency,
	user: str | None = None,
	period: ChartPeriod = ChartPeriod.INTRADAY,
) -> HistoryRead:
	assets = await _read_assets(store, storage_user_id(user))
	asset = next((item for item in assets if item.id == asset_id), None)
	if asset is None:
		raise HTTPException(status_code=404, detail="资产不存在。")

	points = await history_service.fetch_history(asset, period)
	if not points and period is ChartPeriod.INTRADAY:
		points = list(asset.history)
	return HistoryRead(id=asset.id, period=period, points=points)


@app.post("/api/auth", response_model=SessionRead)
def admin_password_login(payload: AdminLogin, request: Request) -> SessionRead:
	if get_settings().admin_password_value() is None:
		raise HTTPException(status_code=500, detail="Server password not configured")
	if not verify_admin_password(payload.password):
		logger.warning("Rejected admin password login.")
		raise HTTPException(status_code=401, detail="密码错误。")

	return _start_session(request, get_settings().admin_username, "admin")


@app.post("/api/auth/login", response_model=SessionRead)
async def login(payload: UserCredentials, request: Request, store: StoreDependency) -> SessionRead:
	current = get_settings()
	if (
		current.admin_password_value() is not None
		and payload.username == current.admin_username.strip().lower()
		and verify_admin_password(payload.password)
	):
		return _start_session(request, payload.username, "admin")

	try:
		raw_record = await store.get(user_record_key(payload.username))
	except StorageError as exc:
		raise HTTPException(status_code=503, detail="读取用户数据失败。") from exc

	try:
		record = json.loads(raw_record) if raw_record else None
	except json.JSONDecodeError:
		logger.warning("Stored user record for %s is not valid JSON.", payload.username)
		record = None
	if not isinstance(record, dict) or not verify_password(payload.password, str(record.get("password_digest", ""))):
		raise HTTPException(status_code=401, detail="用户名或密码错误。")

	return _start_session(request, payload.username, str(record.get("role") or "user"))


@app.post("/api/auth/register", response_model=SessionRead, status_code=201)
async def register(payload: UserRegistration, request: Request, store: StoreDependency) -> SessionRead:
	if not await _registration_enabled(store):
		raise HTTPException(status_code=403, detail="当前未开放注册。")

	key = user_record_key(payload.username)
	try:
		if await store.get(key) is not None or payload.username == get_settings().admin_username.strip().lower():
			raise HTTPException(status_code=409, detail="用户名已存在。")
		record = {
			"username": payload.username,
			"password_digest": hash_password(payload.password),
			"role": "user",
			"created_at": utc_now().isoformat(),
		}
		await store.put(key, json.dumps(record))
	except StorageError as exc:
		raise HTTPException(status_code=503, detail="保存用户数据失败。") from exc

	logger.info("Registered user %s.", payload.username)
	return _start_session(request, payload.username, "user")


@app.post("/api/auth/logout", status_code=204)
def logout(request: Request) -> Response:
	request.session.clear()
	return Response(status_code=204)


@app.get("/api/auth/session", response_model=SessionRead)
def current_session(request: Request) -> SessionRead:
	username = get_session_username(request)
	if username is None:
		raise HTTPException(status_code=401, detail="请先登录。")
	return SessionRead(username=username, role=str(request.session.get("role") or "user"))


@app.get("/api/admin/settings", response_model=AdminSettingsRead)
async def read_admin_settings(store: StoreDependency) -> AdminSettingsRead:
	return AdminSettingsRead(registration_enabled=await _registration_enabled(store))


@app.post("/api/admin/settings", response_model=AdminSettingsRead)
async def update_admin_settings(
	payload: AdminSettingsUpdate,
	_: AdminDependency,
	store: StoreDependency,
) -> AdminSettingsRead:
	try:
		await store.put(REGISTRATION_ENABLED_KEY, "true" if payload.registration_enabled else "false")
	except StorageError as exc:
		raise HTTPException(status_code=503, detail="保存配置失败。") from exc

	logger.info("Registration %s.", "enabled" if payload.registration_enabled else "disabled")
	return AdminSettingsRead(registration_enabled=payload.registration_enabled)


@app.get("/api/admin/logs", response_model=list[ActivityEntryRead])
def read_activity_log(_: AdminDependency) -> list[ActivityEntryRead]:
	return [ActivityEntryRead(**entry) for entry in activity_log.entries()]
