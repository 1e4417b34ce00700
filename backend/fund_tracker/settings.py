from functools import lru_cache
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


LOCAL_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173"]
LOCAL_HOSTS = ["localhost", "127.0.0.1"]
STORAGE_TYPES = ("kv", "upstash", "memory")
REFRESH_INTERVAL_OPTIONS = (5, 10, 30, 60, 300, 0)


def _split_csv(value: str | None) -> list[str]:
	return [item.strip() for item in (value or "").split(",") if item.strip()]


def _normalize_origin(value: str) -> str:
	parsed = urlparse(value.strip())
	if parsed.scheme not in {"http", "https"} or not parsed.netloc:
		raise ValueError(f"Invalid origin: {value!r}")
	return f"{parsed.scheme}://{parsed.netloc}"


def _host_from_origin(value: str) -> str:
	hostname = urlparse(value).hostname
	if not hostname:
		raise ValueError(f"Invalid origin host: {value!r}")
	return hostname


def _unique(values: list[str]) -> list[str]:
	return list(dict.fromkeys(values))


def _secret_text(value: SecretStr | None) -> str | None:
	if value is None:
		return None

	text = value.get_secret_value().strip()
	return text or None


class Settings(BaseSettings):
	"""Runtime configuration for the tracker API, refresh loop and storage backends."""

	model_config = SettingsConfigDict(
		env_file=".env",
		env_prefix="FUND_TRACKER_",
		extra="ignore",
	)

	app_env: str = "development"
	api_token: SecretStr | None = None
	session_secret: SecretStr | None = None
	public_origin: str | None = None
	allowed_origins: str | None = None
	allowed_hosts: str | None = None

	admin_username: str = "admin"
	admin_password: SecretStr | None = None

	storage_type: str = "kv"
	database_url: str | None = None
	upstash_url: str | None = None
	upstash_token: SecretStr | None = None

	market_timezone: str = "Asia/Shanghai"
	refresh_interval_seconds: float = 5.0
	provider_timeout_seconds: float = 8.0
	quote_batch_size: int = 20
	fallback_concurrency: int = 10
	sync_debounce_seconds: float = 2.0
	primary_gold_id: str = "g1"
	secondary_gold_id: str = "g2"

	@property
	def is_production(self) -> bool:
		return self.app_env.strip().lower() == "production"

	@property
	def require_api_token(self) -> bool:
		return self.api_token_value() is not None

	@property
	def normalized_storage_type(self) -> str:
		return self.storage_type.strip().lower() or "kv"

	def api_token_value(self) -> str | None:
		return _secret_text(self.api_token)

	def admin_password_value(self) -> str | None:
		return _secret_text(self.admin_password)

	def upstash_token_value(self) -> str | None:
		return _secret_text(self.upstash_token)

	def session_secret_value(self) -> str | None:
		secret = _secret_text(self.session_secret)
		if secret:
			return secret

		if not self.is_production:
			return "fund-tracker-development-session-secret"

		return None

	def market_zone(self) -> ZoneInfo:
		return ZoneInfo(self.market_timezone)

	def cors_origins(self) -> list[str]:
		configured_origins = [_normalize_origin(item) for item in _split_csv(self.allowed_origins)]
		if configured_origins:
			return configured_origins

		if self.public_origin:
			return [_normalize_origin(self.public_origin)]

		if self.is_production:
			return []

		return LOCAL_ORIGINS.copy()

	def trusted_hosts(self) -> list[str]:
		configured_hosts = _split_csv(self.allowed_hosts)
		if configured_hosts:
			return configured_hosts

		derived_hosts = [_host_from_origin(origin) for origin in self.cors_origins()]
		if not self.is_production:
			derived_hosts.extend(LOCAL_HOSTS)

		return _unique(derived_hosts or LOCAL_HOSTS.copy())

	def is_allowed_origin(self, origin: str) -> bool:
		try:
			normalized_origin = _normalize_origin(origin)
		except ValueError:
			return False

		return normalized_origin in self.cors_origins()

	def validate_runtime(self) -> None:
		if self.normalized_storage_type not in STORAGE_TYPES:
			raise ValueError(
				f"FUND_TRACKER_STORAGE_TYPE must be one of: {', '.join(STORAGE_TYPES)}.",
			)

		if self.quote_batch_size <= 0 or self.fallback_concurrency <= 0:
			raise ValueError("Quote batch size and fallback concurrency must be positive.")

		if self.refresh_interval_seconds < 0:
			raise ValueError("FUND_TRACKER_REFRESH_INTERVAL_SECONDS cannot be negative.")

		if self.is_production and not (self.public_origin or self.allowed_origins or self.allowed_hosts):
			raise ValueError(
				"Production mode requires FUND_TRACKER_PUBLIC_ORIGIN, "
				"FUND_TRACKER_ALLOWED_ORIGINS, or FUND_TRACKER_ALLOWED_HOSTS.",
			)

		if self.is_production and not self.session_secret_value():
			raise ValueError("Production mode requires FUND_TRACKER_SESSION_SECRET.")

		if self.is_production and self.normalized_storage_type == "upstash" and not (
			self.upstash_url and self.upstash_token_value()
		):
			raise ValueError(
				"Upstash storage requires FUND_TRACKER_UPSTASH_URL and FUND_TRACKER_UPSTASH_TOKEN.",
			)


@lru_cache
def get_settings() -> Settings:
	return Settings()
