from __future__ import annotations

import logging
from typing import Protocol

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from fund_tracker.database import engine as default_engine
from fund_tracker.models import KeyValueEntry, utc_now
from fund_tracker.settings import Settings

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
	"""Raised when the key-value backend cannot complete a read or write."""


class ConfigurationError(RuntimeError):
	"""Raised when the selected storage backend is missing required settings."""


class KeyValueStore(Protocol):
	async def get(self, key: str) -> str | None: ...

	async def put(self, key: str, value: str) -> None: ...

	async def delete(self, key: str) -> None: ...


def snapshot_key(user_id: str) -> str:
	return f"user_{user_id}"


def user_record_key(username: str) -> str:
	return f"users:{username}"


REGISTRATION_ENABLED_KEY = "config:registration_enabled"


class MemoryStore:
	"""Process-local store used for tests and throwaway sessions."""

	def __init__(self, initial: dict[str, str] | None = None) -> None:
		self.entries: dict[str, str] = dict(initial or {})

	async def get(self, key: str) -> str | None:
		return self.entries.get(key)

	async def put(self, key: str, value: str) -> None:
		self.entries[key] = value

	async def delete(self, key: str) -> None:
		self.entries.pop(key, None)


class SqlModelStore:
	"""Key-value entries persisted in the local SQL database."""

	def __init__(self, engine: Engine) -> None:
		self.engine = engine

	async def get(self, key: str) -> str | None:
		try:
			with Session(self.engine) as session:
				entry = session.get(KeyValueEntry, key)
				return entry.value if entry is not None else None
		except SQLAlchemyError as exc:
			raise StorageError(f"Failed to read {key}.") from exc

	async def put(self, key: str, value: str) -> None:
		try:
			with Session(self.engine) as session:
				entry = session.get(KeyValueEntry, key)
				if entry is None:
					entry = KeyValueEntry(key=key, value=value)
				else:
					entry.value = value
					entry.updated_at = utc_now()
				session.add(entry)
				session.commit()
		except SQLAlchemyError as exc:
			raise StorageError(f"Failed to write {key}.") from exc

	async def delete(self, key: str) -> None:
		try:
			with Session(self.engine) as session:
				entry = session.get(KeyValueEntry, key)
				if entry is not None:
					session.delete(entry)
					session.commit()
		except SQLAlchemyError as exc:
			raise StorageError(f"Failed to delete {key}.") from exc


class UpstashStore:
	"""Upstash Redis through its REST interface (``/get``, ``/set``, ``/del``)."""

	def __init__(
		self,
		base_url: str,
		token: str,
		timeout: float = 10.0,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self.base_url = base_url.rstrip("/")
		self.token = token
		self.timeout = timeout
		self.transport = transport

	async def _request(self, method: str, path: str, content: str | None = None) -> object:
		try:
			async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
				response = await client.request(
					method,
					f"{self.base_url}/{path}",
					content=content,
					headers={"Authorization": f"Bearer {self.token}"},
				)
				response.raise_for_status()
				payload = response.json()
		except (httpx.HTTPError, ValueError) as exc:
			raise StorageError(f"Upstash {method} {path.split('/', 1)[0]} failed.") from exc

		if isinstance(payload, dict) and payload.get("error"):
			raise StorageError(f"Upstash error: {payload['error']}")
		return payload.get("result") if isinstance(payload, dict) else None

	async def get(self, key: str) -> str | None:
		result = await self._request("GET", f"get/{key}")
		return result if isinstance(result, str) else None

	async def put(self, key: str, value: str) -> None:
		await self._request("POST", f"set/{key}", content=value)

	async def delete(self, key: str) -> None:
		await self._request("GET", f"del/{key}")


def create_store(settings: Settings, engine: Engine | None = None) -> KeyValueStore:
	storage_type = settings.normalized_storage_type
	if storage_type == "upstash":
		token = settings.upstash_token_value()
		if not settings.upstash_url or not token:
			raise ConfigurationError("Upstash credentials missing")
		return UpstashStore(settings.upstash_url, token)

	if storage_type == "memory":
		return MemoryStore()

	return SqlModelStore(engine or default_engine)
