import asyncio
import json
from pathlib import Path

import httpx
import pytest
from sqlmodel import SQLModel, create_engine

from fund_tracker.settings import Settings
from fund_tracker.storage import (
	ConfigurationError,
	MemoryStore,
	SqlModelStore,
	StorageError,
	UpstashStore,
	create_store,
	snapshot_key,
	user_record_key,
)


def _sqlite_store(tmp_path: Path) -> SqlModelStore:
	engine = create_engine(
		f"sqlite:///{tmp_path / 'kv-test.db'}",
		connect_args={"check_same_thread": False},
	)
	SQLModel.metadata.create_all(engine)
	return SqlModelStore(engine)


def test_keys_are_namespaced() -> None:
	assert snapshot_key("alice") == "user_alice"
	assert user_record_key("alice") == "users:alice"


def test_sqlmodel_store_round_trips_and_overwrites(tmp_path: Path) -> None:
	store = _sqlite_store(tmp_path)

	async def scenario() -> tuple[str | None, str | None, str | None]:
		missing = await store.get("user_alice")
		await store.put("user_alice", "[]")
		await store.put("user_alice", '[{"id":"a"}]')
		stored = await store.get("user_alice")
		await store.delete("user_alice")
		return missing, stored, await store.get("user_alice")

	assert asyncio.run(scenario()) == (None, '[{"id":"a"}]', None)


def test_sqlmodel_store_wraps_database_errors(tmp_path: Path) -> None:
	engine = create_engine(f"sqlite:///{tmp_path / 'no-tables.db'}")

	with pytest.raises(StorageError):
		asyncio.run(SqlModelStore(engine).get("user_alice"))


def test_upstash_store_uses_rest_commands() -> None:
	requests: list[httpx.Request] = []
	stored: dict[str, str] = {}

	def handler(request: httpx.Request) -> httpx.Response:
		requests.append(request)
		command, key = request.url.path.strip("/").split("/", 1)
		if command == "set":
			stored[key] = request.content.decode()
			return httpx.Response(200, json={"result": "OK"})
		return httpx.Response(200, json={"result": stored.get(key)})

	store = UpstashStore("https://eu1-demo.upstash.io/", "token-1", transport=httpx.MockTransport(handler))

	async def scenario() -> str | None:
		await store.put("user_alice", json.dumps([{"id": "a"}]))
		return await store.get("user_alice")

	assert asyncio.run(scenario()) == '[{"id": "a"}]'
	assert requests[0].method == "POST"
	assert requests[0].headers["Authorization"] == "Bearer token-1"


def test_upstash_store_raises_storage_error_on_failure() -> None:
	store = UpstashStore(
		"https://eu1-demo.upstash.io",
		"token-1",
		transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"error": "WRONGPASS"})),
	)

	with pytest.raises(StorageError, match="WRONGPASS"):
		asyncio.run(store.get("user_alice"))


def test_create_store_selects_backend_from_settings(tmp_path: Path) -> None:
	assert isinstance(create_store(Settings(storage_type="memory")), MemoryStore)
	assert isinstance(
		create_store(Settings(storage_type="upstash", upstash_url="https://x.upstash.io", upstash_token="t")),
		UpstashStore,
	)
	engine = create_engine(f"sqlite:///{tmp_path / 'kv.db'}")
	assert isinstance(create_store(Settings(storage_type="KV"), engine=engine), SqlModelStore)


def test_create_store_rejects_upstash_without_credentials() -> None:
	with pytest.raises(ConfigurationError, match="Upstash credentials missing"):
		create_store(Settings(storage_type="upstash"))
