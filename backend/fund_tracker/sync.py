from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
from typing import Sequence

from fund_tracker.assets import Asset, AssetBase, dump_asset_snapshot, load_asset_snapshot
from fund_tracker.models import utc_now
from fund_tracker.storage import KeyValueStore, StorageError, snapshot_key

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
	IDLE = "idle"
	SAVING = "saving"
	SYNCED = "synced"
	FAILED = "failed"


@dataclass(slots=True)
class SyncStatus:
	state: SyncState = SyncState.IDLE
	message: str = ""
	last_synced_at: datetime | None = None
	consecutive_failures: int = 0


class WriteBehindSync:
	"""Local cache plus remote key-value store with a debounced whole-snapshot write.

	``load`` prefers a non-empty remote snapshot over the local cache. ``schedule``
	records the latest snapshot and (re)arms a single flush ``flush_interval_seconds``
	later; a failed flush keeps the snapshot and re-arms once for the next window.
	"""

	def __init__(
		self,
		remote: KeyValueStore,
		user_id: str,
		local: KeyValueStore | None = None,
		flush_interval_seconds: float = 2.0,
	) -> None:
		self.remote = remote
		self.local = local
		self.user_id = user_id
		self.flush_interval_seconds = flush_interval_seconds
		self.status = SyncStatus()
		self._pending: str | None = None
		self._pending_version = 0
		self._timer: asyncio.TimerHandle | None = None
		self._flush_task: asyncio.Task[bool] | None = None
		self._flush_lock = asyncio.Lock()
		self._closed = False

	@property
	def key(self) -> str:
		return snapshot_key(self.user_id)

	@property
	def has_pending(self) -> bool:
		return self._pending is not None

	def _set_status(self, state: SyncState, message: str) -> None:
		self.status.state = state
		self.status.message = message

	async def load(self) -> list[Asset]:
		remote_assets: list[Asset] = []
		try:
			remote_assets = load_asset_snapshot(await self.remote.get(self.key))
		except StorageError:
			logger.warning("Failed to fetch remote assets for %s.", self.user_id, exc_info=True)

		if remote_assets:
			logger.info("Assets synced from cloud storage for %s.", self.user_id)
			if self.local is not None:
				await self._write_local(dump_asset_snapshot(remote_assets))
			return remote_assets

		if self.local is None:
			return []

		try:
			return load_asset_snapshot(await self.local.get(self.key))
		except StorageError:
			logger.warning("Failed to read local asset cache for %s.", self.user_id, exc_info=True)
			return []

	async def _write_local(self, payload: str) -> None:
		if self.local is None:
			return
		try:
			await self.local.put(self.key, payload)
		except StorageError:
			logger.warning("Failed to update local asset cache for %s.", self.user_id, exc_info=True)

	def schedule(self, assets: Sequence[AssetBase]) -> None:
		if self._closed:
			return
		self._pending = dump_asset_snapshot(assets)
		self._pending_version += 1
		self._set_status(SyncState.SAVING, "保存中...")
		self._arm_timer()

	def _arm_timer(self) -> None:
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			return
		if self._timer is not None:
			self._timer.cancel()
		self._timer = loop.call_later(self.flush_interval_seconds, self._start_flush)

	def _start_flush(self) -> None:
		self._timer = None
		if self._closed:
			return
		self._flush_task = asyncio.get_running_loop().create_task(self.flush())

	async def flush(self) -> bool:
		# one write in flight at a time; the snapshot is read once the lock is held
		async with self._flush_lock:
			return await self._flush_pending()

	async def _flush_pending(self) -> bool:
		if self._pending is None:
			return True

		payload = self._pending
		version = self._pending_version
		await self._write_local(payload)

		try:
			await self.remote.put(self.key, payload)
		except StorageError as exc:
			self.status.consecutive_failures += 1
			self._set_status(SyncState.FAILED, "同步失败")
			logger.error("Failed to sync assets to cloud for %s: %s", self.user_id, exc)
			if not self._closed and self._timer is None:
				self._arm_timer()
			return False

		if version == self._pending_version:
			self._pending = None
		self.status.consecutive_failures = 0
		self.status.last_synced_at = utc_now()
		self._set_status(SyncState.SYNCED, "已同步")
		logger.info("Assets automatically synced to cloud storage for %s.", self.user_id)
		return True

	async def close(self, flush: bool = True) -> None:
		if self._timer is not None:
			self._timer.cancel()
			self._timer = None
		if self._flush_task is not None and not self._flush_task.done():
			with suppress(asyncio.CancelledError):
				await self._flush_task
		if flush and self._pending is not None:
			await self.flush()
		self._closed = True
