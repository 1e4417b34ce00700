from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from time import monotonic
from typing import Callable, Generic, TypeVar

CacheValue = TypeVar("CacheValue")


@dataclass(slots=True)
class CacheEntry(Generic[CacheValue]):
	value: CacheValue
	expires_at: float


class TTLCache(Generic[CacheValue]):
	"""Per-instance provider cache; evicts the oldest key once ``max_entries`` is reached."""

	def __init__(
		self,
		now: Callable[[], float] | None = None,
		max_entries: int = 256,
	) -> None:
		self._entries: OrderedDict[str, CacheEntry[CacheValue]] = OrderedDict()
		self._now = now or monotonic
		self.max_entries = max_entries

	def __len__(self) -> int:
		return len(self._entries)

	def get(self, key: str) -> CacheValue | None:
		entry = self._entries.get(key)
		if entry is None or entry.expires_at <= self._now():
			return None
		return entry.value

	def set(self, key: str, value: CacheValue, ttl_seconds: float) -> CacheValue:
		self._entries.pop(key, None)
		while len(self._entries) >= self.max_entries:
			self._entries.popitem(last=False)
		self._entries[key] = CacheEntry(value=value, expires_at=self._now() + ttl_seconds)
		return value

	def clear(self) -> None:
		self._entries.clear()
