from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
import logging
from threading import Lock

MAX_ACTIVITY_ENTRIES = 100


@dataclass(frozen=True, slots=True)
class ActivityEntry:
	time: str
	level: str
	message: str


def _level_name(levelno: int) -> str:
	if levelno >= logging.ERROR:
		return "error"
	if levelno >= logging.WARNING:
		return "warn"
	return "info"


class ActivityLogHandler(logging.Handler):
	"""Keep the most recent log records in memory for the admin console."""

	def __init__(self, max_entries: int = MAX_ACTIVITY_ENTRIES, level: int = logging.INFO) -> None:
		super().__init__(level=level)
		self._entries: deque[ActivityEntry] = deque(maxlen=max_entries)
		self._entries_lock = Lock()

	def emit(self, record: logging.LogRecord) -> None:
		try:
			entry = ActivityEntry(
				time=datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
				level=_level_name(record.levelno),
				message=record.getMessage(),
			)
		except Exception:
			self.handleError(record)
			return

		with self._entries_lock:
			self._entries.append(entry)

	def entries(self) -> list[dict[str, str]]:
		"""Newest first."""
		with self._entries_lock:
			return [asdict(entry) for entry in reversed(self._entries)]

	def clear(self) -> None:
		with self._entries_lock:
			self._entries.clear()


def install_activity_log(logger_name: str = "fund_tracker") -> ActivityLogHandler:
	"""Attach one shared handler to ``logger_name``; repeated calls return the same handler."""
	target = logging.getLogger(logger_name)
	for handler in target.handlers:
		if isinstance(handler, ActivityLogHandler):
			return handler

	handler = ActivityLogHandler()
	target.addHandler(handler)
	if target.level == logging.NOTSET or target.level > logging.INFO:
		target.setLevel(logging.INFO)
	return handler
