from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Iterable

from fund_tracker.assets import AssetBase, HistoryPoint

logger = logging.getLogger(__name__)


def format_time_label(moment: datetime) -> str:
	"""Format the x-axis label used for intraday points (HH:MM, 24h)."""
	return moment.strftime("%H:%M")


def history_date(today: date) -> str:
	return today.isoformat()


def roll_over_if_stale(asset: AssetBase, today: date) -> bool:
	"""Clear intraday points that belong to an earlier session date."""
	today_label = history_date(today)
	if asset.last_history_date is None or asset.last_history_date == today_label:
		return False

	asset.history = []
	asset.last_history_date = today_label
	return True


def append_or_replace(asset: AssetBase, point: HistoryPoint, today: date) -> None:
	"""Append a point, coalescing with the last one when both share a time label."""
	roll_over_if_stale(asset, today)

	if asset.history and asset.history[-1].time == point.time:
		asset.history[-1] = point
	else:
		asset.history.append(point)

	asset.last_history_date = history_date(today)


def seed_history(asset: AssetBase, now: datetime) -> bool:
	"""Give an empty series a single current-value point so charts never start blank."""
	if asset.history or asset.current_value <= 0:
		return False

	asset.history = [HistoryPoint(time=format_time_label(now), value=asset.current_value)]
	asset.last_history_date = history_date(now.date())
	return True


def clear_stale_history(assets: Iterable[AssetBase], today: date) -> list[str]:
	"""Roll every asset over to ``today``; returns the ids that were cleared."""
	cleared: list[str] = []
	for asset in assets:
		if roll_over_if_stale(asset, today):
			logger.info("Cleared stale intraday history for %s", asset.name or asset.id)
			cleared.append(asset.id)
	return cleared
