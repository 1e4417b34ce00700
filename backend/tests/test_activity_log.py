import logging

from fund_tracker.activity_log import ActivityLogHandler, install_activity_log


def test_handler_keeps_the_latest_entries_newest_first() -> None:
	handler = ActivityLogHandler(max_entries=3)
	logger = logging.getLogger("fund_tracker.tests.activity")
	logger.addHandler(handler)
	logger.setLevel(logging.INFO)
	try:
		for index in range(5):
			logger.info("cycle %d", index)
		logger.warning("Fallback fetch for 1 assets")
		logger.error("同步失败")
	finally:
		logger.removeHandler(handler)

	entries = handler.entries()

	assert [entry["message"] for entry in entries] == ["同步失败", "Fallback fetch for 1 assets", "cycle 4"]
	assert [entry["level"] for entry in entries] == ["error", "warn", "info"]
	assert len(entries[0]["time"]) == 8


def test_install_activity_log_is_idempotent() -> None:
	first = install_activity_log("fund_tracker.tests.install")
	second = install_activity_log("fund_tracker.tests.install")

	assert first is second
	assert sum(isinstance(handler, ActivityLogHandler) for handler in logging.getLogger("fund_tracker.tests.install").handlers) == 1
