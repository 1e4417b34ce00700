from __future__ import annotations

import argparse
import asyncio
import logging

from fund_tracker.database import init_db
from fund_tracker.settings import get_settings
from fund_tracker.storage import create_store
from fund_tracker.tracker import PortfolioTracker

logger = logging.getLogger("fund_tracker.watch")


def print_totals(tracker: PortfolioTracker) -> None:
	totals = tracker.totals()
	now = tracker.clock()
	print(
		f"[{now:%H:%M:%S}] 市值 {totals.market_value:,.2f}  成本 {totals.cost_basis:,.2f}  "
		f"盈亏 {totals.pnl:+,.2f} ({totals.pnl_percent:+.2f}%)",
	)
	for asset in tracker.assets:
		state = tracker.status(asset.id, now)
		print(f"  {asset.code:<10} {asset.name:<16} {asset.current_value:>10.4f}  {state.label}")


async def watch(user_id: str, cycles: int, interval: float | None) -> None:
	settings = get_settings()
	settings.validate_runtime()
	if settings.normalized_storage_type == "kv":
		init_db()
	tracker = PortfolioTracker.from_settings(settings, create_store(settings), user_id)
	if interval is not None:
		tracker.scheduler.interval_seconds = interval

	done = asyncio.Event()
	seen = 0

	def on_cycle(_: list[str]) -> None:
		nonlocal seen
		seen += 1
		print_totals(tracker)
		if cycles and seen >= cycles:
			done.set()

	tracker.scheduler.on_cycle = on_cycle
	await tracker.open()
	try:
		await done.wait()
	finally:
		await tracker.close()


def main() -> None:
	parser = argparse.ArgumentParser(description="Refresh a stored portfolio and print totals each cycle.")
	parser.add_argument("--user", default="default", help="Snapshot owner (the ?user= id).")
	parser.add_argument("--cycles", type=int, default=0, help="Stop after this many cycles (0 = run forever).")
	parser.add_argument("--interval", type=float, default=None, help="Override the refresh interval in seconds.")
	args = parser.parse_args()

	logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
	try:
		asyncio.run(watch(args.user, args.cycles, args.interval))
	except KeyboardInterrupt:
		logger.info("Stopped.")


if __name__ == "__main__":
	main()
