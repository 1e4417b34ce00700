from __future__ import annotations

import argparse
import json
from datetime import timezone
from pathlib import Path
from zoneinfo import ZoneInfo

from sqlmodel import Session, select

from fund_tracker.assets import load_asset_snapshot
from fund_tracker.database import DATA_DIR, build_engine
from fund_tracker.models import KeyValueEntry

ASIA_SHANGHAI = ZoneInfo("Asia/Shanghai")
SENSITIVE_FIELDS = {"password_digest"}


def resolve_default_db_path() -> Path:
	return DATA_DIR / "fund_tracker.db"


def describe_value(key: str, value: str, full: bool) -> object:
	if key.startswith("user_"):
		assets = load_asset_snapshot(value)
		if full:
			return [asset.model_dump(mode="json", by_alias=True, exclude_none=True) for asset in assets]
		return {
			"asset_count": len(assets),
			"positions": sum(1 for asset in assets if asset.has_position),
			"codes": [asset.code for asset in assets],
		}

	if key.startswith("users:"):
		try:
			record = json.loads(value)
		except json.JSONDecodeError:
			return value
		if isinstance(record, dict):
			return {name: "[REDACTED]" if name in SENSITIVE_FIELDS else item for name, item in record.items()}
		return record

	return value


def inspect_store(db_path: Path, prefix: str, limit: int, full: bool) -> None:
	engine = build_engine(f"sqlite:///{db_path}")
	with Session(engine) as session:
		statement = select(KeyValueEntry).order_by(KeyValueEntry.updated_at.desc()).limit(limit)
		if prefix:
			statement = statement.where(KeyValueEntry.key.startswith(prefix))
		entries = list(session.exec(statement))

	for entry in entries:
		updated_at = entry.updated_at
		if updated_at.tzinfo is None:
			updated_at = updated_at.replace(tzinfo=timezone.utc)
		print(
			json.dumps(
				{
					"key": entry.key,
					"updated_at_asia_shanghai": updated_at.astimezone(ASIA_SHANGHAI).isoformat(),
					"value": describe_value(entry.key, entry.value, full),
				},
				ensure_ascii=False,
			),
		)


def main() -> None:
	parser = argparse.ArgumentParser(description="Inspect the local key-value store.")
	parser.add_argument("--prefix", default="", help="Only show keys starting with this prefix.")
	parser.add_argument("--limit", type=int, default=20, help="Number of keys to print.")
	parser.add_argument("--full", action="store_true", help="Print whole asset snapshots.")
	parser.add_argument(
		"--db",
		type=Path,
		default=resolve_default_db_path(),
		help="Path to the SQLite database file.",
	)
	args = parser.parse_args()

	inspect_store(args.db, args.prefix, args.limit, args.full)


if __name__ == "__main__":
	main()
