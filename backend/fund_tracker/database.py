from pathlib import Path

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from fund_tracker.settings import get_settings

DATA_DIR = Path(__file__).resolve().parent.parent / "data"
DEFAULT_DATABASE_URL = f"sqlite:///{DATA_DIR / 'fund_tracker.db'}"


def build_engine(database_url: str | None = None) -> Engine:
	url = database_url or DEFAULT_DATABASE_URL
	if url == DEFAULT_DATABASE_URL:
		DATA_DIR.mkdir(parents=True, exist_ok=True)
	connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
	return create_engine(url, connect_args=connect_args)


engine = build_engine(get_settings().database_url)


def init_db(target: Engine | None = None) -> None:
	"""Create database tables on startup."""
	SQLModel.metadata.create_all(target or engine)