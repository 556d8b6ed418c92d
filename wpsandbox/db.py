from __future__ import annotations

import os

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine


def _database_url() -> str:
    return os.getenv("SANDBOX_DATABASE_URL", "sqlite:///./wpsandbox.db")


def build_engine(url: str | None = None) -> Engine:
    url = url or _database_url()
    is_sqlite = url.startswith("sqlite")
    return create_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        poolclass=StaticPool if is_sqlite else None,
    )


engine = build_engine()


def init_db(engine: Engine) -> None:
    # Ensure models are imported before creating tables.
    import wpsandbox.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
