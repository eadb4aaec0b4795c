"""Engine and session handling for the relational store."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict

from sqlalchemy.engine import make_url
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from . import models  # noqa: F401  (registers the tables on SQLModel.metadata)

logger = logging.getLogger(__name__)

_MEMORY_URLS = {"sqlite://", "sqlite:///:memory:"}


def _ensure_sqlite_dir(url: str) -> None:
    database = make_url(url).database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


class Database:
    """Owns the SQLAlchemy engine; hands out one session per logical operation."""

    def __init__(self, url: str = "sqlite:///data/gateway.db", *, echo: bool = False) -> None:
        self.url = url
        kwargs: Dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            # FastAPI runs sync routes in a thread pool.
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in _MEMORY_URLS:
                kwargs["poolclass"] = StaticPool
            else:
                _ensure_sqlite_dir(url)
        self.engine = create_engine(url, **kwargs)

    @classmethod
    def from_config(cls, cfg: Any) -> "Database":
        """Create from a :class:`~ollama_gateway.config.DatabaseConfig`."""
        return cls(cfg.url, echo=cfg.echo)

    def init(self) -> None:
        """Create all tables if they don't exist."""
        SQLModel.metadata.create_all(self.engine)
        logger.info("Database ready at %s", make_url(self.url).render_as_string(hide_password=True))

    def session(self) -> Session:
        """Provide a new SQLModel session."""
        return Session(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
