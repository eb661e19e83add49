import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

import config

logger = logging.getLogger(__name__)


class GatewayUnavailable(RuntimeError):
    """Raised when no database is configured."""


class Database:
    """
    Persistence gateway shared by every component.

    Sessions are short-lived: one unit of work per `session()` block. The store's
    unique constraints plus ON CONFLICT upserts are the only concurrency control.
    """

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine

    @classmethod
    def from_env(cls) -> "Database":
        url = config.database_url()
        if not url:
            logger.warning("DATABASE_URL is not set; persistence is disabled.")
            return cls(None)
        return cls(create_engine(url, pool_pre_ping=True))

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise GatewayUnavailable("Database is not configured (DATABASE_URL missing).")
        return self._engine

    def is_available(self) -> bool:
        return self._engine is not None

    def init_db(self):
        """
        Creates the tables defined in models.py.
        """
        import models  # noqa: F401  registers the tables on SQLModel.metadata

        SQLModel.metadata.create_all(self.engine)
        logger.info("Database tables ready.")

    @contextmanager
    def session(self):
        with Session(self.engine) as session:
            yield session

    def insert(self, model):
        """
        Dialect-specific INSERT that supports `on_conflict_do_update` /
        `on_conflict_do_nothing` and RETURNING.
        """
        if self.engine.dialect.name == "sqlite":
            return sqlite.insert(model)
        return postgresql.insert(model)
