from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import create_engine, event, delete
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session


logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """
    Base class for ORM models.
    """
    pass


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


class Database:
    """
    Owns the engine and session factory for one process.

    Open once at startup (``init_db``), close with ``dispose`` at shutdown.
    """

    def __init__(self, database_url: str, echo: bool = False):
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            Path(url.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)

        self.engine: Engine = create_engine(
            database_url,
            echo=echo,  # set True if you want to see SQL queries
            future=True,
        )
        if url.get_backend_name() == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def init_db(self) -> None:
        """
        Create all tables and run startup migrations.
        Safe to call more than once.
        """
        # Register models on Base.metadata
        from medchat import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        run_migrations(self)

    def dispose(self) -> None:
        self.engine.dispose()


def run_migrations(database: Database) -> None:
    """
    Idempotent data migrations applied at startup.

    Older builds stored raw dialogue turns as memories under
    source='dialogue'; those rows are no longer retrieved and are purged.
    """
    from medchat.models import Memory

    with database.session() as session:
        result = session.execute(delete(Memory).where(Memory.source == "dialogue"))
        if result.rowcount:
            logger.info("Purged %d legacy dialogue memories", result.rowcount)
