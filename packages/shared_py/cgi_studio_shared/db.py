from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import Settings, get_settings


class Base(DeclarativeBase):
    pass


def _make_sqlite_transactions_immediate(engine: Engine) -> None:
    # pysqlite defers BEGIN; take the write lock up front so concurrent
    # claimers wait on the busy timeout instead of failing on lock upgrade.
    @event.listens_for(engine, 'connect')
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _on_begin(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')


class Database:
    """Owns the engine and session factory for one process.

    Built explicitly at process start (API startup, worker init, test fixture)
    and released with ``dispose()`` at shutdown.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        if url.startswith('sqlite'):
            self.engine = create_engine(url, future=True, echo=echo, connect_args={'check_same_thread': False, 'timeout': 30})
            _make_sqlite_transactions_immediate(self.engine)
        else:
            self.engine = create_engine(url, future=True, echo=echo, pool_pre_ping=True)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> 'Database':
        settings = settings or get_settings()
        return cls(settings.database_url)

    def session(self) -> Session:
        return self.session_factory()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def init_schema(self) -> None:
        from . import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()
