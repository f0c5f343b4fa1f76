from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

log = logging.getLogger('authserver.db')


class Database:
    """Engine + session factory.

    Conditional updates (code consumption, refresh rotation, request status)
    rely on write transactions being serialized by the backend. On SQLite
    every transaction starts with ``BEGIN IMMEDIATE`` so two writers never
    both hold a read snapshot; on PostgreSQL the row lock taken by
    ``UPDATE ... WHERE`` does the same job.
    """

    def __init__(self, url: str, timeout: int = 5):
        self.url = url
        if url.startswith('sqlite'):
            self.engine = create_engine(url, connect_args={'check_same_thread': False, 'timeout': timeout})
            _serialize_sqlite_writes(self.engine)
        elif url.startswith('postgresql'):
            ms = int(timeout * 1000)
            self.engine = create_engine(url, pool_pre_ping=True, connect_args={
                'connect_timeout': timeout,
                'options': f'-c statement_timeout={ms} -c lock_timeout={ms}',
            })
        else:
            self.engine = create_engine(url, pool_pre_ping=True)
        self._factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        # checkfirst avoids races when several workers boot at once
        Base.metadata.create_all(self.engine, checkfirst=True)

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self._factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()


def _serialize_sqlite_writes(engine) -> None:
    @event.listens_for(engine, 'connect')
    def _on_connect(dbapi_connection, connection_record):
        # hand transaction control to SQLAlchemy instead of pysqlite
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _on_begin(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')
